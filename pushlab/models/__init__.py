from pushlab.models.directory_user import DirectoryUserRecord  # noqa: F401
from pushlab.models.experiment import (  # noqa: F401
    METRIC_NAMES,
    Experiment,
    ExperimentStatus,
    ExperimentVariant,
    PrimaryMetric,
)
from pushlab.models.segment import Segment  # noqa: F401
