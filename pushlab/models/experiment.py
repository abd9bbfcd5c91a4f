import enum

from sqlalchemy import JSON, Column, DateTime
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from pushlab.core.database import Base


class ExperimentStatus(str, enum.Enum):
    """Status of an experiment lifecycle."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PrimaryMetric(str, enum.Enum):
    OPENS = "opens"
    CLICKS = "clicks"
    CONVERSIONS = "conversions"


# Counter columns on ExperimentVariant
METRIC_NAMES = ("impressions", "opens", "clicks", "conversions")


class Experiment(Base):
    """
    Represents an A/B push notification experiment.

    Targets one segment (referenced by name, never owned) and owns its
    ordered list of variants. ``end_date`` is derived from ``start_date`` and
    ``duration_days`` whenever the experiment becomes active, and is set to
    the completion time when it completes.
    """

    __tablename__ = "experiments"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text, nullable=False)

    # Segment name; many experiments may share a segment
    segment = Column(String, nullable=False, index=True)

    status = Column(SQLEnum(ExperimentStatus), nullable=False, default=ExperimentStatus.DRAFT)

    # Timeline
    start_date = Column(DateTime(timezone=True))
    end_date = Column(DateTime(timezone=True))
    duration_days = Column(Integer, nullable=False, default=7)

    # Evaluation
    primary_metric = Column(SQLEnum(PrimaryMetric), nullable=False, default=PrimaryMetric.CLICKS)
    confidence_threshold = Column(Integer, nullable=False, default=95)  # Informational only
    winner = Column(String)

    # Metadata
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    metadata_ = Column("metadata", JSON)

    variants = relationship(
        "ExperimentVariant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="ExperimentVariant.position",
    )


class ExperimentVariant(Base):
    """
    One treatment arm of an experiment.

    Metric counters are plain integer columns so that tracking can increment
    them with a single ``UPDATE ... SET clicks = clicks + :n`` statement.
    """

    __tablename__ = "experiment_variants"
    __table_args__ = (UniqueConstraint("experiment_id", "name", name="uq_variant_name"),)

    id = Column(String, primary_key=True)
    experiment_id = Column(
        String, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)

    name = Column(String, nullable=False)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    weight = Column(Integer, nullable=False, default=50)
    additional_data = Column(JSON, default=dict)

    # Counters (monotonically increasing)
    impressions = Column(Integer, nullable=False, default=0)
    opens = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)

    experiment = relationship("Experiment", back_populates="variants")

    @property
    def metrics(self) -> dict:
        return {name: getattr(self, name) or 0 for name in METRIC_NAMES}
