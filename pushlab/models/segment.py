from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from pushlab.core.database import Base


class Segment(Base):
    """
    A named, rule-defined subset of directory users.

    Rules are stored as an ordered JSON list of rule documents
    (``{"type", "field", "operator", "value"}``) and are combined with a
    logical AND. ``estimated_size`` and ``last_size_update`` are written only
    by the size refresh in the segmentation service.
    """

    __tablename__ = "segments"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True, index=True)
    description = Column(Text, nullable=False)

    rules = Column(JSON, nullable=False)
    tags = Column(JSON, nullable=False, default=list)
    active = Column(Boolean, nullable=False, default=True, index=True)

    # Cached membership count
    estimated_size = Column(Integer, nullable=False, default=0)
    last_size_update = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    metadata_ = Column("metadata", JSON)
