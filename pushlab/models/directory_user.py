from sqlalchemy import JSON, Boolean, Column, DateTime, String
from sqlalchemy.sql import func

from pushlab.core.database import Base


class DirectoryUserRecord(Base):
    """
    A user record in the SQL-backed user directory.

    ``profile`` is a nested document addressed by dotted attribute paths
    (``analytics.totalSpent``, ``addresses.city``). ``device_handles`` holds
    the push notification handles registered for the user.
    """

    __tablename__ = "directory_users"

    id = Column(String, primary_key=True)
    profile = Column(JSON, nullable=False, default=dict)
    device_handles = Column(JSON, nullable=False, default=list)
    active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
