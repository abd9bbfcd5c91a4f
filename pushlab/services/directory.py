"""
User directory adapters.

The segmentation service only needs ``find_by_predicate``: give it a
callable over a profile document and get back the matching users. Users are
returned in a stable order (by id) so results are reproducible; anything
downstream that must not depend on that order shuffles for itself.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pushlab.config import get_settings
from pushlab.core.exceptions import DependencyError
from pushlab.models.directory_user import DirectoryUserRecord
from pushlab.services.segmentation.compiler import parse_datetime

logger = structlog.get_logger()

Predicate = Callable[[Dict[str, Any]], bool]


@dataclass
class DirectoryUser:
    id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    device_handles: List[str] = field(default_factory=list)


@dataclass
class AnalyticsRefreshResult:
    updated_users: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)


class UserDirectory(Protocol):
    async def find_by_predicate(self, predicate: Predicate) -> List[DirectoryUser]: ...

    async def refresh_derived_analytics(
        self, now: Optional[datetime] = None
    ) -> AnalyticsRefreshResult: ...


def derive_analytics(profile: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """
    Recompute day counters used by inactivity rules.

    ``daysInactive`` comes from ``lastLoginAt`` and
    ``analytics.daysSinceLastOrder`` from ``analytics.lastPurchaseDate``.
    Returns an updated copy; the input is not modified.
    """
    updated = copy.deepcopy(profile)

    last_login = parse_datetime(updated.get("lastLoginAt"))
    if last_login is not None:
        updated["daysInactive"] = (now - last_login).days

    analytics = updated.get("analytics")
    if isinstance(analytics, dict):
        last_purchase = parse_datetime(analytics.get("lastPurchaseDate"))
        if last_purchase is not None:
            analytics["daysSinceLastOrder"] = (now - last_purchase).days

    return updated


class InMemoryUserDirectory:
    """Directory over a fixed list of users, filtered in-process."""

    def __init__(self, users: Iterable[DirectoryUser] = ()):
        self.users: List[DirectoryUser] = list(users)

    def add(self, user: DirectoryUser) -> None:
        self.users.append(user)

    async def find_by_predicate(self, predicate: Predicate) -> List[DirectoryUser]:
        return [user for user in sorted(self.users, key=lambda u: u.id) if predicate(user.attributes)]

    async def refresh_derived_analytics(
        self, now: Optional[datetime] = None
    ) -> AnalyticsRefreshResult:
        now = now or datetime.now(timezone.utc)
        result = AnalyticsRefreshResult()
        for user in self.users:
            try:
                user.attributes = derive_analytics(user.attributes, now)
                result.updated_users += 1
            except (TypeError, ValueError) as e:
                logger.warning("user_analytics_refresh_failed", user_id=user.id, error=str(e))
                result.errors.append({"user_id": user.id, "error": str(e)})
        return result


class SqlUserDirectory:
    """
    Directory backed by the ``directory_users`` table.

    Profiles are schemaless JSON documents whose list-valued paths fan out
    (``addresses.city``), so rules are evaluated in-process over batches of
    active users rather than translated into dialect-specific JSON SQL.
    """

    def __init__(self, db: AsyncSession, batch_size: Optional[int] = None):
        self.db = db
        self.batch_size = batch_size or get_settings().DIRECTORY_BATCH_SIZE

    async def _batches(self):
        last_id = None
        while True:
            query = (
                select(DirectoryUserRecord)
                .where(DirectoryUserRecord.active.is_(True))
                .order_by(DirectoryUserRecord.id)
                .limit(self.batch_size)
            )
            if last_id is not None:
                query = query.where(DirectoryUserRecord.id > last_id)

            result = await self.db.execute(query)
            rows = list(result.scalars().all())
            if not rows:
                return
            yield rows
            last_id = rows[-1].id

    async def find_by_predicate(self, predicate: Predicate) -> List[DirectoryUser]:
        matched = []
        try:
            async for rows in self._batches():
                for row in rows:
                    profile = row.profile or {}
                    if predicate(profile):
                        matched.append(
                            DirectoryUser(
                                id=row.id,
                                attributes=profile,
                                device_handles=list(row.device_handles or []),
                            )
                        )
        except SQLAlchemyError as e:
            logger.error("user_directory_query_failed", error=str(e))
            raise DependencyError(f"User directory query failed: {e}")
        return matched

    async def refresh_derived_analytics(
        self, now: Optional[datetime] = None
    ) -> AnalyticsRefreshResult:
        now = now or datetime.now(timezone.utc)
        result = AnalyticsRefreshResult()
        try:
            async for rows in self._batches():
                for row in rows:
                    try:
                        # Reassign so the JSON column is flagged dirty
                        row.profile = derive_analytics(row.profile or {}, now)
                        result.updated_users += 1
                    except (TypeError, ValueError) as e:
                        logger.warning("user_analytics_refresh_failed", user_id=row.id, error=str(e))
                        result.errors.append({"user_id": row.id, "error": str(e)})
                await self.db.flush()
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("user_analytics_refresh_aborted", error=str(e))
            raise DependencyError(f"User directory update failed: {e}")
        return result
