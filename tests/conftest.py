import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Any, Dict, List  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

import pushlab.models  # noqa: E402,F401
from pushlab.core.database import Base  # noqa: E402
from pushlab.core.exceptions import DependencyError  # noqa: E402
from pushlab.services.directory import DirectoryUser, InMemoryUserDirectory  # noqa: E402
from pushlab.services.push import DeliveryResult  # noqa: E402


def iso_days_ago(now: datetime, days: float) -> str:
    return (now - timedelta(days=days)).isoformat()


def build_users(now: datetime) -> List[DirectoryUser]:
    return [
        DirectoryUser(
            id="u1",
            attributes={
                "age": 25,
                "gender": "female",
                "language": "es",
                "addresses": [{"city": "Madrid", "country": "ES", "isDefault": True}],
                "analytics": {
                    "totalSpent": 150.5,
                    "ordersCount": 3,
                    "lastPurchaseDate": iso_days_ago(now, 5),
                },
                "lastActiveAt": iso_days_ago(now, 2),
                "lastLoginAt": iso_days_ago(now, 2),
                "notificationPreferences": {"promotional": True, "newsletter": False},
                "favoriteDrinks": [{"name": "Vanilla Latte"}, {"name": "Espresso"}],
                "devices": [{"platform": "ios", "pushEnabled": True}],
            },
            device_handles=["h1", "h2"],
        ),
        DirectoryUser(
            id="u2",
            attributes={
                "age": 40,
                "gender": "male",
                "addresses": [{"city": "Barcelona"}, {"city": "Madrid", "isDefault": True}],
                "analytics": {
                    "totalSpent": 20,
                    "ordersCount": 1,
                    "lastPurchaseDate": iso_days_ago(now, 60),
                },
                "lastActiveAt": iso_days_ago(now, 45),
                "lastLoginAt": iso_days_ago(now, 45),
                "notificationPreferences": {"promotional": False, "newsletter": True},
                "devices": [{"platform": "android", "pushEnabled": False}],
            },
            device_handles=["h3"],
        ),
        DirectoryUser(
            id="u3",
            attributes={
                "age": 30,
                "gender": "other",
                "analytics": {"totalSpent": 0},
                "lastActiveAt": None,
            },
            device_handles=["h4", "h4"],
        ),
        DirectoryUser(
            id="u4",
            attributes={
                "language": "en",
                "lastActiveAt": iso_days_ago(now, 10),
                "devices": [{"platform": "web"}],
            },
            device_handles=[],
        ),
    ]


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def users(now) -> List[DirectoryUser]:
    return build_users(now)


@pytest.fixture
def directory(users) -> InMemoryUserDirectory:
    return InMemoryUserDirectory(users)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pushlab.db'}", connect_args={"timeout": 30}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


class FakePushSender:
    """Records deliveries; titles listed in ``fail_titles`` raise DependencyError."""

    def __init__(self, fail_titles=()):
        self.fail_titles = set(fail_titles)
        self.calls: List[Dict[str, Any]] = []

    async def send(self, device_handles, title, body, data) -> DeliveryResult:
        self.calls.append(
            {"handles": list(device_handles), "title": title, "body": body, "data": data}
        )
        if title in self.fail_titles:
            raise DependencyError(f"Push delivery rejected for '{title}'", status_code=503)
        return DeliveryResult(
            id=f"notif-{len(self.calls)}", status_code=200, recipients=len(device_handles)
        )


@pytest.fixture
def sender() -> FakePushSender:
    return FakePushSender()
