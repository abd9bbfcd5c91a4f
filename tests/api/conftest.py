import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from pushlab.api.deps import get_user_directory
from pushlab.core.database import get_db
from pushlab.main import app
from pushlab.services.push import get_push_sender


@pytest_asyncio.fixture
async def client(session_maker, directory, sender):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_user_directory] = lambda: directory
    app.dependency_overrides[get_push_sender] = lambda: sender

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
