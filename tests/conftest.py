from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from tests.fakes import FakeGenerationService, make_png
from ungrid.api.dependencies import get_session
from ungrid.core.credentials import CredentialStore
from ungrid.main import app
from ungrid.pipeline.session import Session


@pytest.fixture
def png() -> bytes:
    return make_png()


@pytest.fixture
def credentials() -> CredentialStore:
    return CredentialStore(fallback_key="test-key")


@pytest.fixture
def fake_service() -> FakeGenerationService:
    return FakeGenerationService()


@pytest.fixture
def session(credentials, fake_service) -> Session:
    return Session(credentials=credentials, service=fake_service)


@pytest_asyncio.fixture
async def client(session) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_session] = lambda: session
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    finally:
        await session.wait_idle()
        app.dependency_overrides.clear()
