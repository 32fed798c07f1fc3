import os
import tempfile
from typing import AsyncGenerator

# Settings are read at import time, so point them at a scratch area first
_TEST_ROOT = tempfile.mkdtemp(prefix="imagelift-tests-")
os.environ.setdefault("LOCAL_STORAGE_PATH", os.path.join(_TEST_ROOT, "storage"))
os.environ.setdefault("RENDERER", "simulated")
os.environ.setdefault("RESOLUTION_TIERS", "4K:384,8K:768")
os.environ.setdefault("LOG_FORMAT_JSON", "false")
os.environ.setdefault("PIPELINE_BACKEND", "inprocess")
os.environ.setdefault("JOB_STORE_BACKEND", "memory")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from tests.fakes import MemoryStorage, RecordingJobStore, make_image_bytes


@pytest.fixture
def store() -> RecordingJobStore:
    return RecordingJobStore()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def source_bytes() -> bytes:
    return make_image_bytes()


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from imagelift.main import app

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
