"""Root-level pytest fixtures for all tests."""

import os

import pytest
import pytest_asyncio

# In-memory database for anything that touches the module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

from brightcare import rate_limiter  # noqa: E402
from brightcare.services.conversation_sync import ConversationSyncStore  # noqa: E402
from brightcare.services.upload_pipeline import AttachmentUploadPipeline  # noqa: E402
from tests.fakes import InMemoryContentRepository, InMemoryRemoteStore  # noqa: E402


@pytest.fixture
def content_repo() -> InMemoryContentRepository:
    return InMemoryContentRepository()


@pytest.fixture
def pipeline(content_repo) -> AttachmentUploadPipeline:
    return AttachmentUploadPipeline(content_repo, progress_min_interval=0)


@pytest.fixture
def remote_store() -> InMemoryRemoteStore:
    store = InMemoryRemoteStore()
    store.add_conversation("conv-1", ["patient-1", "provider-1"])
    return store


@pytest_asyncio.fixture
async def sync_store(remote_store, pipeline):
    """Patient's store for conv-1, opened"""
    store = ConversationSyncStore("conv-1", "patient-1", remote_store, pipeline)
    await store.open()
    yield store
    await store.close()


@pytest.fixture(autouse=True)
def fresh_rate_limits(monkeypatch):
    """Memory-only limiter with empty windows for every test"""
    monkeypatch.setattr(rate_limiter, "REDIS_URL", None)
    monkeypatch.setattr(rate_limiter, "redis_client", None)
    rate_limiter.memory_cache.clear()
    yield
    rate_limiter.memory_cache.clear()
