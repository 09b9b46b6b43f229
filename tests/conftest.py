import pytest

from kfsync.core.config import Settings
from tests.fakes import FakeDatabase


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def sync_settings():
    return Settings(
        _env_file=None,
        kashflow_session_token="test-token",
        concurrency=3,
        detail_concurrency=4,
        upsert_batch_size=7,
        max_captured_upserts=2000,
        heartbeat_seconds=60.0,
        http_max_retries=2,
    )
