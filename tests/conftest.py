"""Common test fixtures for notevault."""

import tempfile
from pathlib import Path

import pytest

from notevault.config import StorageBackendKind, config
from notevault.models.schema import CircuitBreakerConfig, RetryConfig
from notevault.observability import MetricsCollector
from notevault.repository.document_repository import DocumentRepository
from notevault.resilience.executor import ResilienceExecutor
from notevault.storage.file_adapter import create_file_backend
from notevault.storage.memory_adapter import create_memory_backend
from notevault.storage.sql_adapter import create_sql_backend
from tests.fakes import FakeClock, RecordingSleep


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def temp_dirs():
    """Create temporary directories for the file store and database."""
    with tempfile.TemporaryDirectory() as data_dir:
        with tempfile.TemporaryDirectory() as db_dir:
            yield Path(data_dir), Path(db_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    data_dir, db_dir = temp_dirs
    monkeypatch.setattr(config, "data_dir", data_dir)
    monkeypatch.setattr(config, "database_path", db_dir / "test_notevault.db")
    monkeypatch.setattr(config, "log_dir", db_dir / "logs")
    monkeypatch.setattr(config, "storage_backend", StorageBackendKind.MEMORY)
    yield config


@pytest.fixture
def metrics_collector(tmp_path):
    """Collector isolated from the process-wide one."""
    return MetricsCollector(
        metrics_file=tmp_path / "metrics.json",
        auto_save_interval=0,
        load_existing=False,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def executor(fake_clock, recording_sleep, metrics_collector):
    """Executor with instant backoff and a controllable breaker clock."""
    return ResilienceExecutor(
        retry_config=RetryConfig(max_attempts=3, base_delay_ms=10, jitter=False),
        circuit_breaker_config=CircuitBreakerConfig(
            failure_threshold=3, reset_timeout_ms=1000
        ),
        timeout_ms=5000,
        clock=fake_clock,
        sleep=recording_sleep,
        metrics_collector=metrics_collector,
    )


def _backend(kind: str, data_dir: Path, db_dir: Path):
    if kind == "memory":
        return create_memory_backend(enforce_revisions=True)
    if kind == "sql":
        return create_sql_backend(f"sqlite:///{db_dir / 'repo.db'}")
    return create_file_backend(data_dir, backup_count=2)


@pytest.fixture(params=["memory", "sql", "files"])
async def repository(request, temp_dirs, executor, anyio_backend):
    """An initialized repository over each storage medium."""
    data_dir, db_dir = temp_dirs
    repo = DocumentRepository(_backend(request.param, data_dir, db_dir), executor=executor)
    await repo.initialize()
    yield repo
    await repo.close()


@pytest.fixture
async def memory_repository(executor, anyio_backend):
    repo = DocumentRepository(create_memory_backend(enforce_revisions=True), executor=executor)
    await repo.initialize()
    yield repo
    await repo.close()


@pytest.fixture
async def sql_backend(temp_dirs, anyio_backend):
    _, db_dir = temp_dirs
    backend = create_sql_backend(f"sqlite:///{db_dir / 'adapter.db'}")
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
async def file_backend(temp_dirs, anyio_backend):
    data_dir, _ = temp_dirs
    backend = create_file_backend(data_dir, backup_count=2)
    await backend.initialize()
    yield backend
    await backend.close()
