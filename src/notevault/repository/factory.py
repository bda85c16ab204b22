"""Composition of storage backend, executor and repository."""
import logging
from typing import List, Optional

from notevault.config import NotevaultConfig, StorageBackendKind
from notevault.repository.document_repository import DocumentRepository
from notevault.resilience.executor import ResilienceExecutor
from notevault.storage.base import StorageBackend
from notevault.storage.file_adapter import create_file_backend
from notevault.storage.memory_adapter import create_memory_backend
from notevault.storage.sql_adapter import create_sql_backend

logger = logging.getLogger(__name__)


class RepositoryFactory:
    """Build repositories for the backend named in configuration.

    The factory owns one ``ResilienceExecutor``; every repository it creates
    shares that executor and therefore one circuit breaker, so failures seen
    through any repository protect the whole process.
    """

    def __init__(
        self,
        config: NotevaultConfig,
        executor: Optional[ResilienceExecutor] = None,
    ) -> None:
        self.config = config
        self.executor = executor or ResilienceExecutor(
            retry_config=config.retry_config(),
            circuit_breaker_config=config.circuit_breaker_config(),
            timeout_ms=config.operation_timeout_ms,
        )
        self._repositories: List[DocumentRepository] = []

    def create_backend(
        self, kind: Optional[StorageBackendKind] = None
    ) -> StorageBackend:
        """Backend of ``kind``, defaulting to the configured one."""
        kind = kind or self.config.storage_backend
        if kind == StorageBackendKind.MEMORY:
            return create_memory_backend(enforce_revisions=True)
        if kind == StorageBackendKind.SQL:
            return create_sql_backend(self.config.get_db_url())
        if kind == StorageBackendKind.FILES:
            return create_file_backend(
                self.config.get_absolute_path(self.config.data_dir),
                backup_count=self.config.file_backup_count,
            )
        raise ValueError(f"Unsupported storage backend: {kind}")

    def create_repository(
        self, kind: Optional[StorageBackendKind] = None
    ) -> DocumentRepository:
        """A new, uninitialized repository on the shared executor."""
        backend = self.create_backend(kind)
        repository = DocumentRepository(
            backend,
            executor=self.executor,
            cache_size=self.config.cache_max_size,
            cache_ttl_seconds=self.config.cache_ttl_seconds,
        )
        self._repositories.append(repository)
        logger.debug(f"Created {backend.name} repository")
        return repository

    async def close_all(self) -> None:
        for repository in self._repositories:
            await repository.close()
        self._repositories.clear()
