"""Document repository, read cache and factory."""

from notevault.repository.cache import LRUCache
from notevault.repository.document_repository import DocumentRepository, ImportSummary
from notevault.repository.factory import RepositoryFactory

__all__ = ["DocumentRepository", "ImportSummary", "LRUCache", "RepositoryFactory"]
