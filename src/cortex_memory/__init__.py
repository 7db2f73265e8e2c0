"""
cortex-memory: persistent local memory for coding-assistant sessions.

Archives the durable parts of session transcripts into a single SQLite
file and recalls them with hybrid keyword + semantic search.
"""

from .archive import ArchivePipeline, ArchiveResult, archive_content
from .embeddings import EmbeddingProvider, ProviderUnavailable, SentenceTransformerProvider
from .memory import MemoryManager
from .search import SearchResult, SearchService
from .store import MemoryStore

__all__ = [
    "ArchivePipeline",
    "ArchiveResult",
    "EmbeddingProvider",
    "MemoryManager",
    "MemoryStore",
    "ProviderUnavailable",
    "SearchResult",
    "SearchService",
    "SentenceTransformerProvider",
    "archive_content",
]
