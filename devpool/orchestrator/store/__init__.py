"""Document store implementations for shared orchestrator state."""

from devpool.orchestrator.store.base import DocumentStore
from devpool.orchestrator.store.local import LocalDocumentStore

__all__ = ["DocumentStore", "LocalDocumentStore"]
