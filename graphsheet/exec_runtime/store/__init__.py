"""Graph store implementations for extracted agent graphs."""

from graphsheet.exec_runtime.store.base import GraphStore
from graphsheet.exec_runtime.store.local import LocalGraphStore

__all__ = ["GraphStore", "LocalGraphStore"]
