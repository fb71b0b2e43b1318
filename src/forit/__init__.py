"""forit pull-based configuration management."""

from .agent import Agent
from .corpus import CorpusManager
from .executors import ShellExecutor
from .inventory import InventoryStore

__all__ = ["Agent", "CorpusManager", "ShellExecutor", "InventoryStore"]
