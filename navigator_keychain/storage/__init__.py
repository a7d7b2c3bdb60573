"""Persistence backends for the keychain."""
from .abstract import AbstractStore
from .memory import MemoryStore
from .postgres import PostgresStore

__all__ = ["AbstractStore", "MemoryStore", "PostgresStore"]
