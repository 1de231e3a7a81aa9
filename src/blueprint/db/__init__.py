"""Lifestyle Blueprint - Persistence layer."""

from blueprint.db.store import PersistenceStore, SupabaseStore

__all__ = ["PersistenceStore", "SupabaseStore"]
