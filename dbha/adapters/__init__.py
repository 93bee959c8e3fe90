"""
Database engine adapters.

Importing this package registers every bundled engine plugin with
``adapter_registry``.
"""
from dbha.adapters.base import DatabaseAdapter
from dbha.adapters.registry import AdapterRegistry, adapter_registry
from dbha.adapters import postgres  # noqa: F401

__all__ = [
    "AdapterRegistry",
    "DatabaseAdapter",
    "adapter_registry",
]
