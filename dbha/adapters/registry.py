"""
Engine-type registry for database adapters.

Engine plugins register a constructor under one or more type tags. Unknown
tags are rejected when the process starts, never at first use.

Usage:
    >>> @adapter_registry.register("postgresql", "postgres")
    ... def build_postgres(settings, topology):
    ...     return PostgresAdapter(settings, topology)
    >>> adapter = adapter_registry.create("postgresql", settings, topology)
"""
from typing import Callable, Dict, List

from dbha.adapters.base import DatabaseAdapter
from dbha.config.logging import get_logger
from dbha.config.settings import Settings
from dbha.core.topology import Topology
from dbha.exceptions import ConfigurationError

logger = get_logger(__name__)

AdapterFactory = Callable[[Settings, Topology], DatabaseAdapter]


class AdapterRegistry:
    """Maps engine-type identifiers to adapter constructors."""

    def __init__(self):
        self._factories: Dict[str, AdapterFactory] = {}

    def register(self, *engine_types: str) -> Callable[[AdapterFactory], AdapterFactory]:
        """Decorator registering a factory under each of ``engine_types``."""

        def decorator(factory: AdapterFactory) -> AdapterFactory:
            for engine_type in engine_types:
                key = engine_type.strip().lower()
                if key in self._factories:
                    raise ConfigurationError(f"Engine type '{key}' registered twice")
                self._factories[key] = factory
            return factory

        return decorator

    def engines(self) -> List[str]:
        return sorted(self._factories)

    def validate(self, engine_type: str) -> None:
        """
        Raises:
            ConfigurationError: Engine type has no registered adapter
        """
        if engine_type.strip().lower() not in self._factories:
            raise ConfigurationError(
                f"Unknown database engine type '{engine_type}'",
                details={"db_type": engine_type, "supported": self.engines()},
            )

    def create(self, engine_type: str, settings: Settings, topology: Topology) -> DatabaseAdapter:
        self.validate(engine_type)
        adapter = self._factories[engine_type.strip().lower()](settings, topology)
        logger.info("database_adapter_created", db_type=engine_type, adapter=type(adapter).__name__)
        return adapter


adapter_registry = AdapterRegistry()
