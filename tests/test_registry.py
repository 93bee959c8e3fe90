"""
Tests for the engine-type adapter registry.
"""
import pytest

from dbha.adapters import adapter_registry
from dbha.adapters.postgres import PostgresAdapter
from dbha.adapters.registry import AdapterRegistry
from dbha.core.topology import Topology
from dbha.exceptions import ConfigurationError
from tests.conftest import FakeAdapter, make_topology


def test_bundled_engines_registered():
    assert {"postgresql", "postgres"} <= set(adapter_registry.engines())


def test_unknown_engine_rejected():
    with pytest.raises(ConfigurationError) as exc_info:
        adapter_registry.validate("oracle")

    assert exc_info.value.details["db_type"] == "oracle"
    assert "postgresql" in exc_info.value.details["supported"]


def test_create_postgres_adapter(test_settings):
    topology = Topology.from_settings(test_settings)

    adapter = adapter_registry.create("PostgreSQL", test_settings, topology)

    assert isinstance(adapter, PostgresAdapter)
    assert adapter.topology is topology


def test_register_custom_engine(test_settings, clock):
    registry = AdapterRegistry()

    @registry.register("fake")
    def build_fake(settings, topology):
        return FakeAdapter(topology, clock)

    adapter = registry.create("fake", test_settings, make_topology())

    assert isinstance(adapter, FakeAdapter)
    assert registry.engines() == ["fake"]


def test_duplicate_registration_rejected():
    registry = AdapterRegistry()
    registry.register("fake")(lambda settings, topology: None)

    with pytest.raises(ConfigurationError):
        registry.register("FAKE")(lambda settings, topology: None)
