"""
Tests for the PostgreSQL adapter.
"""
import psycopg
import pytest
from psycopg import sql

from dbha.adapters.postgres import PostgresAdapter, build_primary_conninfo, lsn_to_int
from dbha.core.cluster import Leader
from dbha.core.topology import Topology
from dbha.exceptions import AdapterStateError, AdapterUnavailableError


def test_lsn_to_int():
    assert lsn_to_int("16/B374D848") == (0x16 << 32) + 0xB374D848
    assert lsn_to_int("0/0") == 0
    assert lsn_to_int(None) == 0
    assert lsn_to_int("garbage") == 0


def test_lsn_ordering_follows_wal_position():
    assert lsn_to_int("1/0") > lsn_to_int("0/FFFFFFFF")


def test_primary_conninfo():
    assert build_primary_conninfo("pg-postgresql-0", "pg-postgresql-1", 5432, "replicator") == (
        "host=pg-postgresql-0 port=5432 user=replicator application_name=pg-postgresql-1"
    )
    assert build_primary_conninfo(
        "pg-postgresql-0", "pg-postgresql-1", 5432, "replicator", headless_service="pg-postgresql-pods"
    ).startswith("host=pg-postgresql-0.pg-postgresql-pods ")


@pytest.mark.asyncio
async def test_follow_without_leader_is_noop(test_settings):
    adapter = PostgresAdapter(test_settings, Topology.from_settings(test_settings))

    await adapter.handle_follow(None, "pg-postgresql-1")
    await adapter.handle_follow(Leader(name="pg-postgresql-1", ttl=15), "pg-postgresql-1")


class FakeCursor:
    def __init__(self, connection: "FakeConnection"):
        self.connection = connection
        self.row = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, query, params=None):
        self.connection.queries.append(query)
        text = query if isinstance(query, str) else ""
        for fragment, answer in self.connection.answers.items():
            if fragment in text:
                if isinstance(answer, Exception):
                    raise answer
                self.row = answer
                return
        self.row = None

    async def fetchone(self):
        return self.row


class FakeConnection:
    """Scripted psycopg connection: query fragment -> row or exception."""

    def __init__(self):
        self.answers = {}
        self.queries = []
        self.refuse = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def cursor(self):
        return FakeCursor(self)


@pytest.fixture
def connection(monkeypatch) -> FakeConnection:
    conn = FakeConnection()

    async def connect(*args, **kwargs):
        if conn.refuse is not None:
            raise conn.refuse
        return conn

    monkeypatch.setattr(psycopg.AsyncConnection, "connect", connect)
    return conn


@pytest.fixture
def adapter(test_settings) -> PostgresAdapter:
    settings = test_settings.model_copy(
        update={"pg_ctl_path": "/nonexistent/pg_ctl", "pgdata": "/nonexistent/pgdata"}
    )
    return PostgresAdapter(settings, Topology.from_settings(settings))


@pytest.mark.asyncio
async def test_unreachable_server_reads_as_not_running(adapter, connection):
    connection.refuse = psycopg.OperationalError("connection refused")

    assert not await adapter.is_running("pg-postgresql-0")
    with pytest.raises(AdapterUnavailableError):
        await adapter.is_leader()


@pytest.mark.asyncio
async def test_query_errors_map_to_adapter_state_error(adapter, connection):
    connection.answers["pg_control_checkpoint"] = psycopg.errors.InsufficientPrivilege(
        "permission denied for function pg_control_checkpoint"
    )

    with pytest.raises(AdapterStateError):
        await adapter.get_extra()


@pytest.mark.asyncio
async def test_missing_pg_ctl_maps_to_adapter_state_error(adapter, connection):
    with pytest.raises(AdapterStateError) as exc_info:
        await adapter.start("pg-postgresql-0")

    assert exc_info.value.details["pg_ctl_path"] == "/nonexistent/pg_ctl"


@pytest.mark.asyncio
async def test_demote_standby_is_noop(adapter, connection):
    connection.answers["pg_is_in_recovery"] = (True,)

    await adapter.demote("pg-postgresql-0")

    assert connection.queries == ["SELECT pg_is_in_recovery()"]


@pytest.mark.asyncio
async def test_demote_primary_without_pg_ctl_fails(adapter, connection):
    connection.answers["pg_is_in_recovery"] = (False,)

    with pytest.raises(AdapterStateError):
        await adapter.demote("pg-postgresql-0")


@pytest.mark.asyncio
async def test_enforce_primary_role_promotes_standby(adapter, connection):
    connection.answers["pg_is_in_recovery"] = (True,)
    connection.answers["pg_promote"] = (True,)

    await adapter.enforce_primary_role("pg-postgresql-0")

    assert "SELECT pg_promote(true, 60)" in connection.queries


@pytest.mark.asyncio
async def test_enforce_primary_role_on_primary_is_noop(adapter, connection):
    connection.answers["pg_is_in_recovery"] = (False,)

    await adapter.enforce_primary_role("pg-postgresql-0")

    assert connection.queries == ["SELECT pg_is_in_recovery()"]


@pytest.mark.asyncio
async def test_failed_promotion_raises(adapter, connection):
    connection.answers["pg_is_in_recovery"] = (True,)
    connection.answers["pg_promote"] = (False,)

    with pytest.raises(AdapterStateError):
        await adapter.enforce_primary_role("pg-postgresql-0")


@pytest.mark.asyncio
async def test_follow_rewrites_primary_conninfo(adapter, connection):
    connection.answers["pg_is_in_recovery"] = (True,)
    connection.answers["primary_conninfo"] = ("host=old-leader port=5432",)

    await adapter.handle_follow(Leader(name="pg-postgresql-0", ttl=15), "pg-postgresql-1")

    assert any(isinstance(q, sql.Composed) for q in connection.queries)
    assert connection.queries[-1] == "SELECT pg_reload_conf()"


@pytest.mark.asyncio
async def test_follow_with_current_conninfo_is_noop(adapter, connection):
    conninfo = build_primary_conninfo(
        "pg-postgresql-0",
        "pg-postgresql-1",
        adapter.replication_port,
        adapter.replication_user,
        adapter.headless_service,
    )
    connection.answers["pg_is_in_recovery"] = (True,)
    connection.answers["primary_conninfo"] = (conninfo,)

    await adapter.handle_follow(Leader(name="pg-postgresql-0", ttl=15), "pg-postgresql-1")

    assert connection.queries == ["SELECT pg_is_in_recovery()", "SHOW primary_conninfo"]


@pytest.mark.asyncio
async def test_follow_refused_while_primary(adapter, connection):
    connection.answers["pg_is_in_recovery"] = (False,)

    with pytest.raises(AdapterStateError):
        await adapter.handle_follow(Leader(name="pg-postgresql-0", ttl=15), "pg-postgresql-1")
