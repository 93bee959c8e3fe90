"""
PostgreSQL adapter.

Roles are read from ``pg_is_in_recovery()``; progress is the WAL position
(current LSN on a primary, replay LSN on a standby). Process control goes
through ``pg_ctl`` against the local data directory.
"""
import asyncio
import os
from typing import Any, Dict, Optional

import psycopg
from psycopg import sql

from dbha.adapters.base import DatabaseAdapter
from dbha.adapters.registry import adapter_registry
from dbha.config.logging import get_logger
from dbha.config.settings import Settings
from dbha.core.cluster import Leader
from dbha.core.topology import Topology
from dbha.exceptions import AdapterStateError, AdapterUnavailableError

logger = get_logger(__name__)

STANDBY_SIGNAL = "standby.signal"


def lsn_to_int(lsn: Optional[str]) -> int:
    """Convert a textual LSN (``16/B374D848``) to a byte position."""
    if not lsn:
        return 0
    high, _, low = lsn.partition("/")
    try:
        return (int(high, 16) << 32) + int(low, 16)
    except ValueError:
        return 0


def build_primary_conninfo(
    leader: str,
    member: str,
    port: int,
    user: str,
    headless_service: Optional[str] = None,
) -> str:
    """``primary_conninfo`` pointing a standby at ``leader``."""
    host = f"{leader}.{headless_service}" if headless_service else leader
    return f"host={host} port={port} user={user} application_name={member}"


class PostgresAdapter(DatabaseAdapter):
    """Adapter for a PostgreSQL instance running next to the sidecar."""

    engine = "postgresql"

    def __init__(self, settings: Settings, topology: Topology):
        super().__init__(topology)
        self.database_url = settings.database_url
        self.pgdata = settings.pgdata
        self.pg_ctl_path = settings.pg_ctl_path
        self.replication_user = settings.replication_user
        self.replication_port = settings.replication_port
        self.headless_service = settings.headless_service
        self.connect_timeout = max(int(settings.adapter_call_timeout), 1)

    async def _query(self, query: Any, params: Optional[tuple] = None, fetch: bool = True) -> Any:
        try:
            async with await psycopg.AsyncConnection.connect(
                self.database_url, autocommit=True, connect_timeout=self.connect_timeout
            ) as conn:
                async with conn.cursor() as cur:
                    await cur.execute(query, params)
                    return await cur.fetchone() if fetch else None
        except psycopg.OperationalError as e:
            raise AdapterUnavailableError(f"PostgreSQL unreachable: {e}")
        except psycopg.Error as e:
            raise AdapterStateError(
                f"PostgreSQL query failed: {e}",
                details={"sqlstate": getattr(e, "sqlstate", None)},
            )

    async def _pg_ctl(self, *args: str) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.pg_ctl_path,
                *args,
                "-D",
                self.pgdata,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise AdapterStateError(
                f"pg_ctl {args[0]} could not be executed: {e}",
                details={"pg_ctl_path": self.pg_ctl_path},
            )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise AdapterStateError(
                f"pg_ctl {args[0]} failed",
                details={"returncode": process.returncode, "stderr": stderr.decode(errors="replace")},
            )
        logger.info("pg_ctl_completed", command=args[0], output=stdout.decode(errors="replace").strip())

    async def init_delay(self) -> None:
        await self._query("SELECT 1")

    async def is_leader(self) -> bool:
        row = await self._query("SELECT pg_is_in_recovery()")
        return not row[0]

    async def is_running(self, member: str) -> bool:
        try:
            await self._query("SELECT 1")
        except AdapterUnavailableError:
            return False
        return True

    async def get_sys_id(self) -> str:
        row = await self._query("SELECT system_identifier FROM pg_control_system()")
        return str(row[0])

    async def _current_lsn(self) -> str:
        row = await self._query(
            "SELECT CASE WHEN pg_is_in_recovery() "
            "THEN COALESCE(pg_last_wal_replay_lsn(), pg_last_wal_receive_lsn())::text "
            "ELSE pg_current_wal_lsn()::text END"
        )
        return row[0] or ""

    async def get_op_time(self) -> int:
        return lsn_to_int(await self._current_lsn())

    async def get_extra(self) -> Dict[str, str]:
        row = await self._query("SELECT timeline_id FROM pg_control_checkpoint()")
        return {"timeline": str(row[0]), "lsn": await self._current_lsn()}

    async def get_sync_state(self) -> Dict[str, str]:
        row = await self._query("SHOW synchronous_standby_names")
        return {"synchronous_standby_names": row[0] or ""}

    async def start(self, member: str) -> None:
        logger.info("postgres_starting", member=member, pgdata=self.pgdata)
        await self._pg_ctl("start", "-w", "-t", "60")

    async def demote(self, member: str) -> None:
        if not await self.is_leader():
            return
        logger.warning("postgres_demoting", member=member)
        await self._pg_ctl("stop", "-m", "fast", "-w")
        signal_path = os.path.join(self.pgdata, STANDBY_SIGNAL)
        try:
            with open(signal_path, "a"):
                pass
        except OSError as e:
            raise AdapterStateError(f"Cannot write {STANDBY_SIGNAL}: {e}", details={"path": signal_path})
        await self._pg_ctl("start", "-w", "-t", "60")

    async def enforce_primary_role(self, member: str) -> None:
        if await self.is_leader():
            return
        logger.warning("postgres_promoting", member=member)
        row = await self._query("SELECT pg_promote(true, 60)")
        if not row[0]:
            raise AdapterStateError("pg_promote did not complete", details={"member": member})

    async def handle_follow(self, leader: Optional[Leader], member: str) -> None:
        if leader is None or leader.name == member:
            return
        if await self.is_leader():
            raise AdapterStateError(
                "Engine is primary, demote before following",
                details={"member": member, "leader": leader.name},
            )

        conninfo = build_primary_conninfo(
            leader.name, member, self.replication_port, self.replication_user, self.headless_service
        )
        row = await self._query("SHOW primary_conninfo")
        if row[0] == conninfo:
            return

        logger.info("postgres_following", member=member, leader=leader.name)
        await self._query(
            sql.SQL("ALTER SYSTEM SET primary_conninfo = {}").format(sql.Literal(conninfo)), fetch=False
        )
        await self._query("SELECT pg_reload_conf()")


@adapter_registry.register("postgresql", "postgres")
def build_postgres_adapter(settings: Settings, topology: Topology) -> PostgresAdapter:
    return PostgresAdapter(settings, topology)
