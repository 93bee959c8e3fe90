"""
HA controller for one member of a replica group.

Decides on every reconciliation tick whether the local database should be
leader, follower or learner, and moves it there. Ticks are triggered by
lease events from ``LeaseWatcher`` and by a periodic fallback timer, and
never run concurrently. The lease record is re-read at the start of every
tick; nothing about leadership is cached across ticks except the local
belief ``is_leader_until``.

Features:
- Lease acquisition by compare-and-swap, first writer wins
- Bounded lease renewal and demotion on loss
- Manual switchover (leader yields, target acquires)
- Per-call deadlines on every adapter and store call
- Graceful shutdown (demote, then release the lease)
"""
import asyncio
import time
from typing import Any, Callable, Awaitable, Optional

from pydantic import BaseModel
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from dbha import metrics
from dbha.adapters.base import DatabaseAdapter
from dbha.config.logging import get_logger
from dbha.core.cluster import Cluster
from dbha.core.lease_store import LeaseStore
from dbha.core.state_machine import MemberRole, RoleStateMachine
from dbha.core.topology import Topology
from dbha.exceptions import (
    AdapterStateError,
    AdapterUnavailableError,
    ConfigurationError,
    HAException,
    LeaseConflictError,
    LeaseStoreUnavailableError,
    NotLeaderError,
    UnsupportedOperationError,
)
from dbha.utils.retry import backoff_delay
from dbha.workers.lease_watcher import LeaseEvent

logger = get_logger(__name__)


class LocalHAState(BaseModel):
    """Per-process HA state. Never shared with other members."""

    pod_identity: str
    db_type: str
    role: MemberRole = MemberRole.UNINITIALIZED
    is_leader_until: float = 0.0
    last_tick_at: float = 0.0
    last_outcome: str = ""
    renew_failures: int = 0


class HAController:
    """
    Reconciliation loop deciding the role of the local member.

    Usage:
        controller = HAController(store, adapter, topology, pod_name, "postgresql", events=queue)
        await controller.init()
        task = asyncio.create_task(controller.run())
        ...
        await controller.stop()
        await controller.shutdown()
    """

    def __init__(
        self,
        store: LeaseStore,
        adapter: DatabaseAdapter,
        topology: Topology,
        pod_name: str,
        db_type: str,
        *,
        events: Optional["asyncio.Queue[LeaseEvent]"] = None,
        resync_period: float = 10.0,
        grace_period: float = 2.0,
        renew_retries: int = 3,
        adapter_call_timeout: float = 5.0,
        tick_timeout: float = 30.0,
        init_attempts: int = 3,
        init_wait: float = 2.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.adapter = adapter
        self.topology = topology
        self.pod_name = pod_name
        self.events: "asyncio.Queue[LeaseEvent]" = events if events is not None else asyncio.Queue()
        self.resync_period = resync_period
        self.grace_period = grace_period
        self.renew_retries = renew_retries
        self.adapter_call_timeout = adapter_call_timeout
        self.tick_timeout = tick_timeout
        self.init_attempts = init_attempts
        self.init_wait = init_wait
        self.clock = clock
        self.sleep = sleep

        self.state = LocalHAState(pod_identity=pod_name, db_type=db_type)
        self.running = False
        self._stop_event = asyncio.Event()
        self._tick_lock = asyncio.Lock()
        self.log = logger.bind(member=pod_name)

    # ------------------------------------------------------------------
    # Adapter access with deadlines
    # ------------------------------------------------------------------

    async def _call(self, name: str, *args: Any) -> Any:
        """
        Invoke an adapter capability under the per-call deadline.

        Raises:
            AdapterUnavailableError: Call timed out or engine unreachable
        """
        method = getattr(self.adapter, name)
        try:
            return await asyncio.wait_for(method(*args), timeout=self.adapter_call_timeout)
        except asyncio.TimeoutError:
            raise AdapterUnavailableError(f"Adapter call '{name}' timed out", details={"call": name})

    async def _query(self, name: str, *args: Any, default: Any) -> Any:
        """Adapter query whose failure reads as ``default`` instead of aborting the tick."""
        try:
            return await self._call(name, *args)
        except (AdapterUnavailableError, AdapterStateError, UnsupportedOperationError) as e:
            self.log.warning("adapter_query_failed", call=name, error=e.message, default=default)
            return default

    def _set_role(self, role: MemberRole) -> None:
        RoleStateMachine.validate_transition(self.state.role, role, self.pod_name)
        self.state.role = role
        if role != MemberRole.LEADER:
            self.state.is_leader_until = 0.0
        metrics.set_role(role)

    def _settle_non_leader_role(self) -> None:
        """Leave LEADER / CANDIDATE for the member's declared replica role."""
        if self.state.role == MemberRole.LEADER:
            self._set_role(MemberRole.FOLLOWER)
        elif self.state.role in (MemberRole.CANDIDATE, MemberRole.UNINITIALIZED):
            self._set_role(self.topology.declared_role(self.pod_name))
        self.state.is_leader_until = 0.0

    def _become_leader(self, cluster: Cluster) -> None:
        if self.state.role != MemberRole.LEADER:
            if self.state.role != MemberRole.CANDIDATE:
                self._set_role(MemberRole.CANDIDATE)
            self._set_role(MemberRole.LEADER)
        renew_time = cluster.leader.renew_time if cluster.leader else self.clock()
        self.state.is_leader_until = renew_time + cluster.config.ttl

    async def _demote(self, reason: str) -> bool:
        """
        Demote the local engine. A failure is a split-brain risk: it is logged
        critically and retried on every following tick.
        """
        try:
            await self._call("demote", self.pod_name)
        except (AdapterUnavailableError, AdapterStateError) as e:
            self.log.critical("demote_failed_split_brain_risk", reason=reason, error=e.message)
            return False
        metrics.demotions_total.labels(reason=reason).inc()
        self.log.warning("database_demoted", reason=reason)
        self._settle_non_leader_role()
        return True

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def _startup_retrying(self, *exceptions: type) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.init_attempts),
            wait=wait_fixed(self.init_wait),
            retry=retry_if_exception_type(exceptions),
            reraise=True,
        )

    async def init(self) -> None:
        """
        Probe the local engine and seed the lease record with its view.

        Raises:
            AdapterStateError: Engine claims to be primary but is not running
            SysIDMismatchError: Primary engine belongs to another instance set
            LeaseStoreUnavailableError: Store unreachable after retries
        """
        await self.adapter.init()

        try:
            async for attempt in self._startup_retrying(AdapterUnavailableError):
                with attempt:
                    await self._call("init_delay")
        except AdapterUnavailableError as e:
            self.log.warning("database_not_ready_at_startup", error=e.message)

        is_leader = False
        try:
            async for attempt in self._startup_retrying(AdapterUnavailableError):
                with attempt:
                    is_leader = await self._call("is_leader")
        except AdapterUnavailableError as e:
            self.log.warning("database_role_unknown_at_startup", error=e.message)

        if is_leader and self.topology.is_learner(self.pod_name):
            raise ConfigurationError(
                f"Learner '{self.pod_name}' runs a primary engine",
                details={"member": self.pod_name},
            )

        if is_leader:
            if not await self._query("is_running", self.pod_name, default=False):
                raise AdapterStateError("Database reports primary role but is not running")
            sys_id = await self._call("get_sys_id")
            extra = await self._call("get_extra")
            op_time = await self._call("get_op_time")
        else:
            sys_id, extra, op_time = "", {}, 0

        cluster = None
        async for attempt in self._startup_retrying(LeaseConflictError, LeaseStoreUnavailableError):
            with attempt:
                cluster = await self.store.init(is_leader, sys_id, extra, op_time, self.pod_name)

        now = self.clock()
        if is_leader and cluster.is_locked(now) and cluster.leader_name() == self.pod_name:
            self._set_role(MemberRole.LEADER)
            self.state.is_leader_until = cluster.leader.renew_time + cluster.config.ttl
        else:
            self._set_role(self.topology.declared_role(self.pod_name))

        self.log.info(
            "ha_controller_initialized",
            role=self.state.role.value,
            leader=cluster.leader_name(),
            sys_id=cluster.sys_id,
        )

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _is_own_write(self, event: LeaseEvent) -> bool:
        return (
            event.name == self.store.leader_record_name
            and event.resource_version is not None
            and event.resource_version in self.store.written_versions
        )

    async def _next_event(self, timeout: float) -> Optional[LeaseEvent]:
        get_task = asyncio.ensure_future(self.events.get())
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {get_task, stop_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (get_task, stop_task):
                if not task.done():
                    task.cancel()
        if get_task in done:
            return get_task.result()
        return None

    async def _wait_for_trigger(self) -> Optional[str]:
        """
        Block until the next tick is due.

        Returns ``"event"`` for a foreign change of a watched record,
        ``"resync"`` when the fallback timer fires, None on stop. Queued
        events are coalesced; changes this member wrote itself do not
        trigger a tick.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.resync_period
        while self.running:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return "resync"
            event = await self._next_event(remaining)
            if not self.running:
                return None
            if event is None:
                continue
            events = [event]
            while not self.events.empty():
                events.append(self.events.get_nowait())
            if any(not self._is_own_write(e) for e in events):
                return "event"
        return None

    async def run(self) -> None:
        """Run reconciliation ticks until stopped."""
        self.running = True
        self._stop_event.clear()
        self.log.info("ha_controller_started", resync_period=self.resync_period)

        trigger: Optional[str] = "startup"
        while self.running:
            try:
                if trigger is None:
                    trigger = await self._wait_for_trigger()
                    if trigger is None:
                        break
                trigger = None
                await self.run_tick()
            except asyncio.CancelledError:
                self.log.info("ha_controller_cancelled")
                break
            except (ConfigurationError, UnsupportedOperationError):
                self.running = False
                raise
            except Exception as e:
                self.log.error("ha_tick_unexpected_error", error=str(e), exc_info=True)

        self.log.info("ha_controller_stopped")

    async def stop(self) -> None:
        """Stop the loop. A tick in flight is allowed to finish."""
        self.log.info("stopping_ha_controller")
        self.running = False
        self._stop_event.set()

    async def shutdown(self) -> None:
        """
        Hand leadership back before the process exits.

        The engine is demoted before the lease is released so that no
        follower can acquire while this engine still accepts writes. The
        member entry is then marked as not running so that it drops out of
        candidate ranking.
        """
        async with self._tick_lock:
            try:
                if self.state.role == MemberRole.LEADER and await self._demote("shutdown"):
                    await self.store.refresh()
                    await self.store.release_leader(self.pod_name)
                await self.store.refresh()
                await self.store.touch_member(self.pod_name, self.state.role.value, False, 0, force=True)
            except (LeaseConflictError, LeaseStoreUnavailableError) as e:
                self.log.warning("lease_update_failed_on_shutdown", error=e.message)
            await self.adapter.close()
        self.log.info("ha_controller_shutdown_complete")

    async def run_tick(self) -> str:
        """Run one bounded reconciliation tick and record its outcome."""
        async with self._tick_lock:
            try:
                outcome = await asyncio.wait_for(self.reconcile(), timeout=self.tick_timeout)
            except asyncio.TimeoutError:
                outcome = "timeout"
                self.log.warning("ha_tick_timeout", timeout=self.tick_timeout)
            except LeaseStoreUnavailableError as e:
                outcome = "store_unavailable"
                self.log.warning("lease_store_unavailable", error=e.message)
                await self._guard_unreachable_store()
            except LeaseConflictError:
                outcome = "conflict"
                metrics.lease_conflicts_total.labels(operation="tick").inc()
                self.log.debug("ha_tick_conflict")
            except (AdapterUnavailableError, AdapterStateError) as e:
                outcome = "adapter_error"
                self.log.error("ha_tick_adapter_error", error=e.message, details=e.details)

            self.state.last_tick_at = self.clock()
            self.state.last_outcome = outcome
            metrics.ticks_total.labels(outcome=outcome).inc()
            return outcome

    async def _guard_unreachable_store(self) -> None:
        """A leader that cannot reach the store steps down once its lease ran out."""
        if self.state.role == MemberRole.LEADER and self.clock() >= self.state.is_leader_until:
            self.log.warning("lease_unverifiable_demoting", is_leader_until=self.state.is_leader_until)
            await self._demote("store_unreachable")

    # ------------------------------------------------------------------
    # Decision algorithm
    # ------------------------------------------------------------------

    async def reconcile(self) -> str:
        """One pass of the role decision algorithm."""
        cluster = await self.store.refresh()
        if self.state.role == MemberRole.UNINITIALIZED:
            self._set_role(self.topology.declared_role(self.pod_name))

        if not await self._query("is_running", self.pod_name, default=False):
            self.log.warning("database_not_running")
            try:
                await self._call("start", self.pod_name)
            except (AdapterUnavailableError, AdapterStateError) as e:
                self.log.error("database_start_failed", error=e.message)
            await self._touch(running=False)
            return "database_not_running"

        await self._touch(running=True)
        cluster = self.store.get_cluster()

        if cluster.is_locked(self.clock()):
            if cluster.leader_name() != self.pod_name:
                return await self._follow(cluster)
            return await self._lead(cluster)

        return await self._elect(cluster)

    async def _touch(self, running: bool) -> None:
        """Register / heartbeat this member. Conflicts only delay the heartbeat."""
        role = self.state.role
        if role in (MemberRole.UNINITIALIZED, MemberRole.CANDIDATE):
            role = self.topology.declared_role(self.pod_name)
        op_time = await self._query("get_op_time", default=0) if running else 0
        try:
            await self.store.touch_member(self.pod_name, role.value, running, op_time)
        except LeaseConflictError:
            metrics.lease_conflicts_total.labels(operation="touch_member").inc()
            self.log.debug("member_touch_conflict")
            await self.store.refresh()

    async def _follow(self, cluster: Cluster) -> str:
        """Replicate from the recorded leader, demoting a local primary first."""
        if await self._query("is_leader", default=False):
            self.log.warning("foreign_leader_local_primary", leader=cluster.leader_name())
            if not await self._demote("foreign_leader"):
                return "demote_failed"

        self._settle_non_leader_role()
        try:
            await self._call("handle_follow", cluster.leader, self.pod_name)
        except (AdapterUnavailableError, AdapterStateError) as e:
            self.log.error("handle_follow_failed", leader=cluster.leader_name(), error=e.message)
            return "follow_failed"
        return "following"

    async def _lead(self, cluster: Cluster) -> str:
        if self.state.role != MemberRole.LEADER:
            # The record names us but we gave the role up; only a fresh
            # acquisition may bring it back.
            self.log.warning("stale_lease_held_by_self", role=self.state.role.value)
            try:
                await self.store.release_leader(self.pod_name)
            except LeaseConflictError:
                metrics.lease_conflicts_total.labels(operation="release").inc()
            return "stale_lease_released"

        if cluster.switchover is not None:
            outcome = await self._process_switchover_as_leader(cluster)
            if outcome is not None:
                return outcome

        if not await self._renew_with_retry():
            metrics.renew_failures_total.inc()
            self.state.renew_failures += 1
            self.log.warning("lease_renew_failed", attempts=self.renew_retries)
            # Unknown engine role counts as primary here: an extra demotion is safer than two leaders.
            if await self._query("is_leader", default=True):
                if not await self._demote("lease_lost"):
                    return "demote_failed"
            self._settle_non_leader_role()
            return "lease_lost"

        self.state.renew_failures = 0
        self._become_leader(self.store.get_cluster())
        try:
            await self._call("enforce_primary_role", self.pod_name)
        except (AdapterUnavailableError, AdapterStateError) as e:
            self.log.error("enforce_primary_role_failed", error=e.message)
            return "enforce_failed"
        return "leader_renewed"

    async def _renew_with_retry(self) -> bool:
        op_time = await self._query("get_op_time", default=0)
        extra = await self._query("get_extra", default={})

        for attempt in range(1, self.renew_retries + 1):
            try:
                await self.store.renew_leader(self.pod_name, op_time, extra)
                return True
            except NotLeaderError:
                return False
            except LeaseConflictError:
                metrics.lease_conflicts_total.labels(operation="renew").inc()
                self.log.debug("lease_renew_conflict", attempt=attempt)
                cluster = await self.store.refresh()
                if cluster.leader_name() != self.pod_name:
                    return False

            if attempt < self.renew_retries:
                await self.sleep(backoff_delay(attempt - 1, 0.1, 1.0))

        return False

    async def _process_switchover_as_leader(self, cluster: Cluster) -> Optional[str]:
        """
        Yield leadership for a pending switchover.

        Returns an outcome when the tick should end here, None to carry on
        as leader (no switchover applies, or its target is not ready).
        """
        switchover = cluster.switchover
        candidate = switchover.candidate

        if switchover.leader and switchover.leader != self.pod_name:
            self.log.warning("switchover_stale_marker", marker_leader=switchover.leader)
            await self.store.delete_switchover()
            return None

        if candidate == self.pod_name:
            self.log.info("switchover_completed", leader=self.pod_name)
            await self.store.delete_switchover()
            return None

        if candidate and (
            not cluster.has_member(candidate) or not self.topology.is_legal_switchover_target(candidate)
        ):
            self.log.warning("switchover_invalid_candidate", candidate=candidate)
            await self.store.delete_switchover()
            return None

        try:
            yielded = await self._call("process_manual_switchover_from_leader", cluster, self.pod_name)
        except (AdapterUnavailableError, AdapterStateError) as e:
            self.log.error("switchover_from_leader_failed", error=e.message)
            return None
        if not yielded:
            return None

        metrics.demotions_total.labels(reason="switchover").inc()
        self._settle_non_leader_role()
        try:
            await self.store.release_leader(self.pod_name)
        except LeaseConflictError:
            metrics.lease_conflicts_total.labels(operation="release").inc()
            self.log.info("switchover_release_conflict_waiting_for_expiry")
        self.log.info("switchover_yielded", candidate=candidate or "any")
        return "switchover_yielded"

    async def _is_eligible(self, cluster: Cluster) -> bool:
        """Whether this member is a legitimate candidate while no leader is valid."""
        if self.topology.is_learner(self.pod_name):
            return False
        if not await self._query("is_running", self.pod_name, default=False):
            return False

        if await self._query("is_leader", default=False):
            sys_id = await self._query("get_sys_id", default="")
            if not cluster.sys_id or sys_id == cluster.sys_id:
                return True
            self.log.warning("sysid_mismatch_not_eligible", expected=cluster.sys_id, actual=sys_id)
            return False

        if cluster.switchover is not None:
            return await self._query(
                "process_manual_switchover_from_no_leader", cluster, self.pod_name, default=False
            )

        return await self._query("is_healthiest", cluster, self.pod_name, default=False)

    async def _elect(self, cluster: Cluster) -> str:
        """No valid leader: acquire if eligible, otherwise wait and follow."""
        if await self._is_eligible(cluster):
            if self.state.role != MemberRole.LEADER:
                self._set_role(MemberRole.CANDIDATE)
            op_time = await self._query("get_op_time", default=0)
            extra = await self._query("get_extra", default={})
            sys_id = await self._query("get_sys_id", default="")
            try:
                acquired = await self.store.try_acquire_leader(self.pod_name, op_time, extra, sys_id=sys_id)
            except LeaseConflictError:
                metrics.lease_conflicts_total.labels(operation="acquire").inc()
                self.log.info("lease_acquire_lost_race")
            else:
                metrics.lease_acquired_total.inc()
                self._become_leader(acquired)
                if cluster.switchover is not None:
                    try:
                        await self.store.delete_switchover()
                    except LeaseStoreUnavailableError as e:
                        self.log.warning("switchover_marker_not_cleared", error=e.message)
                try:
                    await self._call("enforce_primary_role", self.pod_name)
                except (AdapterUnavailableError, AdapterStateError) as e:
                    self.log.error("enforce_primary_role_failed", error=e.message)
                    return "enforce_failed"
                self.log.info("leader_acquired", op_time=op_time)
                return "leader_acquired"

        # Give the winner's write time to land.
        await self.sleep(self.grace_period)
        cluster = await self.store.refresh()

        if cluster.is_locked(self.clock()) and cluster.leader_name() != self.pod_name:
            return await self._follow(cluster)

        if self.state.role == MemberRole.LEADER:
            if not await self._demote("lease_expired"):
                return "demote_failed"
        self._settle_non_leader_role()
        return "no_leader"
