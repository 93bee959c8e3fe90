"""
Lease Store backed by Kubernetes ConfigMaps.

Owns the serialized cluster lease record and performs every write as a
compare-and-swap on the ConfigMap ``resourceVersion``:

- ``{cluster}-{component}-leader``: leader lease, sysID, TTL and members
- ``{cluster}-{component}-switchover``: pending manual switchover request

A write that loses a race raises ``LeaseConflictError``. That is a signal,
not a failure: the caller reloads and decides again on fresh state.

Usage:
    >>> store = LeaseStore(core_api, "default", "mycluster", "postgresql", ttl=15)
    >>> cluster = await store.refresh()
    >>> if not cluster.is_locked(time.time()):
    ...     await store.try_acquire_leader("mycluster-postgresql-0")
"""
import asyncio
import copy
import json
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional

import aiohttp
from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiException

from dbha.config.logging import get_logger
from dbha.core.cluster import Cluster, ClusterConfig, Leader, Member, Switchover
from dbha.exceptions import (
    InvalidSwitchoverError,
    LeaseConflictError,
    LeaseNotFoundError,
    LeaseStoreUnavailableError,
    NotLeaderError,
    SysIDMismatchError,
)
from dbha.utils.retry import retry_async

logger = get_logger(__name__)

LEADER_SUFFIX = "-leader"
SWITCHOVER_SUFFIX = "-switchover"

# Leader record annotations
SYSID = "sysid"
LEADER = "leader"
ACQUIRE_TIME = "acquire-time"
RENEW_TIME = "renew-time"
TTL = "ttl"
OPTIME = "optime"
EXTRA = "extra"
MEMBERS = "members"

# Switchover record annotations
SWITCHOVER_LEADER = "leader"
SWITCHOVER_CANDIDATE = "candidate"


def _to_float(value: Optional[str], default: float = 0.0) -> float:
    try:
        return float(value) if value not in (None, "") else default
    except ValueError:
        return default


def _to_int(value: Optional[str], default: int = 0) -> int:
    try:
        return int(float(value)) if value not in (None, "") else default
    except ValueError:
        return default


def _to_dict(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class LeaseStore:
    """
    Single point of truth for the cluster lease record of one replica group.

    The store keeps the record it loaded last so that writes can carry its
    concurrency token. That snapshot is only valid for one reconciliation
    tick: callers ``refresh()`` before deciding anything.
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        namespace: str,
        cluster_name: str,
        component_name: str,
        ttl: int = 15,
        *,
        call_timeout: float = 5.0,
        member_touch_interval: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize lease store.

        Args:
            core_api: Kubernetes CoreV1Api used for ConfigMap access
            namespace: Namespace of the replica group
            cluster_name: Cluster the replica group belongs to
            component_name: Component name of the replica group
            ttl: Lease validity used when the record carries none
            call_timeout: Deadline for a single API call
            member_touch_interval: Minimum seconds between member heartbeats
            clock: Time source (unix seconds)
        """
        self.core_api = core_api
        self.namespace = namespace
        self.cluster_name = cluster_name
        self.component_name = component_name
        self.ttl = ttl
        self.call_timeout = call_timeout
        self.member_touch_interval = member_touch_interval
        self.clock = clock

        self._record: Optional[client.V1ConfigMap] = None
        self._cluster: Cluster = Cluster.empty(ttl)
        # Versions produced by our own writes, so their watch events can be told apart.
        self.written_versions: Deque[str] = deque(maxlen=32)

    @property
    def cluster_comp_name(self) -> str:
        return f"{self.cluster_name}-{self.component_name}"

    @property
    def leader_record_name(self) -> str:
        return self.cluster_comp_name + LEADER_SUFFIX

    @property
    def switchover_record_name(self) -> str:
        return self.cluster_comp_name + SWITCHOVER_SUFFIX

    def get_cluster(self) -> Cluster:
        """Cluster view from the most recent load or write."""
        return self._cluster

    # ------------------------------------------------------------------
    # Kubernetes I/O
    # ------------------------------------------------------------------

    async def _call(self, record_name: str, func: Callable[..., Any], **kwargs) -> Any:
        """
        Run one API call with a deadline and retries on transient errors.

        Translates API errors into the store's error taxonomy.
        """

        async def bounded(**kw):
            return await asyncio.wait_for(func(**kw), timeout=self.call_timeout)

        bounded.__name__ = getattr(func, "__name__", "k8s_call")

        try:
            return await retry_async(
                bounded,
                max_retries=2,
                initial_delay=0.2,
                max_delay=1.0,
                retry_on=(aiohttp.ClientConnectionError,),
                **kwargs,
            )
        except ApiException as e:
            if e.status == 404:
                raise LeaseNotFoundError(record_name)
            if e.status == 409:
                raise LeaseConflictError(details={"name": record_name, "reason": e.reason})
            raise LeaseStoreUnavailableError(
                f"Kubernetes API error on '{record_name}': {e.reason}",
                details={"name": record_name, "status": e.status},
            )
        except (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError) as e:
            raise LeaseStoreUnavailableError(
                f"Kubernetes API unreachable for '{record_name}': {e}",
                details={"name": record_name, "error_type": type(e).__name__},
            )

    async def _read(self, name: str) -> client.V1ConfigMap:
        return await self._call(
            name, self.core_api.read_namespaced_config_map, name=name, namespace=self.namespace
        )

    def _labels(self) -> Dict[str, str]:
        return {
            "app.kubernetes.io/instance": self.cluster_name,
            "app.kubernetes.io/component": self.component_name,
            "app.kubernetes.io/managed-by": "dbha",
        }

    async def _write(self, annotations: Dict[str, str], data: Dict[str, str]) -> Cluster:
        """
        Compare-and-swap the leader record against the loaded version.

        Creates the record when none was loaded; creation loses to a
        concurrent creator with ``LeaseConflictError``.
        """
        name = self.leader_record_name
        if self._record is None:
            body = client.V1ConfigMap(
                metadata=client.V1ObjectMeta(
                    name=name,
                    namespace=self.namespace,
                    labels=self._labels(),
                    annotations=annotations,
                ),
                data=data,
            )
            result = await self._call(
                name, self.core_api.create_namespaced_config_map, namespace=self.namespace, body=body
            )
        else:
            body = copy.deepcopy(self._record)
            body.metadata.annotations = annotations
            body.data = data
            result = await self._call(
                name,
                self.core_api.replace_namespaced_config_map,
                name=name,
                namespace=self.namespace,
                body=body,
            )

        switchover = self._cluster.switchover
        self._record = result
        self.written_versions.append(result.metadata.resource_version)
        self._cluster = self._parse(result)
        self._cluster.switchover = switchover
        return self._cluster

    def _current(self) -> tuple:
        """Copies of the loaded annotations and data, ready to modify."""
        if self._record is None:
            return {TTL: str(self.ttl)}, {}
        return dict(self._record.metadata.annotations or {}), dict(self._record.data or {})

    def _parse(self, record: client.V1ConfigMap) -> Cluster:
        annotations = record.metadata.annotations or {}
        data = record.data or {}
        ttl = _to_int(annotations.get(TTL), self.ttl) or self.ttl

        leader = None
        if annotations.get(LEADER):
            leader = Leader(
                name=annotations[LEADER],
                acquire_time=_to_float(annotations.get(ACQUIRE_TIME)),
                renew_time=_to_float(annotations.get(RENEW_TIME)),
                ttl=ttl,
                op_time=_to_int(annotations.get(OPTIME)),
                extra={k: str(v) for k, v in _to_dict(annotations.get(EXTRA)).items()},
            )

        members = {}
        for name, value in _to_dict(data.get(MEMBERS)).items():
            if isinstance(value, dict):
                members[name] = Member(name=name, **{k: v for k, v in value.items() if k != "name"})

        return Cluster(
            sys_id=annotations.get(SYSID, ""),
            leader=leader,
            members=members,
            config=ClusterConfig(ttl=ttl),
            resource_version=record.metadata.resource_version,
        )

    @staticmethod
    def _dump_members(members: Dict[str, Member]) -> str:
        return json.dumps(
            {name: member.model_dump(exclude={"name"}) for name, member in sorted(members.items())},
            sort_keys=True,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def load(self) -> Cluster:
        """
        Load the lease record and any pending switchover.

        Raises:
            LeaseNotFoundError: No record exists yet (fresh replica group)
            LeaseStoreUnavailableError: Store unreachable
        """
        try:
            record = await self._read(self.leader_record_name)
        except LeaseNotFoundError:
            self._record = None
            self._cluster = Cluster.empty(self.ttl)
            self._cluster.switchover = await self.load_switchover()
            raise

        cluster = self._parse(record)
        cluster.switchover = await self.load_switchover()
        self._record = record
        self._cluster = cluster
        return cluster

    async def refresh(self) -> Cluster:
        """Like ``load`` but an absent record reads as an empty cluster."""
        try:
            return await self.load()
        except LeaseNotFoundError:
            return self._cluster

    async def load_switchover(self) -> Optional[Switchover]:
        try:
            record = await self._read(self.switchover_record_name)
        except LeaseNotFoundError:
            return None
        annotations = record.metadata.annotations or {}
        return Switchover(
            leader=annotations.get(SWITCHOVER_LEADER, ""),
            candidate=annotations.get(SWITCHOVER_CANDIDATE, ""),
            resource_version=record.metadata.resource_version,
        )

    def has_member(self, name: str) -> bool:
        return self._cluster.has_member(name)

    def is_locked(self) -> bool:
        return self._cluster.is_locked(self.clock())

    def get_leader_name(self) -> Optional[str]:
        return self._cluster.leader_name()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def init(
        self,
        is_leader: bool,
        sys_id: str,
        extra: Optional[Dict[str, str]],
        op_time: int,
        member: str,
    ) -> Cluster:
        """
        Seed the lease record at member startup.

        Creates the record if absent (with ``member`` as leader when
        ``is_leader``). On an existing record the caller's view is validated
        and the member registered; an existing leader is never overwritten.

        Raises:
            SysIDMismatchError: A primary engine belongs to a different instance set
            LeaseConflictError: The record changed while seeding it
        """
        try:
            cluster = await self.load()
        except LeaseNotFoundError:
            cluster = None

        now = self.clock()
        annotations, data = self._current()
        members = dict(cluster.members) if cluster else {}

        if cluster is not None and is_leader and cluster.sys_id and sys_id and cluster.sys_id != sys_id:
            logger.error("lease_sysid_mismatch", member=member, expected=cluster.sys_id, actual=sys_id)
            raise SysIDMismatchError(cluster.sys_id, sys_id)

        changed = cluster is None
        if is_leader and sys_id and not annotations.get(SYSID):
            annotations[SYSID] = sys_id
            changed = True

        if cluster is None and is_leader:
            annotations.update({
                LEADER: member,
                ACQUIRE_TIME: str(now),
                RENEW_TIME: str(now),
                OPTIME: str(op_time),
                EXTRA: json.dumps(extra or {}, sort_keys=True),
            })

        if member not in members:
            members[member] = Member(
                name=member,
                role="leader" if is_leader else "follower",
                running=True,
                op_time=op_time,
                touched_at=now,
            )
            changed = True

        if not changed:
            return cluster

        data[MEMBERS] = self._dump_members(members)
        result = await self._write(annotations, data)
        logger.info(
            "lease_record_initialized" if cluster is None else "lease_record_validated",
            member=member,
            is_leader=is_leader,
            leader=result.leader_name(),
        )
        return result

    async def try_acquire_leader(
        self,
        member: str,
        op_time: int = 0,
        extra: Optional[Dict[str, str]] = None,
        sys_id: str = "",
    ) -> Cluster:
        """
        Take the leader lease if no valid leader is recorded.

        Single compare-and-swap against the loaded version; never retried here.

        Raises:
            LeaseConflictError: Another member holds a valid lease, or the record changed
        """
        now = self.clock()
        holder = self._cluster.leader_name()
        if self._cluster.is_locked(now) and holder != member:
            raise LeaseConflictError(
                f"Leader lease held by '{holder}'",
                details={"leader": holder, "member": member},
            )

        annotations, data = self._current()
        annotations.update({
            LEADER: member,
            ACQUIRE_TIME: str(now),
            RENEW_TIME: str(now),
            TTL: str(self._cluster.config.ttl),
            OPTIME: str(op_time),
            EXTRA: json.dumps(extra or {}, sort_keys=True),
        })
        if sys_id and not annotations.get(SYSID):
            annotations[SYSID] = sys_id
        result = await self._write(annotations, data)
        logger.info("lease_acquired", member=member, previous_leader=holder, ttl=self._cluster.config.ttl)
        return result

    async def renew_leader(self, member: str, op_time: int, extra: Optional[Dict[str, str]] = None) -> Cluster:
        """
        Refresh the lease held by ``member``.

        Raises:
            NotLeaderError: ``member`` is not the recorded leader
            LeaseConflictError: The record changed since it was loaded
        """
        holder = self._cluster.leader_name()
        if holder != member:
            raise NotLeaderError(member, holder)

        annotations, data = self._current()
        annotations.update({
            RENEW_TIME: str(self.clock()),
            OPTIME: str(op_time),
            EXTRA: json.dumps(extra or {}, sort_keys=True),
        })
        result = await self._write(annotations, data)
        logger.debug("lease_renewed", member=member, op_time=op_time)
        return result

    async def release_leader(self, member: str) -> bool:
        """Give the lease up if ``member`` holds it. Returns False otherwise."""
        if self._cluster.leader_name() != member:
            return False

        annotations, data = self._current()
        annotations.update({LEADER: "", RENEW_TIME: "0"})
        await self._write(annotations, data)
        logger.info("lease_released", member=member)
        return True

    async def touch_member(
        self,
        name: str,
        role: str,
        running: bool,
        op_time: int,
        extra: Optional[Dict[str, str]] = None,
        force: bool = False,
    ) -> bool:
        """
        Register or heartbeat a member entry. Idempotent.

        Skips the write while the entry is fresh and unchanged.

        Returns:
            True if the record was written
        """
        now = self.clock()
        existing = self._cluster.get_member(name)
        if (
            existing is not None
            and not force
            and existing.role == role
            and existing.running == running
            and now - existing.touched_at < self.member_touch_interval
        ):
            return False

        members = dict(self._cluster.members)
        members[name] = Member(
            name=name,
            role=role,
            running=running,
            op_time=op_time,
            touched_at=now,
            extra=extra or {},
        )
        annotations, data = self._current()
        data[MEMBERS] = self._dump_members(members)
        await self._write(annotations, data)
        if existing is None:
            logger.info("member_registered", member=name, role=role)
        return True

    async def delete_record(self, name: str) -> None:
        """Delete a coordination object. Missing objects count as deleted."""
        try:
            await self._call(
                name, self.core_api.delete_namespaced_config_map, name=name, namespace=self.namespace
            )
        except LeaseNotFoundError:
            return
        logger.info("lease_store_record_deleted", name=name)

    async def delete_switchover(self) -> None:
        await self.delete_record(self.switchover_record_name)
        self._cluster.switchover = None

    async def request_switchover(self, leader: str = "", candidate: str = "") -> Switchover:
        """
        Create a pending switchover request.

        Reads the leader record on its own so that the snapshot the controller
        decides on is left untouched.

        Raises:
            InvalidSwitchoverError: Unknown candidate, or ``leader`` is not the current leader
            LeaseConflictError: A switchover is already pending
        """
        try:
            cluster = self._parse(await self._read(self.leader_record_name))
        except LeaseNotFoundError:
            raise InvalidSwitchoverError("No lease record exists yet")
        leader = leader or cluster.leader_name() or ""
        if candidate and not cluster.has_member(candidate):
            raise InvalidSwitchoverError(
                f"Switchover candidate '{candidate}' is not a known member",
                details={"candidate": candidate, "members": sorted(cluster.members)},
            )
        if leader and leader != cluster.leader_name():
            raise InvalidSwitchoverError(
                f"'{leader}' is not the current leader",
                details={"leader": leader, "current_leader": cluster.leader_name()},
            )
        if candidate and candidate == cluster.leader_name():
            raise InvalidSwitchoverError(
                f"'{candidate}' already holds the leader lease",
                details={"candidate": candidate},
            )

        name = self.switchover_record_name
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=self.namespace,
                labels=self._labels(),
                annotations={SWITCHOVER_LEADER: leader, SWITCHOVER_CANDIDATE: candidate},
            ),
        )
        result = await self._call(
            name, self.core_api.create_namespaced_config_map, namespace=self.namespace, body=body
        )
        switchover = Switchover(
            leader=leader,
            candidate=candidate,
            resource_version=result.metadata.resource_version,
        )
        logger.info("switchover_requested", leader=leader, candidate=candidate or "any")
        return switchover
