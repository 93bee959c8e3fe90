"""
Pytest configuration and fixtures.

Provides an in-memory ConfigMap API with resourceVersion checks, a scripted
database adapter and a controllable clock, so that several members of one
replica group can be driven tick by tick inside a single test.
"""
from typing import Dict, List, Optional, Tuple

import pytest
from kubernetes_asyncio import client
from kubernetes_asyncio.client import ApiException

from dbha.adapters.base import DatabaseAdapter
from dbha.config.settings import Settings
from dbha.core.cluster import Leader
from dbha.core.lease_store import LeaseStore
from dbha.core.topology import AccessMode, RoleSpec, Topology
from dbha.workers.ha_controller import HAController

NAMESPACE = "default"
CLUSTER = "pg"
COMPONENT = "postgresql"


def pod(ordinal: int) -> str:
    return f"{CLUSTER}-{COMPONENT}-{ordinal}"


class FakeClock:
    """Manually advanced unix clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCoreV1Api:
    """In-memory ConfigMap API enforcing optimistic concurrency like the API server."""

    def __init__(self):
        self.objects: Dict[Tuple[str, str], client.V1ConfigMap] = {}
        self.version = 0
        self.writes = 0
        self.fail_replace = 0
        self.unavailable = False

    def _check(self) -> None:
        if self.unavailable:
            raise ApiException(status=503, reason="Service Unavailable")

    def _copy(self, obj: client.V1ConfigMap) -> client.V1ConfigMap:
        meta = obj.metadata
        return client.V1ConfigMap(
            metadata=client.V1ObjectMeta(
                name=meta.name,
                namespace=meta.namespace,
                labels=dict(meta.labels or {}),
                annotations=dict(meta.annotations or {}),
                resource_version=meta.resource_version,
            ),
            data=dict(obj.data or {}),
        )

    def _store(self, namespace: str, body: client.V1ConfigMap) -> client.V1ConfigMap:
        self.version += 1
        self.writes += 1
        obj = self._copy(body)
        obj.metadata.namespace = namespace
        obj.metadata.resource_version = str(self.version)
        self.objects[(namespace, obj.metadata.name)] = obj
        return self._copy(obj)

    async def read_namespaced_config_map(self, name: str, namespace: str) -> client.V1ConfigMap:
        self._check()
        obj = self.objects.get((namespace, name))
        if obj is None:
            raise ApiException(status=404, reason="Not Found")
        return self._copy(obj)

    async def create_namespaced_config_map(self, namespace: str, body: client.V1ConfigMap) -> client.V1ConfigMap:
        self._check()
        if (namespace, body.metadata.name) in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        return self._store(namespace, body)

    async def replace_namespaced_config_map(
        self, name: str, namespace: str, body: client.V1ConfigMap
    ) -> client.V1ConfigMap:
        self._check()
        if self.fail_replace:
            self.fail_replace -= 1
            raise ApiException(status=409, reason="Conflict")
        current = self.objects.get((namespace, name))
        if current is None:
            raise ApiException(status=404, reason="Not Found")
        if body.metadata.resource_version != current.metadata.resource_version:
            raise ApiException(status=409, reason="Conflict")
        return self._store(namespace, body)

    async def delete_namespaced_config_map(self, name: str, namespace: str) -> client.V1Status:
        self._check()
        if self.objects.pop((namespace, name), None) is None:
            raise ApiException(status=404, reason="Not Found")
        return client.V1Status(status="Success")

    def get(self, name: str) -> Optional[client.V1ConfigMap]:
        return self.objects.get((NAMESPACE, name))


class FakeAdapter(DatabaseAdapter):
    """Scripted engine: role and progress are plain attributes."""

    engine = "fake"

    def __init__(
        self,
        topology: Topology,
        clock: FakeClock,
        *,
        primary: bool = False,
        running: bool = True,
        op_time: int = 0,
        sys_id: str = "sys-1",
    ):
        super().__init__(topology, clock)
        self.primary = primary
        self.running = running
        self.op_time = op_time
        self.sys_id = sys_id
        self.following: Optional[str] = None
        self.calls: List[str] = []
        self.failures: Dict[str, Exception] = {}

    async def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def init_delay(self) -> None:
        await self._record("init_delay")

    async def is_leader(self) -> bool:
        await self._record("is_leader")
        return self.primary

    async def is_running(self, member: str) -> bool:
        await self._record("is_running")
        return self.running

    async def get_sys_id(self) -> str:
        await self._record("get_sys_id")
        return self.sys_id

    async def get_extra(self):
        await self._record("get_extra")
        return {"lsn": str(self.op_time)}

    async def get_op_time(self) -> int:
        await self._record("get_op_time")
        return self.op_time

    async def start(self, member: str) -> None:
        await self._record("start")
        self.running = True

    async def demote(self, member: str) -> None:
        await self._record("demote")
        self.primary = False

    async def enforce_primary_role(self, member: str) -> None:
        await self._record("enforce_primary_role")
        self.primary = True
        self.following = None

    async def handle_follow(self, leader: Optional[Leader], member: str) -> None:
        await self._record("handle_follow")
        self.following = leader.name if leader else None


def make_topology(replicas: int = 3, learner_replicas: int = 0) -> Topology:
    learner = None
    if learner_replicas:
        learner = RoleSpec(name="learner", access_mode=AccessMode.READONLY, replicas=learner_replicas)
    return Topology(
        replicas=replicas,
        followers=[
            RoleSpec(
                name="follower",
                access_mode=AccessMode.READONLY,
                replicas=replicas - 1 - learner_replicas,
            )
        ],
        learner=learner,
    )


class Group:
    """Members of one replica group sharing a fake API server and clock."""

    def __init__(self, topology: Topology):
        self.api = FakeCoreV1Api()
        self.clock = FakeClock()
        self.topology = topology
        self.controllers: Dict[str, HAController] = {}
        self.sleeps: List[float] = []

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def store(self) -> LeaseStore:
        return LeaseStore(
            self.api,
            NAMESPACE,
            CLUSTER,
            COMPONENT,
            ttl=15,
            call_timeout=1.0,
            member_touch_interval=5.0,
            clock=self.clock,
        )

    def member(self, ordinal: int, **adapter_kwargs) -> HAController:
        name = pod(ordinal)
        controller = HAController(
            self.store(),
            FakeAdapter(self.topology, self.clock, **adapter_kwargs),
            self.topology,
            name,
            "fake",
            resync_period=0.05,
            grace_period=2.0,
            renew_retries=3,
            adapter_call_timeout=1.0,
            tick_timeout=5.0,
            init_attempts=2,
            init_wait=0,
            clock=self.clock,
            sleep=self._sleep,
        )
        self.controllers[name] = controller
        return controller

    def leader_record(self) -> Optional[client.V1ConfigMap]:
        return self.api.get(f"{CLUSTER}-{COMPONENT}-leader")

    def switchover_record(self) -> Optional[client.V1ConfigMap]:
        return self.api.get(f"{CLUSTER}-{COMPONENT}-switchover")

    def recorded_leader(self) -> Optional[str]:
        record = self.leader_record()
        if record is None:
            return None
        return (record.metadata.annotations or {}).get("leader") or None


@pytest.fixture
def topology() -> Topology:
    return make_topology()


@pytest.fixture
def group(topology) -> Group:
    return Group(topology)


@pytest.fixture
def fake_api() -> FakeCoreV1Api:
    return FakeCoreV1Api()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(fake_api, clock) -> LeaseStore:
    return LeaseStore(
        fake_api,
        NAMESPACE,
        CLUSTER,
        COMPONENT,
        ttl=15,
        call_timeout=1.0,
        member_touch_interval=5.0,
        clock=clock,
    )


@pytest.fixture
def test_settings() -> Settings:
    """Settings for testing."""
    return Settings(
        pod_name=pod(0),
        namespace=NAMESPACE,
        cluster_name=CLUSTER,
        component_name=COMPONENT,
        environment="testing",
        prometheus_enabled=False,
        k8s_in_cluster=False,
    )
