"""
Database adapter capability interface.

Every engine plugin exposes the same capability set to the HA controller.
Adapter calls must fail fast: they raise ``AdapterUnavailableError`` when the
engine cannot be reached and never retry on their own. Deadlines and retry
policy belong to the controller.
"""
import abc
import time
from typing import Callable, Dict, Optional

from dbha.config.logging import get_logger
from dbha.core.cluster import Cluster, Leader
from dbha.core.topology import Topology
from dbha.exceptions import UnsupportedOperationError

logger = get_logger(__name__)


class DatabaseAdapter(abc.ABC):
    """Uniform view of one local database engine."""

    engine: str = ""

    def __init__(self, topology: Topology, clock: Callable[[], float] = time.time):
        self.topology = topology
        self.clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Prepare connections. Called once before the first probe."""

    @abc.abstractmethod
    async def init_delay(self) -> None:
        """
        Single startup probe: return once the engine answers, raise otherwise.

        Raises:
            AdapterUnavailableError: Engine not ready yet
        """

    async def close(self) -> None:
        """Release connections on shutdown."""

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def is_leader(self) -> bool:
        """Whether the engine currently acts as primary."""

    @abc.abstractmethod
    async def is_running(self, member: str) -> bool:
        """Whether the engine process is up and accepting connections."""

    @abc.abstractmethod
    async def get_sys_id(self) -> str:
        """Engine-native system identifier of the instance set."""

    @abc.abstractmethod
    async def get_extra(self) -> Dict[str, str]:
        """Engine metadata recorded with the lease (replication position etc.)."""

    @abc.abstractmethod
    async def get_op_time(self) -> int:
        """Monotonic progress counter used to rank candidates."""

    # ------------------------------------------------------------------
    # Mutators (all idempotent)
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def start(self, member: str) -> None:
        """Start the engine process."""

    @abc.abstractmethod
    async def demote(self, member: str) -> None:
        """Turn a primary into a replica. No-op on a replica."""

    @abc.abstractmethod
    async def enforce_primary_role(self, member: str) -> None:
        """Make sure the engine runs as primary. No-op on a primary."""

    @abc.abstractmethod
    async def handle_follow(self, leader: Optional[Leader], member: str) -> None:
        """Attach as replica of ``leader``. No-op when already attached or no leader."""

    async def get_sync_state(self) -> Dict[str, str]:
        """Replication sync state as reported by the engine."""
        raise UnsupportedOperationError(self.engine, "get_sync_state")

    # ------------------------------------------------------------------
    # Candidate ranking and switchover
    # ------------------------------------------------------------------

    async def is_healthiest(self, cluster: Cluster, member: str) -> bool:
        """
        Compare local progress against the siblings recorded in the lease.

        The local op time is read live; siblings use their last heartbeat.
        Highest op time wins, ties go to the smallest member name.
        """
        if self.topology.is_learner(member):
            return False

        op_time = await self.get_op_time()
        now = self.clock()
        for sibling in cluster.eligible_members(now, exclude=[member]):
            if sibling.op_time > op_time:
                return False
            if sibling.op_time == op_time and sibling.name < member:
                return False
        return True

    async def process_manual_switchover_from_leader(self, cluster: Cluster, member: str) -> bool:
        """
        Hand the engine over if a switchover asks this leader to yield.

        Returns:
            True if the local engine was demoted for the switchover, False
            if no switchover applies or its target is not ready yet
        """
        switchover = cluster.switchover
        if switchover is None or switchover.leader not in ("", member):
            return False

        target = cluster.switchover_target(self.clock(), member)
        if target is None:
            logger.info(
                "switchover_target_not_ready",
                member=member,
                candidate=switchover.candidate or "any",
            )
            return False

        logger.info("switchover_demoting_leader", member=member, target=target)
        await self.demote(member)
        return True

    async def process_manual_switchover_from_no_leader(self, cluster: Cluster, member: str) -> bool:
        """Whether this member is the one a pending switchover hands leadership to."""
        switchover = cluster.switchover
        if switchover is None:
            return False
        return cluster.switchover_target(self.clock(), switchover.leader) == member
