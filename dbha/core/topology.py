"""
Declared role / access-mode topology of a replica group.

The orchestration layer owns this shape; the HA controller only reads it to
decide which members may become leader and which access mode a role serves.
"""
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from dbha.config.settings import Settings
from dbha.core.cluster import Cluster
from dbha.core.state_machine import MemberRole


class AccessMode(str, Enum):
    """Traffic a member of a role is allowed to serve."""

    NONE = "None"
    READONLY = "Readonly"
    READ_WRITE = "ReadWrite"


class UpdateStrategy(str, Enum):
    """How pods are rolled during an update."""

    SERIAL = "Serial"
    BEST_EFFORT_PARALLEL = "BestEffortParallel"
    PARALLEL = "Parallel"


class RoleSpec(BaseModel):
    """One role of the topology."""

    name: str
    access_mode: AccessMode = AccessMode.NONE
    replicas: int = Field(default=0, ge=0)


class GroupStatus(BaseModel):
    """Aggregate readiness of the replica group as seen in the lease record."""

    ready_leader: int = Field(default=0, ge=0, le=1)
    ready_followers: int = 0
    ready_learners: int = 0
    is_read_write_service_ready: bool = False
    is_readonly_service_ready: bool = False


def pod_ordinal(pod_name: str) -> Optional[int]:
    """StatefulSet ordinal of a pod name (``mycluster-mysql-2`` -> 2)."""
    _, _, suffix = pod_name.rpartition("-")
    if not suffix.isdigit():
        return None
    return int(suffix)


class Topology(BaseModel):
    """Desired shape: one leader, N followers, 0 or 1 learner."""

    replicas: int = Field(..., ge=1)
    leader: RoleSpec = Field(
        default_factory=lambda: RoleSpec(name="leader", access_mode=AccessMode.READ_WRITE, replicas=1)
    )
    followers: List[RoleSpec] = Field(default_factory=list)
    learner: Optional[RoleSpec] = None
    update_strategy: UpdateStrategy = UpdateStrategy.SERIAL

    @classmethod
    def from_settings(cls, settings: Settings) -> "Topology":
        learner = None
        if settings.learner_replicas:
            learner = RoleSpec(name="learner", access_mode=AccessMode.READONLY, replicas=settings.learner_replicas)
        followers = settings.replicas - 1 - settings.learner_replicas
        return cls(
            replicas=settings.replicas,
            followers=[
                RoleSpec(
                    name="follower",
                    access_mode=AccessMode(settings.follower_access_mode),
                    replicas=max(followers, 0),
                )
            ],
            learner=learner,
            update_strategy=UpdateStrategy(settings.update_strategy),
        )

    @property
    def learner_replicas(self) -> int:
        return self.learner.replicas if self.learner else 0

    def is_learner(self, pod_name: str) -> bool:
        """The highest ordinals of the group are the learners."""
        if not self.learner_replicas:
            return False
        ordinal = pod_ordinal(pod_name)
        if ordinal is None:
            return False
        return ordinal >= self.replicas - self.learner_replicas

    def declared_role(self, pod_name: str) -> MemberRole:
        """Role a member takes when it is not the leader."""
        return MemberRole.LEARNER if self.is_learner(pod_name) else MemberRole.FOLLOWER

    def is_legal_switchover_target(self, pod_name: str) -> bool:
        return not self.is_learner(pod_name)

    def follower_access_modes(self, follower_names: List[str]) -> Dict[str, AccessMode]:
        """Assign follower pods, in name order, to the declared follower groups."""
        modes: Dict[str, AccessMode] = {}
        names = sorted(follower_names)
        index = 0
        for spec in self.followers:
            for name in names[index:index + spec.replicas]:
                modes[name] = spec.access_mode
            index += spec.replicas
        default = self.followers[-1].access_mode if self.followers else AccessMode.NONE
        for name in names[index:]:
            modes[name] = default
        return modes

    def access_mode_for(self, role: MemberRole, pod_name: str = "", follower_names: Optional[List[str]] = None) -> AccessMode:
        if role == MemberRole.LEADER:
            return self.leader.access_mode
        if role == MemberRole.LEARNER:
            return self.learner.access_mode if self.learner else AccessMode.NONE
        if role == MemberRole.FOLLOWER:
            if follower_names and pod_name in follower_names:
                return self.follower_access_modes(follower_names)[pod_name]
            return self.followers[0].access_mode if self.followers else AccessMode.NONE
        return AccessMode.NONE

    def update_order(self, roles: Dict[str, MemberRole]) -> List[List[str]]:
        """
        Batches in which pods should be updated, first batch first.

        serial: Learner -> Follower(None) -> Follower(Readonly) -> Follower(ReadWrite) -> Leader
        bestEffortParallel: Learner + Follower minority -> Follower rest -> Leader
        parallel: everything at once
        """
        learners = sorted(name for name, role in roles.items() if role == MemberRole.LEARNER)
        leaders = sorted(name for name, role in roles.items() if role == MemberRole.LEADER)
        followers = sorted(
            name for name, role in roles.items() if role not in (MemberRole.LEARNER, MemberRole.LEADER)
        )

        if self.update_strategy == UpdateStrategy.PARALLEL:
            batches = [learners + followers + leaders]
        elif self.update_strategy == UpdateStrategy.BEST_EFFORT_PARALLEL:
            voters = len(followers) + len(leaders)
            minority = max(voters - (voters // 2 + 1), 0)
            batches = [learners + followers[:minority], followers[minority:], leaders]
        else:
            modes = self.follower_access_modes(followers)
            rank = {AccessMode.NONE: 0, AccessMode.READONLY: 1, AccessMode.READ_WRITE: 2}
            ordered = sorted(followers, key=lambda name: (rank[modes[name]], name))
            batches = [[name] for name in learners + ordered + leaders]

        return [batch for batch in batches if batch]

    def group_status(self, cluster: Cluster, now: float) -> GroupStatus:
        """Count ready members per role from the lease record."""
        leader_name = cluster.leader_name() if cluster.is_locked(now) else None
        ready = [
            member
            for member in cluster.members.values()
            if member.running and member.is_fresh(now, cluster.config.ttl) and member.name != leader_name
        ]
        learners = [m.name for m in ready if self.is_learner(m.name)]
        followers = [m.name for m in ready if not self.is_learner(m.name)]

        serving_readonly = [
            mode
            for mode in self.follower_access_modes(followers).values()
            if mode in (AccessMode.READONLY, AccessMode.READ_WRITE)
        ]
        if learners and self.learner and self.learner.access_mode != AccessMode.NONE:
            serving_readonly.append(self.learner.access_mode)

        return GroupStatus(
            ready_leader=1 if leader_name else 0,
            ready_followers=len(followers),
            ready_learners=len(learners),
            is_read_write_service_ready=bool(leader_name) and self.leader.access_mode == AccessMode.READ_WRITE,
            is_readonly_service_ready=bool(serving_readonly),
        )
