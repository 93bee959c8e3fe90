"""
Pydantic models for the cluster lease record.

The lease record is the only shared state of a replica group. A ``Cluster``
instance is a snapshot of it taken at the start of a reconciliation tick and
must not be reused across ticks.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class Leader(BaseModel):
    """Current holder of the leader lease."""

    name: str = Field(..., description="Member name (pod name) holding the lease")
    acquire_time: float = Field(default=0.0, description="Unix time the lease was acquired")
    renew_time: float = Field(default=0.0, description="Unix time of the last renewal")
    ttl: int = Field(..., description="Lease validity in seconds")
    op_time: int = Field(default=0, description="Leader progress counter at last renewal")
    extra: Dict[str, str] = Field(default_factory=dict, description="Engine metadata")

    def is_expired(self, now: float) -> bool:
        """A lease is expired once ``now - renew_time`` exceeds the TTL."""
        return now - self.renew_time > self.ttl


class Member(BaseModel):
    """A known participant of the replica group with its last-seen metadata."""

    name: str
    role: str = Field(default="uninitialized", description="Role last reported by the member")
    running: bool = Field(default=False, description="Whether the engine was running when last seen")
    op_time: int = Field(default=0, description="Progress counter when last seen")
    touched_at: float = Field(default=0.0, description="Unix time of the last heartbeat")
    extra: Dict[str, str] = Field(default_factory=dict)

    def is_fresh(self, now: float, ttl: int) -> bool:
        """Whether the member has reported within one lease period."""
        return now - self.touched_at <= ttl


class Switchover(BaseModel):
    """Pending manual switchover request."""

    leader: str = Field(default="", description="Member expected to hand over, empty for any")
    candidate: str = Field(default="", description="Target member, empty for the healthiest follower")
    resource_version: Optional[str] = None


class ClusterConfig(BaseModel):
    """Cluster-scoped configuration carried by the lease record."""

    ttl: int = Field(default=15, ge=1)


class Cluster(BaseModel):
    """Snapshot of the cluster lease record plus its concurrency token."""

    sys_id: str = ""
    leader: Optional[Leader] = None
    members: Dict[str, Member] = Field(default_factory=dict)
    switchover: Optional[Switchover] = None
    config: ClusterConfig = Field(default_factory=ClusterConfig)
    resource_version: Optional[str] = None

    @classmethod
    def empty(cls, ttl: int) -> "Cluster":
        """Cluster view used when no lease record exists yet."""
        return cls(config=ClusterConfig(ttl=ttl))

    @property
    def exists(self) -> bool:
        return self.resource_version is not None

    def is_locked(self, now: float) -> bool:
        """A valid, unexpired leader is recorded."""
        return self.leader is not None and bool(self.leader.name) and not self.leader.is_expired(now)

    def leader_name(self) -> Optional[str]:
        if self.leader is None or not self.leader.name:
            return None
        return self.leader.name

    def has_member(self, name: str) -> bool:
        return name in self.members

    def get_member(self, name: str) -> Optional[Member]:
        return self.members.get(name)

    def eligible_members(self, now: float, exclude: Optional[List[str]] = None) -> List[Member]:
        """
        Members that may take over leadership.

        A member is eligible when it reported within the lease period with a
        running engine and is not a learner.
        """
        exclude = exclude or []
        return [
            member
            for member in self.members.values()
            if member.name not in exclude
            and member.running
            and member.role != "learner"
            and member.is_fresh(now, self.config.ttl)
        ]

    def rank_candidates(self, now: float, exclude: Optional[List[str]] = None) -> List[Member]:
        """
        Eligible members ordered best first.

        Highest ``op_time`` wins; ties go to the lexicographically smallest
        name so every member computes the same order from the same record.
        """
        return sorted(
            self.eligible_members(now, exclude=exclude),
            key=lambda member: (-member.op_time, member.name),
        )

    def best_candidate(self, now: float, exclude: Optional[List[str]] = None) -> Optional[str]:
        ranked = self.rank_candidates(now, exclude=exclude)
        return ranked[0].name if ranked else None

    def switchover_target(self, now: float, leader: str = "") -> Optional[str]:
        """
        Member a pending switchover hands leadership to, if it is ready.

        A named candidate must itself be eligible; an empty candidate means
        the best ranked member other than ``leader``.
        """
        if self.switchover is None:
            return None
        exclude = [leader] if leader else []
        candidate = self.switchover.candidate
        if candidate:
            eligible = {member.name for member in self.eligible_members(now, exclude=exclude)}
            return candidate if candidate in eligible else None
        return self.best_candidate(now, exclude=exclude)
