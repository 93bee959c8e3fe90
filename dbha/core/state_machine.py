"""
Member Role State Machine

Every member of a replica group is in exactly one of these roles. The HA
controller moves a member between roles only along the transitions below.

States:
- UNINITIALIZED: Process started, startup probe not finished
- LEADER: Holds the lease and serves as primary
- FOLLOWER: Replicates from the recorded leader
- LEARNER: Non-voting replica, never a candidate
- CANDIDATE: No valid leader recorded, attempting to acquire the lease

Usage:
    >>> from dbha.core.state_machine import MemberRole, RoleStateMachine
    >>> RoleStateMachine.can_transition(MemberRole.FOLLOWER, MemberRole.CANDIDATE)
    True
    >>> RoleStateMachine.can_transition(MemberRole.FOLLOWER, MemberRole.LEADER)
    False
"""

from enum import Enum
from typing import Dict, Set, Optional
import structlog

logger = structlog.get_logger(__name__)


class MemberRole(str, Enum):
    """Replica group member roles"""
    UNINITIALIZED = "uninitialized"
    LEADER = "leader"
    FOLLOWER = "follower"
    LEARNER = "learner"
    CANDIDATE = "candidate"


class RoleStateMachine:
    """
    State machine for member roles.

    Leadership is only ever entered from CANDIDATE, i.e. after a successful
    compare-and-swap on the lease record.
    """

    TRANSITIONS: Dict[MemberRole, Set[MemberRole]] = {
        MemberRole.UNINITIALIZED: {
            MemberRole.LEADER,     # Engine is primary at startup
            MemberRole.FOLLOWER,   # Engine is a replica at startup
            MemberRole.LEARNER,    # Declared non-voting
        },
        MemberRole.LEADER: {
            MemberRole.FOLLOWER,   # Demoted (lost lease, switchover)
        },
        MemberRole.FOLLOWER: {
            MemberRole.CANDIDATE,  # No valid leader recorded
        },
        MemberRole.LEARNER: {
            MemberRole.CANDIDATE,
        },
        MemberRole.CANDIDATE: {
            MemberRole.LEADER,     # Acquired the lease
            MemberRole.FOLLOWER,   # Lost the race
            MemberRole.LEARNER,    # Learner falls back to its declared role
        },
    }

    @classmethod
    def can_transition(cls, from_role: MemberRole, to_role: MemberRole) -> bool:
        """
        Check if role transition is valid. Staying in the same role always is.

        Example:
            >>> RoleStateMachine.can_transition(MemberRole.CANDIDATE, MemberRole.LEADER)
            True
            >>> RoleStateMachine.can_transition(MemberRole.LEADER, MemberRole.CANDIDATE)
            False
        """
        if from_role == to_role:
            return True
        return to_role in cls.TRANSITIONS.get(from_role, set())

    @classmethod
    def validate_transition(
        cls,
        from_role: MemberRole,
        to_role: MemberRole,
        member: Optional[str] = None,
    ) -> None:
        """
        Validate role transition and raise exception if invalid.

        Raises:
            ValueError: If transition is not allowed
        """
        if not cls.can_transition(from_role, to_role):
            error_msg = f"Invalid role transition from {from_role.value} to {to_role.value}"
            if member:
                error_msg += f" for member {member}"

            logger.error(
                "invalid_role_transition",
                member=member,
                from_role=from_role.value,
                to_role=to_role.value,
                allowed_roles=[r.value for r in cls.TRANSITIONS.get(from_role, set())],
            )
            raise ValueError(error_msg)

        if from_role != to_role:
            logger.info(
                "role_transition",
                member=member,
                from_role=from_role.value,
                to_role=to_role.value,
            )
