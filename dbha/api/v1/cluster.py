"""
Cluster API endpoints.
Exposes the lease record as seen by this member and accepts switchover requests.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field

from dbha.config.logging import get_logger
from dbha.exceptions import InvalidSwitchoverError

router = APIRouter()
logger = get_logger(__name__)


class SwitchoverRequest(BaseModel):
    """Manual switchover request."""

    leader: Optional[str] = Field(None, description="Expected current leader, defaults to the recorded one")
    candidate: Optional[str] = Field(None, description="Target member, omit for the healthiest follower")


@router.get("/cluster")
async def get_cluster(request: Request) -> Dict[str, Any]:
    """
    Current lease record and aggregate group status.

    The record is the snapshot of this member's last reconciliation tick.
    """
    controller = request.app.state.controller
    cluster = controller.store.get_cluster()
    now = controller.clock()

    return {
        "cluster": cluster.model_dump(),
        "leader": cluster.leader_name() if cluster.is_locked(now) else None,
        "status": controller.topology.group_status(cluster, now).model_dump(),
        "member": {
            "name": controller.state.pod_identity,
            "db_type": controller.state.db_type,
            "role": controller.state.role.value,
            "is_leader_until": controller.state.is_leader_until,
            "last_tick_at": controller.state.last_tick_at,
            "last_outcome": controller.state.last_outcome,
        },
    }


@router.post("/switchover", status_code=status.HTTP_202_ACCEPTED)
async def request_switchover(request: Request, body: SwitchoverRequest) -> Dict[str, Any]:
    """
    Ask the current leader to hand over.

    The leader yields on its next tick once the target is ready; the
    request stays pending until the target holds the lease.
    """
    controller = request.app.state.controller
    candidate = body.candidate or ""
    if candidate and not controller.topology.is_legal_switchover_target(candidate):
        raise InvalidSwitchoverError(
            f"'{candidate}' is a learner and cannot become leader",
            details={"candidate": candidate},
        )

    switchover = await controller.store.request_switchover(leader=body.leader or "", candidate=candidate)
    logger.info("switchover_accepted", leader=switchover.leader, candidate=candidate or "any")
    return {
        "status": "pending",
        "switchover": switchover.model_dump(),
    }
