"""
Health check endpoints for probes and traffic gating.
Provides liveness, readiness, and role probes.
"""
from datetime import datetime

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from dbha.core.state_machine import MemberRole
from dbha.core.topology import AccessMode

router = APIRouter()


@router.get("/live")
async def liveness(request: Request):
    """
    Kubernetes liveness probe.
    Indicates whether the sidecar process should be restarted. Fails once a
    background task (HA loop or lease watcher) died.
    """
    fatal_error = getattr(request.app.state, "fatal_error", None)
    if fatal_error:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "dead",
                "error": fatal_error,
                "timestamp": datetime.utcnow().isoformat(),
            },
        )
    return {"status": "alive", "timestamp": datetime.utcnow().isoformat()}


@router.get("/ready")
async def readiness(request: Request):
    """
    Kubernetes readiness probe.
    The sidecar is ready once the HA controller completed its first tick.
    """
    controller = getattr(request.app.state, "controller", None)
    if controller is None or not controller.state.last_tick_at:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "timestamp": datetime.utcnow().isoformat()},
        )

    return {
        "status": "ready",
        "role": controller.state.role.value,
        "last_outcome": controller.state.last_outcome,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/role")
async def role(request: Request):
    """
    Role probe used to gate service traffic.

    Returns 200 only when the local role's access mode serves traffic. A
    leader only passes while its lease is believed valid.
    """
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"role": MemberRole.UNINITIALIZED.value, "access_mode": AccessMode.NONE.value},
        )

    state = controller.state
    cluster = controller.store.get_cluster()
    followers = [
        name for name, member in cluster.members.items()
        if member.role == MemberRole.FOLLOWER.value
    ]
    access_mode = controller.topology.access_mode_for(state.role, state.pod_identity, followers)

    serving = access_mode != AccessMode.NONE
    if state.role == MemberRole.LEADER:
        serving = serving and state.is_leader_until > controller.clock()

    content = {
        "member": state.pod_identity,
        "role": state.role.value,
        "access_mode": access_mode.value,
        "is_leader_until": state.is_leader_until,
    }
    if not serving:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=content)
    return content
