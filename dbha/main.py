"""
Main FastAPI application entry point.
Database HA sidecar: one process per database pod.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import config as k8s_config
from prometheus_fastapi_instrumentator import Instrumentator

from dbha.adapters import adapter_registry
from dbha.api.v1 import cluster, health
from dbha.config.logging import configure_logging, get_logger
from dbha.config.settings import Settings, get_settings
from dbha.core.lease_store import LeaseStore
from dbha.core.topology import Topology
from dbha.exceptions import HAException
from dbha.workers.ha_controller import HAController
from dbha.workers.lease_watcher import LeaseWatcher

logger = get_logger(__name__)


async def _load_kube_config(settings: Settings) -> None:
    if settings.k8s_in_cluster:
        k8s_config.load_incluster_config()
    else:
        await k8s_config.load_kube_config(config_file=settings.kubeconfig_path)
    logger.info("kubernetes_config_loaded", in_cluster=settings.k8s_in_cluster)


def watch_background_task(app: FastAPI, name: str) -> Callable[[asyncio.Task], None]:
    """
    Done-callback for a lifespan background task.

    A task that dies with an exception leaves the member without a working
    HA loop. The failure is recorded on ``app.state.fatal_error`` so that the
    liveness probe fails and the pod gets restarted.
    """

    def callback(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.critical(
            "background_task_failed",
            task=name,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        app.state.fatal_error = f"{name}: {exc}"

    return callback


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    Startup wires the lease store, database adapter, watcher and HA
    controller for this pod. Shutdown stops the loop, demotes a leader and
    releases its lease before the connections are closed.
    """
    settings: Settings = app.state.settings
    logger.info(
        "application_starting",
        version=settings.app_version,
        environment=settings.environment,
        db_type=settings.db_type,
    )

    # Unknown engine types are fatal before anything touches the cluster
    adapter_registry.validate(settings.db_type)

    await _load_kube_config(settings)
    api_client = k8s_client.ApiClient()
    core_api = k8s_client.CoreV1Api(api_client)

    topology = Topology.from_settings(settings)
    store = LeaseStore(
        core_api,
        settings.namespace,
        settings.cluster_name,
        settings.component_name,
        settings.ttl,
        call_timeout=settings.store_call_timeout,
        member_touch_interval=settings.member_touch_interval,
    )
    adapter = adapter_registry.create(settings.db_type, settings, topology)

    events: asyncio.Queue = asyncio.Queue()
    watcher = LeaseWatcher(
        core_api,
        settings.namespace,
        [store.leader_record_name, store.switchover_record_name],
        events,
    )
    controller = HAController(
        store,
        adapter,
        topology,
        settings.pod_name,
        settings.db_type,
        events=events,
        resync_period=settings.resync_period,
        grace_period=settings.grace_period,
        renew_retries=settings.renew_retries,
        adapter_call_timeout=settings.adapter_call_timeout,
        tick_timeout=settings.tick_timeout,
    )
    app.state.controller = controller

    background_tasks = []
    try:
        await controller.init()
        for name, coro in (("lease_watcher", watcher.start()), ("ha_controller", controller.run())):
            task = asyncio.create_task(coro)
            task.add_done_callback(watch_background_task(app, name))
            background_tasks.append(task)
        logger.info(
            "application_started",
            member=settings.pod_name,
            role=controller.state.role.value,
            lease=store.leader_record_name,
        )
    except Exception as e:
        logger.error("application_startup_failed", error=str(e))
        await api_client.close()
        raise

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await controller.stop()
    await watcher.stop()

    for task in background_tasks:
        task.cancel()
    try:
        await asyncio.wait_for(
            asyncio.gather(*background_tasks, return_exceptions=True),
            timeout=settings.tick_timeout,
        )
        logger.info("background_tasks_stopped")
    except asyncio.TimeoutError:
        logger.warning("background_tasks_shutdown_timeout")

    await controller.shutdown()
    await api_client.close()
    logger.info("application_shutdown_complete")


async def ha_exception_handler(request: Request, exc: HAException) -> JSONResponse:
    """Handle HA controller exceptions raised by API handlers."""
    logger.warning(
        "ha_exception",
        path=request.url.path,
        method=request.method,
        error=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.message,
                "details": exc.details,
                "status_code": exc.status_code,
            }
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application for ``settings`` (loaded from the environment by default)."""
    settings = settings or get_settings()
    configure_logging(settings)

    if settings.sentry_dsn and settings.is_production:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=settings.sentry_traces_sample_rate,
            environment=settings.environment,
            release=settings.app_version,
        )

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="High-availability controller sidecar for replicated databases",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.fatal_error = None
    app.add_exception_handler(HAException, ha_exception_handler)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle all other exceptions."""
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "message": "Internal server error",
                    "details": {} if settings.is_production else {"error": str(exc)},
                    "status_code": 500,
                }
            },
        )

    if settings.prometheus_enabled:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(cluster.router, prefix="/api/v1", tags=["Cluster"])

    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "member": settings.pod_name,
            "cluster": settings.cluster_comp_name,
            "status": "running",
        }

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    try:
        uvicorn.run(
            "dbha.main:create_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("application_stopped")
