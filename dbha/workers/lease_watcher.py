"""
Kubernetes watch on the replica group's coordination objects.

Streams ConfigMap changes in the group namespace, keeps only the lease and
switchover records of this group, and turns them into typed ``LeaseEvent``
items on a queue consumed by the HA controller. Ingestion is decoupled from
decision making: tests push synthetic events onto the same queue.
"""
import asyncio
from enum import Enum
from typing import Any, Dict, Iterable, Optional

import aiohttp
from kubernetes_asyncio import client, watch
from kubernetes_asyncio.client import ApiException
from pydantic import BaseModel, ConfigDict

from dbha.config.logging import get_logger
from dbha.utils.retry import backoff_delay

logger = get_logger(__name__)


class LeaseEventType(str, Enum):
    """Kind of change observed on a coordination object."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class LeaseEvent(BaseModel):
    """A change notification for one coordination object."""

    model_config = ConfigDict(frozen=True)

    type: LeaseEventType
    name: str
    resource_version: Optional[str] = None
    old_resource_version: Optional[str] = None


class LeaseWatcher:
    """
    Watches the lease and switchover ConfigMaps of one replica group.

    Features:
    - Name filtering (only this group's records reach the queue)
    - Restart with backoff when the stream breaks
    - Resource version reset on HTTP 410 (history expired)
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        namespace: str,
        names: Iterable[str],
        queue: "asyncio.Queue[LeaseEvent]",
        watch_timeout: int = 60,
    ):
        """
        Initialize lease watcher.

        Args:
            core_api: Kubernetes CoreV1Api
            namespace: Namespace of the replica group
            names: ConfigMap names to forward
            queue: Queue the HA controller consumes
            watch_timeout: Server-side timeout of one watch request in seconds
        """
        self.core_api = core_api
        self.namespace = namespace
        self.names = frozenset(names)
        self.queue = queue
        self.watch_timeout = watch_timeout
        self.running = False
        self._versions: Dict[str, Optional[str]] = {}
        self._resource_version: Optional[str] = None

    async def handle_event(self, event: Dict[str, Any]) -> Optional[LeaseEvent]:
        """Filter one raw watch event and enqueue it. Returns the enqueued event."""
        obj = event.get("object")
        metadata = getattr(obj, "metadata", None)
        if metadata is None:
            return None

        self._resource_version = metadata.resource_version or self._resource_version
        if metadata.name not in self.names:
            return None

        try:
            event_type = LeaseEventType(event.get("type"))
        except ValueError:
            return None

        lease_event = LeaseEvent(
            type=event_type,
            name=metadata.name,
            resource_version=metadata.resource_version,
            old_resource_version=self._versions.get(metadata.name),
        )
        if event_type == LeaseEventType.DELETED:
            self._versions.pop(metadata.name, None)
        else:
            self._versions[metadata.name] = metadata.resource_version

        await self.queue.put(lease_event)
        logger.debug(
            "lease_event_received",
            type=event_type.value,
            name=metadata.name,
            resource_version=metadata.resource_version,
        )
        return lease_event

    async def _stream_once(self) -> None:
        kwargs: Dict[str, Any] = {"namespace": self.namespace, "timeout_seconds": self.watch_timeout}
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version

        async with watch.Watch() as w:
            async for event in w.stream(self.core_api.list_namespaced_config_map, **kwargs):
                if not self.running:
                    break
                await self.handle_event(event)

    async def start(self) -> None:
        """Watch until stopped, restarting the stream on failure."""
        self.running = True
        failures = 0
        logger.info("lease_watcher_started", namespace=self.namespace, names=sorted(self.names))

        while self.running:
            try:
                await self._stream_once()
                failures = 0
            except asyncio.CancelledError:
                break
            except ApiException as e:
                if e.status == 410:
                    logger.info("lease_watch_expired_resetting")
                    self._resource_version = None
                    continue
                failures += 1
                logger.warning("lease_watch_failed", status=e.status, error=e.reason, failures=failures)
            except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as e:
                failures += 1
                logger.warning("lease_watch_disconnected", error=str(e), failures=failures)

            if failures and self.running:
                await asyncio.sleep(backoff_delay(failures - 1, 0.5, 10.0))

        self.running = False
        logger.info("lease_watcher_stopped")

    async def stop(self) -> None:
        """Stop watching events."""
        logger.info("lease_watcher_stopping")
        self.running = False
