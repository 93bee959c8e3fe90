"""
Tests for lease watch event filtering.
"""
import asyncio

import pytest
from kubernetes_asyncio import client
from pydantic import ValidationError

from dbha.workers.lease_watcher import LeaseEvent, LeaseEventType, LeaseWatcher

LEADER = "pg-postgresql-leader"
SWITCHOVER = "pg-postgresql-switchover"


def raw_event(event_type: str, name: str, version: str):
    return {
        "type": event_type,
        "object": client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace="default", resource_version=version)
        ),
    }


@pytest.fixture
def watcher():
    return LeaseWatcher(None, "default", [LEADER, SWITCHOVER], asyncio.Queue())


@pytest.mark.asyncio
async def test_forwards_group_records(watcher):
    event = await watcher.handle_event(raw_event("ADDED", LEADER, "10"))

    assert event == LeaseEvent(type=LeaseEventType.ADDED, name=LEADER, resource_version="10")
    assert watcher.queue.get_nowait() == event
    with pytest.raises(ValidationError):
        event.name = SWITCHOVER


@pytest.mark.asyncio
async def test_ignores_unrelated_config_maps(watcher):
    assert await watcher.handle_event(raw_event("MODIFIED", "kube-root-ca.crt", "11")) is None
    assert watcher.queue.empty()


@pytest.mark.asyncio
async def test_tracks_previous_version(watcher):
    await watcher.handle_event(raw_event("ADDED", LEADER, "10"))
    event = await watcher.handle_event(raw_event("MODIFIED", LEADER, "12"))

    assert event.old_resource_version == "10"
    assert event.resource_version == "12"


@pytest.mark.asyncio
async def test_deleted_switchover(watcher):
    await watcher.handle_event(raw_event("ADDED", SWITCHOVER, "20"))
    event = await watcher.handle_event(raw_event("DELETED", SWITCHOVER, "21"))

    assert event.type == LeaseEventType.DELETED
    assert event.old_resource_version == "20"
    assert watcher.queue.qsize() == 2


@pytest.mark.asyncio
async def test_ignores_bookmarks_and_errors(watcher):
    assert await watcher.handle_event(raw_event("BOOKMARK", LEADER, "30")) is None
    assert await watcher.handle_event({"type": "ERROR", "object": None}) is None
    assert watcher.queue.empty()
