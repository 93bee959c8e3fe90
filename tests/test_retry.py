"""
Tests for Kubernetes API retry helpers.
"""
import asyncio

import pytest
from kubernetes_asyncio.client import ApiException

from dbha.utils.retry import backoff_delay, is_retryable_k8s_error, retry_async


def test_backoff_delay_is_capped():
    assert backoff_delay(0, 0.5, 5.0) == 0.5
    assert backoff_delay(2, 0.5, 5.0) == 2.0
    assert backoff_delay(10, 0.5, 5.0) == 5.0


def test_retryable_errors():
    assert is_retryable_k8s_error(ApiException(status=503))
    assert is_retryable_k8s_error(ApiException(status=429))
    assert is_retryable_k8s_error(asyncio.TimeoutError())
    assert not is_retryable_k8s_error(ApiException(status=409))
    assert not is_retryable_k8s_error(ApiException(status=404))
    assert not is_retryable_k8s_error(ValueError("boom"))


@pytest.mark.asyncio
async def test_retry_recovers_from_transient_error():
    attempts = []

    async def read():
        attempts.append(1)
        if len(attempts) < 2:
            raise ApiException(status=503, reason="Service Unavailable")
        return "ok"

    assert await retry_async(read, max_retries=2, initial_delay=0.01) == "ok"
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_conflicts_are_not_retried():
    attempts = []

    async def replace():
        attempts.append(1)
        raise ApiException(status=409, reason="Conflict")

    with pytest.raises(ApiException):
        await retry_async(replace, max_retries=3, initial_delay=0.01)

    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_retry_gives_up_after_max_retries():
    attempts = []

    async def read():
        attempts.append(1)
        raise ConnectionError("refused")

    with pytest.raises(ConnectionError):
        await retry_async(read, max_retries=2, initial_delay=0.01)

    assert len(attempts) == 3
