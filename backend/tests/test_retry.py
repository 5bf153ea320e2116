import httpx
import pytest

from threatwatch.services.collector.retry import async_retry, is_transient


def _flaky(failures, exc):
    calls = []

    async def call():
        calls.append(1)
        if len(calls) <= failures:
            raise exc
        return "ok"

    return call, calls


async def test_transient_failure_is_retried() -> None:
    call, calls = _flaky(2, httpx.ConnectError("connection reset"))

    assert await async_retry(call, base_delay=0) == "ok"
    assert len(calls) == 3


async def test_gives_up_after_last_attempt() -> None:
    call, calls = _flaky(5, httpx.ReadTimeout("slow"))

    with pytest.raises(httpx.ReadTimeout):
        await async_retry(call, attempts=2, base_delay=0)
    assert len(calls) == 2


async def test_non_transient_failure_is_raised_at_once() -> None:
    call, calls = _flaky(1, ValueError("bad body"))

    with pytest.raises(ValueError):
        await async_retry(call, base_delay=0)
    assert len(calls) == 1


def test_http_status_errors_are_not_transient() -> None:
    request = httpx.Request("POST", "https://unifi.local/x")
    response = httpx.Response(500, request=request)

    assert not is_transient(httpx.HTTPStatusError("boom", request=request, response=response))
    assert is_transient(httpx.ConnectError("refused"))
