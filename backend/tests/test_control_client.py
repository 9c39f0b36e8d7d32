import json

import httpx
import pytest

from skema_daemon.control_client import ControlClient


class RecordingHandler:
    """httpx mock transport handler returning canned daemon responses."""

    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        status, body = self.responses.get(key, (404, {"error_code": "ANNOTATION_NOT_FOUND"}))
        return httpx.Response(status, json=body)


def _client(responses):
    handler = RecordingHandler(responses)
    return ControlClient("http://daemon:9999/", transport=httpx.MockTransport(handler)), handler


@pytest.mark.asyncio
async def test_pull_acknowledge_resolve():
    record = {"annotation": {"id": "ann-1"}, "status": "pending"}
    client, handler = _client({
        ("GET", "/api/v1/annotations/pending"): (200, {"count": 1, "cursor": 1, "annotations": [record]}),
        ("POST", "/api/v1/annotations/ann-1/acknowledge"): (200, {**record, "status": "acknowledged"}),
        ("POST", "/api/v1/annotations/ann-1/resolve"): (200, {**record, "status": "resolved"}),
    })

    pending = await client.get_pending()
    assert pending == [record]
    assert (await client.acknowledge("ann-1"))["status"] == "acknowledged"
    assert (await client.resolve("ann-1", "done"))["status"] == "resolved"

    resolve_request = handler.requests[-1]
    assert json.loads(resolve_request.content) == {"summary": "done"}


@pytest.mark.asyncio
async def test_watch_returns_none_without_new_work():
    client, handler = _client({
        ("GET", "/api/v1/annotations/watch"): (200, {"status": "no_new_work", "cursor": 4}),
    })
    assert await client.watch(timeout=5, after=4) is None
    params = handler.requests[0].url.params
    assert params["timeout"] == "5"
    assert params["after"] == "4"


@pytest.mark.asyncio
async def test_watch_returns_annotation():
    body = {"status": "annotation", "annotation": {"annotation": {"id": "ann-2"}}, "cursor": 5}
    client, _ = _client({("GET", "/api/v1/annotations/watch"): (200, body)})
    assert await client.watch() == body


@pytest.mark.asyncio
async def test_status_filter_and_dismiss():
    client, handler = _client({
        ("GET", "/api/v1/annotations"): (200, {"count": 0, "annotations": []}),
        ("POST", "/api/v1/annotations/ann-3/dismiss"): (200, {"status": "dismissed"}),
    })
    assert await client.get_all_annotations(status="resolved") == []
    assert handler.requests[0].url.params["status"] == "resolved"
    await client.dismiss("ann-3", "Not needed")
    assert json.loads(handler.requests[1].content) == {"reason": "Not needed"}


@pytest.mark.asyncio
async def test_http_errors_are_raised():
    client, _ = _client({})
    with pytest.raises(httpx.HTTPStatusError) as info:
        await client.get_annotation("ann-missing")
    assert info.value.response.status_code == 404


@pytest.mark.asyncio
async def test_watch_without_timeout_waits_past_server_ceiling():
    handler = RecordingHandler({("GET", "/api/v1/annotations/watch"): (200, {"status": "no_new_work", "cursor": 0})})
    client = ControlClient("http://daemon:9999", transport=httpx.MockTransport(handler), max_watch_s=600)

    assert await client.watch() is None
    assert handler.requests[0].extensions["timeout"]["read"] == 610

    await client.watch(timeout=5000)
    assert handler.requests[1].extensions["timeout"]["read"] == 610
