"""Tests for webhook delivery"""

import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from genqueue.models import Task
from genqueue.webhook import WebhookNotifier, format_task_response

HOOK_URL = "https://example.test/hook"


def make_task(**overrides) -> Task:
    fields = dict(
        id="task-1",
        type="image",
        status="completed",
        created_at=100,
        updated_at=160,
        completed_at=160,
        result={"data": [{"url": "https://example.test/1.png"}]},
        model="model-x",
        prompt="a red fox",
    )
    fields.update(overrides)
    return Task(**fields)


class Recorder:
    """MockTransport handler returning a scripted sequence of responses"""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else 200
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome)


@pytest_asyncio.fixture
async def make_notifier():
    clients = []

    def make(recorder: Recorder, retry_delays=(0, 0, 0)) -> WebhookNotifier:
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        clients.append(client)
        return WebhookNotifier(retry_delays=retry_delays, client=client)

    yield make
    for client in clients:
        await client.aclose()


class TestFormatTaskResponse:
    """Test the public task payload."""

    def test_completed_task(self):
        payload = format_task_response(make_task(error="ignored"))

        assert payload == {
            "task_id": "task-1",
            "type": "image",
            "status": "completed",
            "model": "model-x",
            "prompt": "a red fox",
            "created_at": 100,
            "updated_at": 160,
            "completed_at": 160,
            "result": {"data": [{"url": "https://example.test/1.png"}]},
        }

    def test_failed_task(self):
        payload = format_task_response(
            make_task(status="failed", result=None, error="boom")
        )

        assert payload["status"] == "failed"
        assert payload["error"] == "boom"
        assert "result" not in payload

    def test_pending_task_has_no_completion_fields(self):
        payload = format_task_response(
            make_task(status="pending", completed_at=None, result=None)
        )

        assert "completed_at" not in payload
        assert "result" not in payload
        assert "error" not in payload


@pytest.mark.asyncio
async def test_delivery_headers_and_body(make_notifier):
    """Test the request sent for a successful delivery"""
    recorder = Recorder(200)
    notifier = make_notifier(recorder)
    task = make_task()

    assert await notifier.notify(HOOK_URL, task) is True

    assert len(recorder.requests) == 1
    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == HOOK_URL
    assert request.headers["X-Webhook-Event"] == "task.completed"
    assert request.headers["X-Task-Id"] == "task-1"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == format_task_response(task)


@pytest.mark.asyncio
async def test_redirect_counts_as_success(make_notifier):
    """Test that 3xx responses are not retried"""
    recorder = Recorder(302)
    notifier = make_notifier(recorder)

    assert await notifier.notify(HOOK_URL, make_task()) is True
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_retries_until_success(make_notifier):
    """Test that errors and bad statuses are retried"""
    recorder = Recorder(500, httpx.ConnectError("refused"), 204)
    notifier = make_notifier(recorder)

    assert await notifier.notify(HOOK_URL, make_task()) is True
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_gives_up_after_four_attempts(make_notifier):
    """Test that delivery stops after the retry schedule is used up"""
    recorder = Recorder(500, 502, httpx.ReadTimeout("slow"), 404, 200)
    notifier = make_notifier(recorder)

    assert await notifier.notify(HOOK_URL, make_task()) is False
    assert len(recorder.requests) == 4


@pytest.mark.asyncio
async def test_retry_schedule_uses_delays(make_notifier, monkeypatch):
    """Test that each retry waits for the configured delay"""
    slept = []

    async def fake_sleep(delay):
        slept.append(delay)

    monkeypatch.setattr("genqueue.webhook.asyncio.sleep", fake_sleep)
    recorder = Recorder(500, 500, 500, 500)
    notifier = make_notifier(recorder, retry_delays=(5, 15, 30))

    assert await notifier.notify(HOOK_URL, make_task()) is False
    assert slept == [5, 15, 30]


@pytest.mark.asyncio
async def test_slow_response_hits_attempt_deadline():
    """Test that the timeout bounds the whole attempt, not each phase"""
    calls = []

    async def slow(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        await asyncio.sleep(5)
        return httpx.Response(200)

    async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as client:
        notifier = WebhookNotifier(
            timeout_seconds=0.05, retry_delays=(0,), client=client
        )
        delivered = await asyncio.wait_for(
            notifier.notify(HOOK_URL, make_task()), timeout=2
        )

    assert delivered is False
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_invalid_url_never_raises():
    """Test that a callback URL without a scheme is logged, not raised"""
    notifier = WebhookNotifier(retry_delays=())
    try:
        assert await notifier.notify("example.test/hook", make_task()) is False
    finally:
        await notifier.aclose()


def test_default_schedule():
    """Test the default timeout and retry delays"""
    notifier = WebhookNotifier()
    assert notifier.retry_delays == (5.0, 15.0, 30.0)
    assert notifier.timeout_seconds == 10.0
    assert notifier._client.timeout.read == 10.0
