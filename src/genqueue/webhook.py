"""Webhook delivery of finished tasks"""

import asyncio
import logging
from typing import Any, Dict, Optional, Sequence

import httpx

from .models import Task

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_RETRY_DELAYS = (5.0, 15.0, 30.0)


def format_task_response(task: Task) -> Dict[str, Any]:
    """Public view of a task, as sent to webhooks and returned by the API"""
    response = {
        "task_id": task.id,
        "type": task.type,
        "status": task.status,
        "model": task.model,
        "prompt": task.prompt,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
    }

    if task.completed_at is not None:
        response["completed_at"] = task.completed_at

    if task.status == "completed" and task.result is not None:
        response["result"] = task.result

    if task.status == "failed" and task.error:
        response["error"] = task.error

    return response


class WebhookNotifier:
    """Best-effort POST of a task snapshot to a callback URL.

    A 2xx or 3xx response counts as delivered. Anything else is retried after
    each of ``retry_delays``; once those are used up the failure is logged and
    dropped.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.retry_delays = tuple(retry_delays)
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, url: str, task: Task, payload: Dict[str, Any]) -> httpx.Response:
        response = await self._client.post(
            url,
            json=payload,
            headers={
                "Content-Type": "application/json",
                "X-Webhook-Event": f"task.{task.status}",
                "X-Task-Id": task.id,
            },
        )
        if not 200 <= response.status_code < 400:
            raise httpx.HTTPStatusError(
                f"HTTP {response.status_code}",
                request=response.request,
                response=response,
            )
        return response

    async def _attempt(self, url: str, task: Task, payload: Dict[str, Any]) -> httpx.Response:
        # httpx timeouts apply per phase, this bounds the whole attempt
        try:
            return await asyncio.wait_for(
                self._post(url, task, payload), self.timeout_seconds
            )
        except asyncio.TimeoutError:
            raise httpx.TimeoutException(
                f"no response within {self.timeout_seconds}s"
            ) from None

    async def notify(self, url: str, task: Task) -> bool:
        """Deliver ``task`` to ``url``. Returns whether delivery succeeded."""
        payload = format_task_response(task)
        attempts = len(self.retry_delays) + 1

        for attempt in range(attempts):
            try:
                response = await self._attempt(url, task, payload)
            except Exception as e:
                if attempt + 1 >= attempts:
                    logger.error(
                        "Webhook for task %s failed after %d attempts: %s - %s",
                        task.id,
                        attempts,
                        url,
                        e,
                    )
                    return False

                delay = self.retry_delays[attempt]
                logger.warning(
                    "Webhook for task %s failed (attempt %d): %s, retrying in %ss",
                    task.id,
                    attempt + 1,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            logger.info(
                "Webhook for task %s delivered to %s (status: %d)",
                task.id,
                url,
                response.status_code,
            )
            return True

        return False
