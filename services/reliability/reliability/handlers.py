"""Built-in job handlers registered by the worker process."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .queue import JobQueue
from .registry import CircuitBreakerRegistry

log = logging.getLogger("handlers")

SEND_NOTIFICATION = "send-notification"
CLEANUP_COMPLETED_JOBS = "cleanup-completed-jobs"


def make_send_notification(
    registry: CircuitBreakerRegistry,
    client: httpx.AsyncClient,
    webhook_url: Optional[str] = None,
    breaker: str = "slack",
):
    """Post a chat message to a messaging webhook through its breaker.

    No fallback: when the webhook is down the job fails and is retried with
    backoff instead of dropping the message.
    """

    async def send_notification(payload: Dict[str, Any]) -> Dict[str, Any]:
        url = payload.get("webhook_url") or webhook_url
        if not url:
            raise ValueError("no webhook_url in payload and none configured")
        body = {"text": payload["text"]}
        if payload.get("blocks"):
            body["blocks"] = payload["blocks"]

        async def post() -> Dict[str, Any]:
            resp = await client.post(url, json=body)
            resp.raise_for_status()
            return {"status_code": resp.status_code}

        return await registry.execute(payload.get("breaker", breaker), post)

    return send_notification


def make_cleanup_completed_jobs(queue: JobQueue, default_days: float = 7):
    async def cleanup_completed_jobs(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        days = float((payload or {}).get("days_old", default_days))
        deleted = await queue.cleanup(days * 86400)
        log.info("cleaned up %d completed job(s) older than %g day(s)", deleted, days)
        return {"deleted": deleted, "days_old": days}

    return cleanup_completed_jobs


def register_default_handlers(
    queue: JobQueue,
    registry: CircuitBreakerRegistry,
    client: httpx.AsyncClient,
    settings,
) -> None:
    queue.register_handler(
        SEND_NOTIFICATION, make_send_notification(registry, client, settings.notify_webhook_url)
    )
    queue.register_handler(
        CLEANUP_COMPLETED_JOBS, make_cleanup_completed_jobs(queue, settings.cleanup_after_days)
    )
