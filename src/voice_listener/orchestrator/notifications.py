"""Push notifications for task status changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from voice_listener.config import DEFAULT_PUSH_URL
from voice_listener.orchestrator.models import TaskType
from voice_listener.orchestrator.store import TaskStore, TaskStoreError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RETRIES = 2
FAILURE_BODY_MAX_CHARS = 100

TASK_TYPE_ICONS: dict[TaskType, str] = {
    TaskType.CODE_CHANGE: "🔧",
    TaskType.NEW_PROJECT: "🚀",
    TaskType.RESEARCH: "🔍",
    TaskType.WRITE: "✍️",
    TaskType.HUMAN_TASK: "📋",
}


class Notifier(Protocol):
    """Outbound notification call sites used by the execution driver."""

    async def task_completed(self, *, task_id: str, title: str, task_type: TaskType) -> None:
        """Task finished successfully."""

    async def task_awaiting_feedback(
        self,
        *,
        task_id: str,
        title: str,
        task_type: TaskType,
    ) -> None:
        """Task needs the user to review or answer."""

    async def task_failed(self, *, task_id: str, title: str, error_message: str | None) -> None:
        """Task ended in failure."""


class NullNotifier:
    """Notifier used when push delivery is disabled."""

    async def task_completed(self, *, task_id: str, title: str, task_type: TaskType) -> None:
        logger.debug("Notifications disabled; completed %s", task_id)

    async def task_awaiting_feedback(
        self,
        *,
        task_id: str,
        title: str,
        task_type: TaskType,
    ) -> None:
        logger.debug("Notifications disabled; awaiting feedback %s", task_id)

    async def task_failed(self, *, task_id: str, title: str, error_message: str | None) -> None:
        logger.debug("Notifications disabled; failed %s", task_id)


@dataclass(slots=True)
class PushMessage:
    title: str
    body: str
    data: dict[str, Any]


class PushNotifier:
    """Expo push API client; every registered token gets each message."""

    def __init__(
        self,
        *,
        store: TaskStore,
        push_url: str = DEFAULT_PUSH_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.push_url = push_url
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=5.0),
            headers={"Accept": "application/json"},
            transport=transport or httpx.AsyncHTTPTransport(retries=max_retries),
        )

    async def task_completed(self, *, task_id: str, title: str, task_type: TaskType) -> None:
        await self._broadcast(
            PushMessage(
                title=f"{_icon(task_type)} Task Completed",
                body=title,
                data={"type": "task_completed", "taskId": task_id, "taskTitle": title},
            ),
        )

    async def task_awaiting_feedback(
        self,
        *,
        task_id: str,
        title: str,
        task_type: TaskType,
    ) -> None:
        await self._broadcast(
            PushMessage(
                title=f"{_icon(task_type)} Ready for Review",
                body=f"{title} - tap to review and provide feedback",
                data={"type": "task_awaiting_feedback", "taskId": task_id, "taskTitle": title},
            ),
        )

    async def task_failed(self, *, task_id: str, title: str, error_message: str | None) -> None:
        body = (
            f"{title}: {error_message[:FAILURE_BODY_MAX_CHARS]}"
            if error_message
            else f"{title} failed to complete"
        )
        await self._broadcast(
            PushMessage(
                title="Task Failed",
                body=body,
                data={"type": "task_failed", "taskId": task_id, "taskTitle": title},
            ),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> PushNotifier:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    async def _broadcast(self, message: PushMessage) -> None:
        try:
            tokens = await self.store.list_push_tokens()
        except TaskStoreError:
            logger.warning("Failed to load push tokens", exc_info=True)
            return
        if not tokens:
            logger.info("No push tokens registered, skipping notification")
            return
        for token in tokens:
            await self._send(token, message)
        logger.info("Sent %s notification to %d device(s)", message.data["type"], len(tokens))

    async def _send(self, token: str, message: PushMessage) -> None:
        payload = {
            "to": token,
            "title": message.title,
            "body": message.body,
            "sound": "default",
            "data": message.data,
        }
        try:
            response = await self._client.post(self.push_url, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Push notification request failed: %s", exc)
            return
        if not response.is_success:
            logger.warning("Push notification rejected: HTTP %s", response.status_code)
            return
        try:
            body = response.json()
        except ValueError:
            return
        ticket = body.get("data", body) if isinstance(body, dict) else {}
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if isinstance(ticket, dict) and ticket.get("status") == "error":
            logger.warning("Push notification error: %s", ticket.get("message"))


def _icon(task_type: TaskType) -> str:
    return TASK_TYPE_ICONS.get(task_type, "✅")
