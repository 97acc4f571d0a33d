from __future__ import annotations

import json

import allure
import httpx

from voice_listener.orchestrator.models import TaskType
from voice_listener.orchestrator.notifications import NullNotifier, PushNotifier
from voice_listener.orchestrator.repository import SqliteTaskStore

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Push Notifications"),
]

PUSH_URL = "https://push.example.test/send"


def _recording_transport(requests: list[dict[str, object]], *, status_code: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(status_code, json={"data": {"status": "ok"}})

    return httpx.MockTransport(handler)


async def test_completed_notification_goes_to_every_token(store: SqliteTaskStore) -> None:
    await store.register_push_token("ExponentPushToken[a]")
    await store.register_push_token("ExponentPushToken[b]")
    requests: list[dict[str, object]] = []

    async with PushNotifier(
        store=store,
        push_url=PUSH_URL,
        transport=_recording_transport(requests),
    ) as notifier:
        await notifier.task_completed(task_id="t1", title="Ship it", task_type=TaskType.NEW_PROJECT)

    assert [request["to"] for request in requests] == [
        "ExponentPushToken[a]",
        "ExponentPushToken[b]",
    ]
    assert requests[0] == {
        "to": "ExponentPushToken[a]",
        "title": "🚀 Task Completed",
        "body": "Ship it",
        "sound": "default",
        "data": {"type": "task_completed", "taskId": "t1", "taskTitle": "Ship it"},
    }


async def test_review_and_failure_messages(store: SqliteTaskStore) -> None:
    await store.register_push_token("ExponentPushToken[a]")
    requests: list[dict[str, object]] = []

    async with PushNotifier(
        store=store,
        push_url=PUSH_URL,
        transport=_recording_transport(requests),
    ) as notifier:
        await notifier.task_awaiting_feedback(
            task_id="t1",
            title="Draft post",
            task_type=TaskType.WRITE,
        )
        await notifier.task_failed(task_id="t2", title="Deploy", error_message="x" * 300)
        await notifier.task_failed(task_id="t3", title="Deploy", error_message=None)

    assert requests[0]["title"] == "✍️ Ready for Review"
    assert requests[0]["body"] == "Draft post - tap to review and provide feedback"
    assert requests[1]["title"] == "Task Failed"
    assert requests[1]["body"] == "Deploy: " + "x" * 100
    assert requests[2]["body"] == "Deploy failed to complete"


async def test_no_tokens_means_no_requests(store: SqliteTaskStore) -> None:
    requests: list[dict[str, object]] = []

    async with PushNotifier(
        store=store,
        push_url=PUSH_URL,
        transport=_recording_transport(requests),
    ) as notifier:
        await notifier.task_completed(task_id="t1", title="Quiet", task_type=TaskType.RESEARCH)

    assert requests == []


async def test_delivery_errors_are_not_raised(store: SqliteTaskStore) -> None:
    await store.register_push_token("ExponentPushToken[a]")
    requests: list[dict[str, object]] = []

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    async with PushNotifier(
        store=store,
        push_url=PUSH_URL,
        transport=_recording_transport(requests, status_code=500),
    ) as rejected:
        await rejected.task_completed(task_id="t1", title="A", task_type=TaskType.RESEARCH)
    async with PushNotifier(
        store=store,
        push_url=PUSH_URL,
        transport=httpx.MockTransport(broken),
    ) as offline:
        await offline.task_failed(task_id="t1", title="A", error_message="boom")

    assert len(requests) == 1


async def test_null_notifier_accepts_every_call() -> None:
    notifier = NullNotifier()

    await notifier.task_completed(task_id="t1", title="A", task_type=TaskType.WRITE)
    await notifier.task_awaiting_feedback(task_id="t1", title="A", task_type=TaskType.WRITE)
    await notifier.task_failed(task_id="t1", title="A", error_message=None)
