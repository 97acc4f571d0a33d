"""Worker liveness records for external observability."""

from __future__ import annotations

import logging

from voice_listener.orchestrator.store import TaskStore

logger = logging.getLogger(__name__)


async def send_heartbeat(store: TaskStore, name: str, status: str | None = None) -> bool:
    """Upsert the heartbeat row; never raises."""

    try:
        await store.upsert_heartbeat(name, status)
    except Exception:  # noqa: BLE001
        logger.debug("Heartbeat write failed for %s", name, exc_info=True)
        return False
    return True
