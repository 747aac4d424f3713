"""
Best-effort progress events for listeners outside the core.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

logger = logging.getLogger(__name__)

STORY_UPDATED = "story:updated"
GENERATION_STARTED = "generation:started"
GENERATION_PROGRESS = "generation:progress"
GENERATION_COMPLETED = "generation:completed"
GENERATION_ERRORED = "generation:errored"

ProgressCallback = Callable[[str, Mapping[str, Any]], None]


class Notifier:
    """
    Fans events out to subscribed callbacks.

    Delivery is fire-and-forget and at most once: a failing callback is logged
    and skipped, and never affects the operation that emitted the event.
    """

    def __init__(self, *callbacks: ProgressCallback) -> None:
        self._callbacks: list[ProgressCallback] = list(callbacks)

    def subscribe(self, callback: ProgressCallback) -> None:
        self._callbacks.append(callback)

    def publish(self, event: str, story_id: str, **payload: Any) -> None:
        message = {"story_id": story_id, **payload}
        for callback in list(self._callbacks):
            try:
                callback(event, message)
            except Exception:
                logger.exception("Notification callback failed for %s on story %s", event, story_id)
