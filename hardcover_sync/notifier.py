import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, List, Optional
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SYNC_RESTORED = "sync_restored"
    CONFLICT = "conflict"
    SYNC_FAILED = "sync_failed"
    INVALID_LINK = "invalid_link"
    PROGRESS_APPLIED = "progress_applied"
    LINKAGE_UPDATED = "linkage_updated"


class Notification(BaseModel):
    kind: NotificationKind
    message: str
    level: str = "info"  # info, success, warning, error
    book_key: Optional[str] = None
    created_at: float = Field(default_factory=time.time)


Listener = Callable[[Notification], None]


class Notifier:
    """Outbound events toward the surrounding application (toasts, linkage updates)."""

    def __init__(self, history_size: int = 50):
        self._listeners: List[Listener] = []
        self.history: Deque[Notification] = deque(maxlen=history_size)

    def subscribe(self, listener: Listener):
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify(self, kind: NotificationKind, message: str, level: str = "info",
               book_key: Optional[str] = None) -> Notification:
        note = Notification(kind=kind, message=message, level=level, book_key=book_key)
        if kind != NotificationKind.LINKAGE_UPDATED:
            self.history.append(note)
            logger.info(f"[{level}] {message}")
        for listener in list(self._listeners):
            try:
                listener(note)
            except Exception as e:
                logger.error(f"Notification listener failed: {e}", exc_info=True)
        return note
