import logging
from enum import Enum
from pydantic import BaseModel

from .models import ProgressSnapshot, SyncStrategy

logger = logging.getLogger(__name__)


class Resolution(str, Enum):
    APPLY_REMOTE = "apply_remote"
    KEEP_LOCAL = "keep_local"
    PROMPT = "prompt"


class ConflictDecision(BaseModel):
    action: Resolution
    diff: float


class ConflictResolver:
    def __init__(self, threshold: float = 0.05):
        self.threshold = threshold

    def resolve(self, local: ProgressSnapshot, remote: ProgressSnapshot,
                strategy: SyncStrategy) -> ConflictDecision:
        """
        Decide what to do with diverging progress. Each snapshot is compared as a
        percentage of its own total.
        """
        diff = abs(remote.percentage - local.percentage)

        if strategy == SyncStrategy.SEND:
            action = Resolution.KEEP_LOCAL
        elif strategy == SyncStrategy.RECEIVE:
            action = Resolution.APPLY_REMOTE
        elif strategy == SyncStrategy.SILENT:
            action = Resolution.APPLY_REMOTE if remote.timestamp > local.timestamp else Resolution.KEEP_LOCAL
        elif diff > self.threshold:
            action = Resolution.PROMPT
        else:
            action = Resolution.KEEP_LOCAL

        logger.debug(f"Progress diff {diff:.1%} under '{strategy.value}' -> {action.value}")
        return ConflictDecision(action=action, diff=diff)
