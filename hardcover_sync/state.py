import json
import logging
import os
import fcntl
from pathlib import Path
from typing import Optional
from .models import LinkageState, SyncLinkage
from .config import Settings, settings

logger = logging.getLogger(__name__)


class StateManager:
    """Persists per-book linkage records to a JSON file."""

    def __init__(self, path: str, config: Optional[Settings] = None):
        self.path = Path(path)
        self.config = config or settings
        self.state = LinkageState()
        self.read_only = False
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No state file found at {self.path}, creating new.")
            return

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
                self.state = LinkageState(**data)
        except Exception as e:
            logger.error(f"Failed to load state: {e}. Starting fresh.", exc_info=True)

    def save(self):
        if not self.config.PERSIST_ENABLED or self.read_only:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    logger.warning("Could not acquire lock for state save. Skipping save cycle.")
                    return

                try:
                    json.dump(self.state.model_dump(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.rename(tmp_path, self.path)

        except OSError as e:
            logger.error(f"Failed to save state to {self.path}: {e}")
            # Can't write, stay read-only for the rest of this run
            self.read_only = True

    def get_linkage(self, book_key: str) -> Optional[SyncLinkage]:
        return self.state.linkages.get(book_key)

    def update_linkage(self, book_key: str, **changes) -> SyncLinkage:
        current = self.state.linkages.get(book_key) or SyncLinkage()
        updated = current.model_copy(update=changes)
        self.state.linkages[book_key] = updated
        self.save()
        return updated

    def mark_synced(self, timestamp: float):
        self.state.last_successful_sync = timestamp
        self.save()

    def clear_remote_ids(self, book_key: str) -> Optional[SyncLinkage]:
        if book_key not in self.state.linkages:
            return None
        return self.update_linkage(
            book_key,
            remote_book_link_id=None,
            remote_read_session_id=None,
            remote_edition_id=None,
            remote_read_started_at=None,
        )
