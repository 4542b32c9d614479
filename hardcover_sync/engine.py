import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .clients.hardcover_client import HardcoverClient
from .config import Settings, settings
from .conflict import ConflictResolver, Resolution
from .errors import AuthFailedError, CircuitOpenError, HardcoverError, InvalidLinkError
from .matcher import BookMatcher
from .models import (
    CleanupResult,
    ConflictRecord,
    GateState,
    LocalBook,
    LocalProgress,
    ProgressSnapshot,
    ProgressSnapshotView,
    ReadingStatus,
    RemoteBook,
    RemoteUserBook,
    SyncFrequency,
    SyncLinkage,
    SyncPhase,
    SyncStrategy,
)
from .notifier import NotificationKind, Notifier
from .scheduler import DebouncedScheduler
from .state import StateManager
from .translator import ProgressTranslator, round_half_up
from .view import ReaderView, RecordingView

logger = logging.getLogger(__name__)


def parse_remote_timestamp(value: Optional[str]) -> float:
    if not value:
        return 0.0
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def preview(page: int, percentage: float) -> str:
    return f"Page {page} ({round_half_up(percentage * 100)}%)"


class BookSync:
    """
    Sync state machine for one open book.

    idle -> matching -> checking -> synced | conflict | error. A pull started on
    open holds `is_pulling` until its resolution settles; an open conflict blocks
    every push until the user picks a side.
    """

    def __init__(
        self,
        book: LocalBook,
        client: HardcoverClient,
        store: StateManager,
        notifier: Notifier,
        view: Optional[ReaderView] = None,
        config: Optional[Settings] = None,
        matcher: Optional[BookMatcher] = None,
        translator: Optional[ProgressTranslator] = None,
        resolver: Optional[ConflictResolver] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.book = book
        self.client = client
        self.gate = client.gate
        self.store = store
        self.notifier = notifier
        self.view = view or RecordingView()
        self.config = config or settings
        self.matcher = matcher or BookMatcher(client, self.config.MATCH_SCORE_THRESHOLD)
        self.translator = translator or ProgressTranslator()
        self.resolver = resolver or ConflictResolver(self.config.CONFLICT_THRESHOLD)
        self.scheduler = DebouncedScheduler(self.config.PUSH_DEBOUNCE_SECONDS)
        self._sleep = sleep
        self._clock = clock
        self._push_lock = asyncio.Lock()

        self.phase = SyncPhase.IDLE
        self.progress: Optional[LocalProgress] = None
        self.is_pulling = False
        self.conflict: Optional[ConflictRecord] = None
        self.needs_matching = False
        self.last_section_id: Optional[str] = None
        self.status_reading_sent = False
        self.last_percentage = 0.0

    @property
    def key(self) -> str:
        return self.book.key

    @property
    def linkage(self) -> SyncLinkage:
        return self.store.get_linkage(self.key) or SyncLinkage()

    @property
    def progress_enabled(self) -> bool:
        return self.config.configured and self.config.SYNC_PROGRESS

    def _save_linkage(self, **changes) -> SyncLinkage:
        linkage = self.store.update_linkage(self.key, **changes)
        self.notifier.notify(NotificationKind.LINKAGE_UPDATED, f"Linkage updated for {self.key}",
                             level="debug", book_key=self.key)
        return linkage

    # Lifecycle

    async def open(self, progress: LocalProgress):
        self.progress = progress
        self.last_section_id = progress.section_id
        self.last_percentage = progress.percentage
        if not self.config.configured:
            logger.debug(f"Hardcover sync disabled, not syncing {self.key}")
            return
        await self.pull()
        await self._mark_currently_reading()

    async def close(self):
        await self.force_sync()
        self.scheduler.cancel_pending()
        self.conflict = None
        self.is_pulling = False
        self.phase = SyncPhase.IDLE

    async def force_sync(self):
        """Deliver local progress now. In session mode this is the only write of the session."""
        if self.config.SYNC_FREQUENCY == SyncFrequency.SESSION:
            self.scheduler.cancel_pending()
            await self.push_now(best_effort=True)
            return
        if self.scheduler.has_pending:
            await self.scheduler.flush_now()
        # Wait out a push the timer already started
        async with self._push_lock:
            pass

    async def on_progress_changed(self, progress: LocalProgress):
        self.progress = progress
        await self._check_finished(progress)

        if not self.progress_enabled or self.config.SYNC_STRATEGY == SyncStrategy.RECEIVE:
            return
        if self.is_pulling:
            logger.debug(f"Auto-push skipped for {self.key}, pull in progress")
            return
        if self.conflict is not None:
            logger.debug(f"Auto-push skipped for {self.key}, conflict pending resolution")
            return

        frequency = self.config.SYNC_FREQUENCY
        if frequency == SyncFrequency.SESSION:
            return
        if frequency == SyncFrequency.CHAPTER and progress.section_id == self.last_section_id:
            return
        self.last_section_id = progress.section_id
        self.request_push()

    # Matching

    async def ensure_match(self) -> Optional[int]:
        linkage = self.linkage
        if linkage.linked:
            return linkage.remote_book_link_id

        if not self.config.AUTO_MATCH_BOOKS:
            self.needs_matching = True
            return None

        logger.info(f"Matching '{self.book.title}' against Hardcover")
        self.phase = SyncPhase.MATCHING
        link_id = await self.matcher.match(self.book)
        if link_id is None:
            self.needs_matching = True
            self.phase = SyncPhase.IDLE
            return None

        self._save_linkage(remote_book_link_id=link_id)
        self.needs_matching = False
        await self._mark_currently_reading()
        return link_id

    async def match_manually(self, book_id: int) -> int:
        link_id = await self.matcher.link(book_id)
        self._save_linkage(
            remote_book_link_id=link_id,
            remote_read_session_id=None,
            remote_edition_id=None,
            remote_read_started_at=None,
            remote_total_pages=None,
        )
        self.needs_matching = False
        # A different remote book, it has not been told we are reading it
        self.status_reading_sent = False
        await self._mark_currently_reading()
        if self.progress is not None:
            await self.pull()
        return link_id

    async def search_matches(self, query: Optional[str] = None) -> List[RemoteBook]:
        text = query or f"{self.book.title} {self.book.author}".strip()
        return await self.matcher.search(text)

    # Pull

    async def pull(self):
        if not self.progress_enabled or self.progress is None:
            return
        if self.config.SYNC_STRATEGY == SyncStrategy.SEND:
            self.phase = SyncPhase.SYNCED
            return

        self.is_pulling = True
        release_guard = True
        try:
            link_id = await self.ensure_match()
            if link_id is None:
                return

            self.phase = SyncPhase.CHECKING
            user_book = await self.client.get_user_book(link_id)
            self._after_success()
            if user_book is not None:
                self._cache_remote(user_book)

            read = user_book.active_read if user_book else None
            if read is None or not read.progress_pages:
                logger.debug(f"No remote progress for {self.key}")
                self.conflict = None
                self.phase = SyncPhase.SYNCED
                return

            release_guard = await self._reconcile(user_book, read.progress_pages)
        except HardcoverError as e:
            self.phase = SyncPhase.ERROR
            self._report_failure(e, "Failed to sync progress from Hardcover")
        finally:
            if release_guard:
                self.is_pulling = False

    def _cache_remote(self, user_book: RemoteUserBook):
        linkage = self.linkage
        wanted = {
            # No active read means every read is finished; drop the id so the next write creates one
            "remote_read_session_id": user_book.session_id,
            "remote_edition_id": user_book.edition_id,
            "remote_read_started_at": user_book.started_at,
            "remote_total_pages": user_book.remote_total_pages,
        }
        changes = {k: v for k, v in wanted.items() if getattr(linkage, k) != v}
        if changes:
            logger.debug(f"Caching remote details for {self.key}: {changes}")
            self._save_linkage(**changes)

    async def _reconcile(self, user_book: RemoteUserBook, remote_page_raw: int) -> bool:
        """Act on diverging progress. Returns False when the pull guard must stay up."""
        progress = self.progress
        fixed = self.book.fixed_layout
        local_page = progress.page + 1
        local_total = progress.total_pages
        remote_total = user_book.remote_total_pages

        remote_page = self.translator.from_remote(remote_page_raw, remote_total, local_total, fixed)
        remote_scale = remote_total if remote_total and not fixed else local_total

        local = ProgressSnapshot(page=local_page, total_pages=local_total,
                                 timestamp=progress.updated_at or self.book.updated_at)
        remote = ProgressSnapshot(page=remote_page_raw, total_pages=remote_scale,
                                  timestamp=parse_remote_timestamp(user_book.started_at))
        decision = self.resolver.resolve(local, remote, self.config.SYNC_STRATEGY)
        # A fresh pull supersedes any conflict still waiting for the user
        self.conflict = None

        if decision.action == Resolution.APPLY_REMOTE:
            self.apply_remote_page(remote_page)
            self.phase = SyncPhase.SYNCED
            await self._sleep(self.config.NAVIGATION_SETTLE_SECONDS)
            return True

        if decision.action == Resolution.PROMPT:
            self.conflict = ConflictRecord(
                local=ProgressSnapshotView(page=local_page, percentage=local.percentage,
                                           preview=preview(local_page, local.percentage),
                                           timestamp=local.timestamp),
                remote=ProgressSnapshotView(page=remote_page, percentage=remote.percentage,
                                            preview=preview(remote_page, remote.percentage),
                                            timestamp=remote.timestamp),
                remote_page_raw=remote_page_raw,
                local_total_pages=local_total,
                fixed_layout=fixed,
            )
            self.phase = SyncPhase.CONFLICT
            self.notifier.notify(
                NotificationKind.CONFLICT,
                f"Hardcover progress differs: {self.conflict.remote.preview} remote, "
                f"{self.conflict.local.preview} here",
                level="warning", book_key=self.key,
            )
            return False

        logger.debug(f"No sync needed for {self.key}, difference {decision.diff:.1%}")
        self.phase = SyncPhase.SYNCED
        return True

    def apply_remote_page(self, local_page: int):
        """Navigate the reader to a 1-based page in local pagination."""
        if self.book.fixed_layout:
            self.view.go_to_page(self.translator.to_local_index(local_page))
        else:
            total = self.progress.total_pages if self.progress else 1
            self.view.go_to_fraction(self.translator.fraction(local_page, total))
        self.notifier.notify(NotificationKind.PROGRESS_APPLIED, "Reading progress synced from Hardcover",
                             book_key=self.key)

    # Push

    def request_push(self):
        self.scheduler.schedule(self.push_now)

    async def push_now(self, best_effort: bool = False) -> bool:
        if not self.progress_enabled or self.config.SYNC_STRATEGY == SyncStrategy.RECEIVE:
            return False
        if self.is_pulling:
            logger.debug(f"Push skipped for {self.key}, pulling from remote")
            return False
        if self.conflict is not None:
            logger.debug(f"Push skipped for {self.key}, conflict pending resolution")
            return False
        if self.progress is None:
            return False

        async with self._push_lock:
            progress = self.progress
            try:
                link_id = await self.ensure_match()
                if link_id is None:
                    return False
                linkage = self.linkage
                page = self.translator.to_remote(progress.page, progress.total_pages,
                                                 linkage.remote_total_pages, self.book.fixed_layout)
                read = await self.client.update_progress(
                    link_id,
                    page,
                    session_id=linkage.remote_read_session_id,
                    edition_id=linkage.remote_edition_id,
                    started_at=linkage.remote_read_started_at,
                    best_effort=best_effort,
                )
            except InvalidLinkError:
                logger.warning(f"Stored Hardcover link for {self.key} is invalid, clearing it")
                self.store.clear_remote_ids(self.key)
                self.needs_matching = True
                self.status_reading_sent = False
                self.phase = SyncPhase.ERROR
                self.notifier.notify(NotificationKind.INVALID_LINK,
                                     "Hardcover book link is invalid. Please re-match the book.",
                                     level="warning", book_key=self.key)
                return False
            except HardcoverError as e:
                if e.session_invalidated:
                    self._save_linkage(remote_read_session_id=None)
                self.phase = SyncPhase.ERROR
                self._report_failure(e, "Failed to sync progress to Hardcover")
                return False

            self.store.mark_synced(self._clock())
            self._save_linkage(
                remote_read_session_id=read.id,
                remote_edition_id=read.edition_id or linkage.remote_edition_id,
                remote_read_started_at=read.started_at or linkage.remote_read_started_at,
                last_pushed_at=self._clock(),
            )
            self.phase = SyncPhase.SYNCED
            self._after_success()
            logger.info(f"Pushed page {page} for {self.key} (read {read.id})")
        await self._mark_currently_reading()
        return True

    # Status

    async def sync_status(self, status: ReadingStatus) -> bool:
        if not self.config.configured or not self.config.SYNC_STATUS:
            return False
        linkage = self.linkage
        if not linkage.linked:
            return False
        try:
            return await self.client.update_status(linkage.remote_book_link_id, status)
        except HardcoverError as e:
            # Status is best effort, never disrupts reading
            logger.warning(f"Status sync to {status.name} failed for {self.key}: {e}")
            return False

    async def _mark_currently_reading(self):
        if self.status_reading_sent or not self.linkage.linked:
            return
        self.status_reading_sent = True
        await self.sync_status(ReadingStatus.CURRENTLY_READING)

    async def _check_finished(self, progress: LocalProgress):
        percentage = progress.percentage
        if percentage >= 1.0 and self.last_percentage < 1.0:
            await self.sync_status(ReadingStatus.READ)
        self.last_percentage = percentage

    # Conflict resolution

    async def resolve_with_local(self):
        self.conflict = None
        self.is_pulling = False
        self.phase = SyncPhase.SYNCED
        self.request_push()
        await self.scheduler.flush_now()

    async def resolve_with_remote(self):
        if self.conflict is None:
            return
        conflict, self.conflict = self.conflict, None
        self.apply_remote_page(conflict.remote.page)
        self.phase = SyncPhase.SYNCED
        await self._sleep(self.config.NAVIGATION_SETTLE_SECONDS)
        self.is_pulling = False

    # Maintenance

    async def cleanup_duplicate_sessions(self) -> Optional[CleanupResult]:
        linkage = self.linkage
        if not linkage.linked:
            logger.warning(f"No Hardcover book linked for {self.key}")
            return None
        result = await self.client.cleanup_duplicate_reads(linkage.remote_book_link_id)
        if result.deleted and linkage.remote_read_session_id not in (None, result.kept):
            self._save_linkage(remote_read_session_id=None)
        return result

    # Notifications

    def _after_success(self):
        if self.gate.consume_recovery():
            self.notifier.notify(NotificationKind.SYNC_RESTORED, "Hardcover sync restored",
                                 level="success", book_key=self.key)

    def _report_failure(self, error: HardcoverError, message: str):
        """1st consecutive failure is shown, 2nd is quiet, the one that opens the gate is shown once."""
        if isinstance(error, CircuitOpenError):
            logger.debug(f"Hardcover call rejected by failure gate: {error}")
            return
        if isinstance(error, AuthFailedError):
            self.notifier.notify(NotificationKind.SYNC_FAILED,
                                 "Hardcover authentication failed. Please check your API token.",
                                 level="error", book_key=self.key)
            return

        status = self.gate.snapshot()
        if status.state == GateState.OPEN:
            if self.gate.claim_disconnect_notice():
                self.notifier.notify(
                    NotificationKind.DISCONNECTED,
                    f"Hardcover sync temporarily disabled, retry in {self.gate.timeout:.0f}s",
                    level="warning", book_key=self.key,
                )
            return
        if status.consecutive_failures <= 1:
            self.notifier.notify(NotificationKind.SYNC_FAILED, message, level="error", book_key=self.key)
        else:
            logger.info(f"{message} (notification suppressed): {error}")

    def describe(self) -> Dict[str, Any]:
        navigation = getattr(self.view, "last_navigation", None)
        return {
            "book_key": self.key,
            "phase": self.phase.value,
            "is_pulling": self.is_pulling,
            "needs_matching": self.needs_matching,
            "pending_push": self.scheduler.has_pending,
            "conflict": self.conflict.model_dump() if self.conflict else None,
            "linkage": self.linkage.model_dump(),
            "navigation": navigation.model_dump() if navigation else None,
        }
