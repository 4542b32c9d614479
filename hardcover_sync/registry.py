import logging
from typing import Dict, Optional

from .clients.hardcover_client import HardcoverClient
from .config import Settings, settings
from .engine import BookSync
from .models import CleanupResult, LocalBook, LocalProgress
from .notifier import Notifier
from .state import StateManager
from .view import ReaderView

logger = logging.getLogger(__name__)


class SyncRegistry:
    """
    Owns the per-book sync machines for every open book.
    Lets the surrounding application push, pull or await a flush by book key
    without reaching into the machines themselves.
    """

    def __init__(self, client: HardcoverClient, store: StateManager, notifier: Notifier,
                 config: Optional[Settings] = None):
        self.client = client
        self.store = store
        self.notifier = notifier
        self.config = config or settings
        self._books: Dict[str, BookSync] = {}

    def __contains__(self, book_key: str) -> bool:
        return book_key in self._books

    def __len__(self) -> int:
        return len(self._books)

    def get(self, book_key: str) -> BookSync:
        if book_key not in self._books:
            raise KeyError(book_key)
        return self._books[book_key]

    async def open_book(self, book: LocalBook, progress: LocalProgress,
                        view: Optional[ReaderView] = None) -> BookSync:
        if book.key in self._books:
            logger.info(f"{book.key} was already open, closing previous sync first")
            await self.close_book(book.key)

        sync = BookSync(book, self.client, self.store, self.notifier, view=view, config=self.config)
        self._books[book.key] = sync
        await sync.open(progress)
        return sync

    async def close_book(self, book_key: str) -> bool:
        sync = self._books.pop(book_key, None)
        if sync is None:
            return False
        await sync.close()
        return True

    async def progress_changed(self, book_key: str, progress: LocalProgress):
        await self.get(book_key).on_progress_changed(progress)

    async def force_sync(self, book_key: str):
        await self.get(book_key).force_sync()

    async def push(self, book_key: str):
        sync = self.get(book_key)
        sync.request_push()
        await sync.scheduler.flush_now()

    async def pull(self, book_key: str):
        await self.get(book_key).pull()

    async def flush(self, book_key: str):
        await self.get(book_key).scheduler.flush_now()

    async def resolve(self, book_key: str, keep: str):
        sync = self.get(book_key)
        if keep == "local":
            await sync.resolve_with_local()
        elif keep == "remote":
            await sync.resolve_with_remote()
        else:
            raise ValueError(f"Unknown conflict side: {keep}")

    async def cleanup(self, book_key: str) -> Optional[CleanupResult]:
        return await self.get(book_key).cleanup_duplicate_sessions()

    async def close_all(self):
        for book_key in list(self._books):
            try:
                await self.close_book(book_key)
            except Exception as e:
                logger.error(f"Failed to close sync for {book_key}: {e}", exc_info=True)
