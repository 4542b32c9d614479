import logging
from typing import List, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from .clients.hardcover_client import HardcoverClient
from .models import LocalBook, ReadingStatus, RemoteBook

logger = logging.getLogger(__name__)

TITLE_WEIGHT = 70
AUTHOR_WEIGHT = 30


def similarity(a: str, b: str) -> float:
    """1 - edit distance / length of the longer string, case-insensitive."""
    return Levenshtein.normalized_similarity(a.lower(), b.lower())


def score_candidate(book: LocalBook, candidate: RemoteBook) -> float:
    return (TITLE_WEIGHT * similarity(book.title, candidate.title)
            + AUTHOR_WEIGHT * similarity(book.author, candidate.author_names))


def _normalize_isbn(isbn: str) -> str:
    return "".join(ch for ch in isbn if ch.isalnum()).upper()


class BookMatcher:
    def __init__(self, client: HardcoverClient, min_score: float = 60.0):
        self.client = client
        self.min_score = min_score

    async def find_match(self, book: LocalBook) -> Optional[RemoteBook]:
        """Best catalog candidate for a local book, or None when a human has to pick."""
        if book.isbn:
            isbn = _normalize_isbn(book.isbn)
            for candidate in await self.client.search_books(isbn):
                if isbn in (candidate.isbn_13, candidate.isbn_10):
                    logger.info(f"Matched '{book.title}' by ISBN to Hardcover book {candidate.id}")
                    return candidate

        candidates = await self.client.search_books(book.title, book.author or None)
        if not candidates:
            return None

        scored: List[Tuple[float, RemoteBook]] = [(score_candidate(book, c), c) for c in candidates]
        best_score, best = max(scored, key=lambda pair: pair[0])
        if best_score > self.min_score:
            logger.info(f"Matched '{book.title}' to Hardcover book {best.id} (score {best_score:.1f})")
            return best

        logger.info(f"No confident match for '{book.title}' (best score {best_score:.1f})")
        return None

    async def link(self, book_id: int) -> int:
        """Make sure the catalog book is in the user's library and return its user_book id."""
        user_book = await self.client.find_user_book(book_id)
        if user_book:
            return user_book.id
        return await self.client.add_book_to_library(book_id, ReadingStatus.CURRENTLY_READING)

    async def match(self, book: LocalBook) -> Optional[int]:
        candidate = await self.find_match(book)
        if candidate is None:
            return None
        return await self.link(candidate.id)

    async def search(self, query: str) -> List[RemoteBook]:
        """Candidates for manual selection, enriched with catalog metadata where available."""
        results = await self.client.search_books(query)
        if not results:
            return []
        hydrated = {b.id: b for b in await self.client.hydrate_books([r.id for r in results])}
        merged = []
        for result in results:
            extra = hydrated.get(result.id)
            if extra:
                result = result.model_copy(update={
                    "authors": result.authors or extra.authors,
                    "image_url": result.image_url or extra.image_url,
                })
            merged.append(result)
        return merged
