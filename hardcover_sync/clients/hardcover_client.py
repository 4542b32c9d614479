import asyncio
import json
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..config import Settings, settings
from ..errors import (
    AuthFailedError,
    ErrorKind,
    GraphQLError,
    HardcoverError,
    InvalidLinkError,
    NetworkError,
    RateLimitedError,
    ServerError,
)
from ..gate import FailureGate
from ..models import CleanupResult, ReadingStatus, ReadSession, RemoteAuthor, RemoteBook, RemoteUserBook
from ..throttle import RequestThrottle
from . import queries

logger = logging.getLogger(__name__)

INVALID_USER_BOOK_MARKER = "Couldn't find UserBook"


def classify_graphql_errors(errors: List[Dict[str, Any]]) -> HardcoverError:
    first = errors[0] if errors else {}
    message = first.get("message") or "Unknown error"
    code = (first.get("extensions") or {}).get("code", "")
    lowered = message.lower()

    if code in ("invalid-jwt", "access-denied") or "401" in message or "403" in message \
            or "unauthorized" in lowered or "forbidden" in lowered:
        return AuthFailedError(message)
    if "429" in message or "rate limit" in lowered:
        return RateLimitedError(message)
    return GraphQLError(message)


def pick_best_read(reads: List[ReadSession]) -> ReadSession:
    """The read with the most progress; the earliest one wins ties."""
    best = reads[0]
    for read in reads:
        if (read.progress_pages or 0) > (best.progress_pages or 0):
            best = read
    return best


def _parse_authors(doc: Dict[str, Any]) -> List[RemoteAuthor]:
    contributions = doc.get("contributions") or []
    names = [
        (c.get("author") or {}).get("name") or ""
        for c in contributions if isinstance(c, dict) and c.get("author")
    ]
    if not names:
        names = list(doc.get("author_names") or [])
    return [RemoteAuthor(name=n) for n in names]


def _parse_search_document(doc: Dict[str, Any]) -> Optional[RemoteBook]:
    try:
        book_id = int(doc.get("id"))
    except (TypeError, ValueError):
        return None
    isbns = [str(i) for i in (doc.get("isbns") or [])]
    image = doc.get("image") or {}
    return RemoteBook(
        id=book_id,
        title=doc.get("title") or "",
        subtitle=doc.get("subtitle") or "",
        authors=_parse_authors(doc),
        isbn_13=next((i for i in isbns if len(i) == 13), ""),
        isbn_10=next((i for i in isbns if len(i) == 10), ""),
        image_url=image.get("url", "") if isinstance(image, dict) else "",
    )


def _parse_user_book(row: Dict[str, Any]) -> RemoteUserBook:
    reads = [ReadSession(**r) for r in row.get("user_book_reads") or []]
    # Finished reads cannot be updated, only an unfinished one counts
    active = next((r for r in reads if not r.finished_at), None)
    edition = row.get("edition") or {}
    book = row.get("book") or {}
    return RemoteUserBook(
        id=row["id"],
        book_id=row.get("book_id"),
        status_id=row.get("status_id"),
        edition_id=row.get("edition_id") or (active.edition_id if active else None),
        active_read=active,
        remote_total_pages=edition.get("pages") or book.get("pages") or None,
    )


class HardcoverClient:
    def __init__(
        self,
        config: Optional[Settings] = None,
        gate: Optional[FailureGate] = None,
        throttle: Optional[RequestThrottle] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or settings
        self.gate = gate or FailureGate()
        self.throttle = throttle or RequestThrottle(self.config.RATE_LIMIT_BUFFER)
        self.client = httpx.AsyncClient(
            timeout=self.config.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )
        self.user_id: Optional[int] = None
        self.privacy_setting_id: Optional[int] = None

    async def aclose(self):
        await self.client.aclose()

    def _headers(self) -> Dict[str, str]:
        token = self.config.HARDCOVER_API_TOKEN.strip()
        if not token.lower().startswith("bearer "):
            token = f"Bearer {token}"
        return {"Content-Type": "application/json", "authorization": token}

    async def request(self, query: str, variables: Optional[Dict[str, Any]] = None,
                      best_effort: bool = False) -> Dict[str, Any]:
        """
        Run one GraphQL operation.
        Gate admission, then throttle, then credentials, then the POST itself.
        best_effort requests keep going even if the calling task is cancelled.
        """
        self.gate.before_request()
        # Every admitted request must end in an outcome or hand its probe back
        try:
            await self.throttle.acquire()
            if not self.config.HARDCOVER_API_TOKEN.strip():
                raise AuthFailedError("No Hardcover API token configured")
            data = await self._send({"query": query, "variables": variables or {}}, best_effort)
        except HardcoverError as e:
            logger.error(f"Hardcover request failed ({e.kind.value}): {e}")
            self.gate.record_failure(e.kind)
            raise
        except asyncio.CancelledError:
            self.gate.release_probe()
            raise
        except Exception as e:
            logger.error(f"Unexpected error talking to Hardcover: {e}", exc_info=True)
            self.gate.record_failure(ErrorKind.GRAPHQL_ERROR)
            raise

        self.gate.record_success()
        return data

    async def _send(self, payload: Dict[str, Any], best_effort: bool) -> Dict[str, Any]:
        call = self.client.post(self.config.HARDCOVER_API_URL, json=payload, headers=self._headers())
        try:
            resp = await (asyncio.shield(call) if best_effort else call)
        except httpx.RequestError as e:
            # Transport failures, undecodable bodies and redirect loops
            raise NetworkError(str(e) or type(e).__name__) from e

        if resp.status_code in (401, 403):
            raise AuthFailedError(f"HTTP {resp.status_code}")
        if resp.status_code == 429:
            raise RateLimitedError("HTTP 429")
        if resp.status_code >= 500:
            raise ServerError(f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise GraphQLError(f"HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as e:
            raise GraphQLError("Invalid JSON in Hardcover response") from e
        if not isinstance(body, dict):
            raise GraphQLError(f"Unexpected Hardcover response body: {type(body).__name__}")

        if body.get("errors"):
            raise classify_graphql_errors(body["errors"])
        return body.get("data") or {}

    async def get_me(self) -> Dict[str, Any]:
        data = await self.request(queries.GET_ME_QUERY)
        me = data.get("me") or []
        if not me:
            raise GraphQLError("Could not determine Hardcover user")
        self.user_id = me[0].get("id")
        self.privacy_setting_id = me[0].get("account_privacy_setting_id") or 1
        return me[0]

    async def get_user_id(self) -> int:
        if self.user_id is None:
            await self.get_me()
        return self.user_id

    async def test_connection(self) -> Tuple[bool, str]:
        try:
            await self.request(queries.PING_QUERY)
            return True, "Connection successful"
        except AuthFailedError:
            return False, "Invalid API token"
        except HardcoverError as e:
            return False, str(e) or "Connection failed"

    async def search_books(self, title: str, author: Optional[str] = None, per_page: int = 10) -> List[RemoteBook]:
        query = f"{title} {author}" if author else title
        data = await self.request(queries.SEARCH_BOOKS_QUERY, {"query": query, "perPage": per_page})

        results = (data.get("search") or {}).get("results")
        if isinstance(results, str):
            try:
                results = json.loads(results)
            except ValueError:
                logger.error(f"Failed to parse search results for '{query}'")
                return []
        hits = (results or {}).get("hits") or []
        if not hits:
            logger.debug(f"No Hardcover results for '{query}'")
            return []

        logger.debug(f"Found {len(hits)} Hardcover results for '{query}'")
        books = []
        for hit in hits:
            book = _parse_search_document(hit.get("document") or {})
            if book:
                books.append(book)
        return books

    async def hydrate_books(self, ids: List[int]) -> List[RemoteBook]:
        if not ids:
            return []
        data = await self.request(queries.HYDRATE_BOOKS_QUERY, {"ids": [int(i) for i in ids]})
        books = []
        for row in data.get("books") or []:
            image = row.get("cached_image") or {}
            books.append(RemoteBook(
                id=row["id"],
                title=row.get("title") or "",
                authors=_parse_authors(row),
                image_url=image.get("url", "") if isinstance(image, dict) else "",
            ))
        return books

    async def get_user_book(self, link_id: int) -> Optional[RemoteUserBook]:
        data = await self.request(queries.GET_USER_BOOK_QUERY, {"userBookId": int(link_id)})
        rows = data.get("user_books") or []
        if not rows:
            return None
        user_book = _parse_user_book(rows[0])
        logger.debug(f"User book {link_id}: {user_book.model_dump()}")
        return user_book

    async def find_user_book(self, book_id: int) -> Optional[RemoteUserBook]:
        """Look up the current user's library entry for a catalog book."""
        user_id = await self.get_user_id()
        data = await self.request(queries.FIND_USER_BOOK_QUERY, {"bookId": int(book_id), "userId": user_id})
        rows = data.get("user_books") or []
        return _parse_user_book(rows[0]) if rows else None

    async def create_read(self, link_id: int, pages: int, edition_id: Optional[int] = None,
                          started_at: Optional[str] = None, best_effort: bool = False) -> ReadSession:
        variables: Dict[str, Any] = {
            "userBookId": int(link_id),
            "pages": int(pages),
            "startedAt": started_at or date.today().isoformat(),
        }
        if edition_id:
            variables["editionId"] = edition_id

        data = await self.request(queries.CREATE_READ_MUTATION, variables, best_effort=best_effort)
        result = data.get("insert_user_book_read") or {}
        if result.get("error"):
            error = result["error"]
            if INVALID_USER_BOOK_MARKER in error:
                raise InvalidLinkError(error)
            raise GraphQLError(error)

        read = result.get("user_book_read")
        if not read:
            raise GraphQLError("Create read returned no user_book_read")
        logger.info(f"Created Hardcover read {read['id']} at page {pages}")
        return ReadSession(**read)

    async def update_read(self, session_id: int, pages: int, edition_id: Optional[int] = None,
                          started_at: Optional[str] = None, best_effort: bool = False) -> Optional[ReadSession]:
        """Returns None when the read is finished or gone and cannot take progress."""
        variables: Dict[str, Any] = {"readId": session_id, "pages": int(pages)}
        if edition_id:
            variables["editionId"] = edition_id
        if started_at:
            variables["startedAt"] = started_at

        data = await self.request(queries.UPDATE_PROGRESS_MUTATION, variables, best_effort=best_effort)
        result = data.get("update_user_book_read") or {}
        if result.get("error"):
            logger.warning(f"Update of read {session_id} rejected: {result['error']}")
            return None

        read = result.get("user_book_read")
        if not read:
            raise GraphQLError("Update read returned no user_book_read")
        if read.get("progress_pages") is None:
            logger.warning(f"Read {session_id} is finished")
            return None
        logger.info(f"Updated Hardcover read {session_id} to page {pages}")
        return ReadSession(**read)

    async def update_progress(self, link_id: int, pages: int, session_id: Optional[int] = None,
                              edition_id: Optional[int] = None, started_at: Optional[str] = None,
                              best_effort: bool = False) -> ReadSession:
        """Update the active read, falling back once to a fresh read if it is finished or missing."""
        if session_id is None:
            return await self.create_read(link_id, pages, edition_id, started_at, best_effort)

        read = await self.update_read(session_id, pages, edition_id, started_at, best_effort)
        if read is not None:
            return read

        logger.info(f"Falling back to a new read for user book {link_id}")
        try:
            return await self.create_read(link_id, pages, edition_id, started_at, best_effort)
        except HardcoverError as e:
            e.session_invalidated = True
            raise

    async def add_book_to_library(self, book_id: int,
                                  status: ReadingStatus = ReadingStatus.CURRENTLY_READING) -> int:
        if self.privacy_setting_id is None:
            await self.get_me()
        data = await self.request(queries.CREATE_USER_BOOK_MUTATION, {
            "object": {
                "book_id": int(book_id),
                "status_id": int(status),
                "privacy_setting_id": self.privacy_setting_id,
            }
        })
        result = data.get("insert_user_book") or {}
        if result.get("error"):
            raise GraphQLError(result["error"])
        user_book = result.get("user_book") or {}
        if not user_book.get("id"):
            raise GraphQLError("Add to library returned no user_book")
        logger.info(f"Added book {book_id} to Hardcover library as user book {user_book['id']}")
        return int(user_book["id"])

    async def update_status(self, link_id: int, status: ReadingStatus) -> bool:
        data = await self.request(queries.UPDATE_STATUS_MUTATION, {
            "userBookId": int(link_id),
            "statusId": int(status),
        })
        result = data.get("update_user_book") or {}
        # Hardcover sometimes reports warnings as errors alongside a valid user_book
        if result.get("user_book"):
            return True
        if result.get("error"):
            logger.warning(f"Status update for {link_id} returned error: {result['error']}")
            return False
        return True

    async def delete_read(self, session_id: int):
        await self.request(queries.DELETE_READ_MUTATION, {"readId": session_id})

    async def get_all_reads(self, link_id: int) -> List[ReadSession]:
        data = await self.request(queries.GET_ALL_READS_QUERY, {"userBookId": int(link_id)})
        rows = data.get("user_books") or []
        if not rows:
            return []
        return [ReadSession(**r) for r in rows[0].get("user_book_reads") or []]

    async def cleanup_duplicate_reads(self, link_id: int) -> CleanupResult:
        """Keep the read with the highest progress and delete every other one."""
        reads = await self.get_all_reads(link_id)
        if not reads:
            return CleanupResult()
        best = pick_best_read(reads)
        if len(reads) == 1:
            logger.debug("No duplicate reads to clean up")
            return CleanupResult(deleted=0, kept=best.id)

        logger.info(f"Keeping read {best.id} with {best.progress_pages} pages, removing {len(reads) - 1}")
        deleted = 0
        for read in reads:
            if read.id == best.id:
                continue
            try:
                await self.delete_read(read.id)
                deleted += 1
            except HardcoverError as e:
                logger.error(f"Failed to delete read {read.id}: {e}")
        return CleanupResult(deleted=deleted, kept=best.id)
