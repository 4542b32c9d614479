import time
from fastapi import FastAPI, Depends, HTTPException, Header
from pydantic import BaseModel
from typing import Literal, Optional
from .config import settings
from .errors import HardcoverError
from .gate import FailureGate
from .models import LocalBook, LocalProgress
from .notifier import Notifier
from .registry import SyncRegistry
from .view import RecordingView

app = FastAPI(title="Hardcover Progress Sync")
registry: Optional[SyncRegistry] = None
gate: Optional[FailureGate] = None
notifier: Optional[Notifier] = None


class OpenBookRequest(BaseModel):
    book: LocalBook
    progress: LocalProgress


class ResolveRequest(BaseModel):
    keep: Literal["local", "remote"]


class MatchRequest(BaseModel):
    book_id: int


def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_registry() -> SyncRegistry:
    if registry is None:
        raise HTTPException(status_code=503, detail="Sync service not ready")
    return registry


def _book(book_key: str):
    try:
        return get_registry().get(book_key)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Book {book_key} is not open")


@app.get("/healthz")
def healthz():
    if registry is None:
        return {"status": "starting"}
    return {
        "status": "ok",
        "open_books": len(registry),
        "last_sync": registry.store.state.last_successful_sync,
        "time": time.time(),
    }


@app.get("/gate", dependencies=[Depends(get_token)])
def gate_status():
    # Polled by the settings screen for its countdown
    if gate is None:
        raise HTTPException(status_code=503, detail="Sync service not ready")
    return gate.snapshot().model_dump()


@app.post("/gate/reset", dependencies=[Depends(get_token)])
def gate_reset():
    if gate is None:
        raise HTTPException(status_code=503, detail="Sync service not ready")
    gate.reset()
    return gate.snapshot().model_dump()


@app.get("/notifications", dependencies=[Depends(get_token)])
def notifications():
    if notifier is None:
        return []
    return [n.model_dump() for n in notifier.history]


@app.post("/books/{book_key}/open", dependencies=[Depends(get_token)])
async def open_book(book_key: str, body: OpenBookRequest):
    if body.book.key != book_key:
        raise HTTPException(status_code=400, detail="Book key mismatch")
    sync = await get_registry().open_book(body.book, body.progress, view=RecordingView())
    return sync.describe()


@app.get("/books/{book_key}", dependencies=[Depends(get_token)])
def book_status(book_key: str):
    return _book(book_key).describe()


@app.post("/books/{book_key}/progress", dependencies=[Depends(get_token)])
async def progress_changed(book_key: str, progress: LocalProgress):
    sync = _book(book_key)
    await sync.on_progress_changed(progress)
    return sync.describe()


@app.post("/books/{book_key}/push", dependencies=[Depends(get_token)])
async def push(book_key: str):
    _book(book_key)
    await get_registry().push(book_key)
    return _book(book_key).describe()


@app.post("/books/{book_key}/pull", dependencies=[Depends(get_token)])
async def pull(book_key: str):
    sync = _book(book_key)
    await sync.pull()
    return sync.describe()


@app.post("/books/{book_key}/flush", dependencies=[Depends(get_token)])
async def flush(book_key: str):
    sync = _book(book_key)
    await sync.force_sync()
    return sync.describe()


@app.post("/books/{book_key}/close", dependencies=[Depends(get_token)])
async def close_book(book_key: str):
    _book(book_key)
    await get_registry().close_book(book_key)
    return {"closed": book_key}


@app.post("/books/{book_key}/resolve", dependencies=[Depends(get_token)])
async def resolve(book_key: str, body: ResolveRequest):
    sync = _book(book_key)
    if sync.conflict is None:
        raise HTTPException(status_code=409, detail="No conflict to resolve")
    await get_registry().resolve(book_key, body.keep)
    return sync.describe()


@app.get("/books/{book_key}/matches", dependencies=[Depends(get_token)])
async def matches(book_key: str, q: Optional[str] = None):
    sync = _book(book_key)
    try:
        results = await sync.search_matches(q)
    except HardcoverError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [r.model_dump() for r in results]


@app.post("/books/{book_key}/match", dependencies=[Depends(get_token)])
async def match(book_key: str, body: MatchRequest):
    sync = _book(book_key)
    try:
        await sync.match_manually(body.book_id)
    except HardcoverError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return sync.describe()


@app.post("/books/{book_key}/cleanup", dependencies=[Depends(get_token)])
async def cleanup(book_key: str):
    _book(book_key)
    try:
        result = await get_registry().cleanup(book_key)
    except HardcoverError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if result is None:
        raise HTTPException(status_code=409, detail="No Hardcover book linked. Please match the book first.")
    return result.model_dump()
