from enum import Enum, IntEnum
from pydantic import BaseModel, Field
from typing import Dict, List, Optional


class SyncStrategy(str, Enum):
    PROMPT = "prompt"
    SILENT = "silent"
    SEND = "send"
    RECEIVE = "receive"


class SyncFrequency(str, Enum):
    PAGE = "page"
    CHAPTER = "chapter"
    SESSION = "session"


class ReadingStatus(IntEnum):
    WANT_TO_READ = 1
    CURRENTLY_READING = 2
    READ = 3
    DNF = 4


class SyncPhase(str, Enum):
    IDLE = "idle"
    MATCHING = "matching"
    CHECKING = "checking"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"


class GateState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class GateStatus(BaseModel, frozen=True):
    state: GateState
    consecutive_failures: int
    last_failure_at: float
    retry_in: float = 0.0


# Persisted linkage

class SyncLinkage(BaseModel):
    remote_book_link_id: Optional[int] = None  # Hardcover user_book.id
    remote_read_session_id: Optional[int] = None
    remote_edition_id: Optional[int] = None
    remote_read_started_at: Optional[str] = None  # YYYY-MM-DD
    remote_total_pages: Optional[int] = None
    last_pushed_at: float = 0.0

    @property
    def linked(self) -> bool:
        return self.remote_book_link_id is not None


class LinkageState(BaseModel):
    linkages: Dict[str, SyncLinkage] = Field(default_factory=dict)
    last_successful_sync: float = 0.0


# Renderer boundary

class LocalBook(BaseModel):
    key: str
    title: str
    author: str = ""
    isbn: Optional[str] = None
    fixed_layout: bool = False
    updated_at: float = 0.0


class LocalProgress(BaseModel):
    page: int = Field(ge=0)  # 0-based index reported by the renderer
    total_pages: int = Field(ge=1)
    section_id: Optional[str] = None
    updated_at: float = 0.0

    @property
    def percentage(self) -> float:
        return (self.page + 1) / self.total_pages


# Conflict resolution

class ProgressSnapshot(BaseModel):
    page: int = Field(ge=0)
    total_pages: int = Field(ge=1)
    timestamp: float = 0.0

    @property
    def percentage(self) -> float:
        return self.page / self.total_pages


class ProgressSnapshotView(BaseModel):
    page: int
    percentage: float
    preview: str
    timestamp: float


class ConflictRecord(BaseModel):
    local: ProgressSnapshotView
    remote: ProgressSnapshotView
    remote_page_raw: int
    local_total_pages: int
    fixed_layout: bool = False


# Remote (Hardcover) payloads

class RemoteAuthor(BaseModel):
    name: str


class RemoteBook(BaseModel):
    id: int
    title: str = ""
    subtitle: str = ""
    authors: List[RemoteAuthor] = Field(default_factory=list)
    isbn_10: str = ""
    isbn_13: str = ""
    image_url: str = ""

    @property
    def author_names(self) -> str:
        return " ".join(a.name for a in self.authors)


class ReadSession(BaseModel):
    id: int
    progress_pages: Optional[int] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    edition_id: Optional[int] = None


class RemoteUserBook(BaseModel):
    id: int
    book_id: Optional[int] = None
    status_id: Optional[int] = None
    edition_id: Optional[int] = None
    active_read: Optional[ReadSession] = None
    remote_total_pages: Optional[int] = None

    @property
    def session_id(self) -> Optional[int]:
        return self.active_read.id if self.active_read else None

    @property
    def started_at(self) -> Optional[str]:
        return self.active_read.started_at if self.active_read else None


class CleanupResult(BaseModel):
    deleted: int = 0
    kept: Optional[int] = None
