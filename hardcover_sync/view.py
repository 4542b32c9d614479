from typing import Optional
from pydantic import BaseModel


class Navigation(BaseModel):
    page_index: Optional[int] = None
    fraction: Optional[float] = None


class ReaderView:
    """Renderer boundary: where the sync engine asks the reader to move."""

    def go_to_page(self, index: int):
        raise NotImplementedError

    def go_to_fraction(self, fraction: float):
        raise NotImplementedError


class RecordingView(ReaderView):
    """Keeps the last requested navigation for a reader that polls for it."""

    def __init__(self):
        self.last_navigation: Optional[Navigation] = None

    def go_to_page(self, index: int):
        self.last_navigation = Navigation(page_index=index)

    def go_to_fraction(self, fraction: float):
        self.last_navigation = Navigation(fraction=fraction)
