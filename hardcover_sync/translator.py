"""
Page translation between the local renderer's pagination and the remote edition's.

Reflowable books are paginated independently on each side, so pages are
mapped through the percentage read. Fixed-layout pages are absolute.
"""
import math
from typing import Optional


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ProgressTranslator:
    def to_remote(self, local_index: int, local_total: int, remote_total: Optional[int],
                  fixed_layout: bool = False) -> int:
        """0-based renderer index to the remote 1-based page number."""
        page = local_index + 1
        if fixed_layout or not remote_total or remote_total == local_total:
            # Unknown remote total: assume the same scale until a fetch tells us otherwise
            return page
        return round_half_up(page / local_total * remote_total)

    def from_remote(self, remote_page: int, remote_total: Optional[int], local_total: int,
                    fixed_layout: bool = False) -> int:
        """Remote page number to a 1-based page in local pagination."""
        if fixed_layout or not remote_total or remote_total == local_total:
            return remote_page
        return round_half_up(remote_page / remote_total * local_total)

    @staticmethod
    def to_local_index(local_page: int) -> int:
        return max(0, local_page - 1)

    @staticmethod
    def fraction(local_page: int, local_total: int) -> float:
        if local_total <= 0:
            return 0.0
        return min(1.0, max(0.0, local_page / local_total))
