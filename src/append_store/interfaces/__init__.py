"""Protocol definitions for the append store components."""

from .codec import Codec
from .index_log import IndexLog
from .segments import SegmentManager
from .store import AppendableStore

__all__ = ["AppendableStore", "Codec", "IndexLog", "SegmentManager"]
