"""
Segment-level embedding inputs for videos.

Transcript segments are grouped into fixed time windows; each window becomes
its own Embedding row with start/end bounds so search can point at the
matching part of a video.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from app.services.aggregator import normalize_text


@dataclass
class SegmentWindow:
    index: int
    start: float
    end: float
    text: str


@dataclass
class SegmentVector:
    """A computed vector ready to be stored as an Embedding row."""

    vector: List[float]
    source_text: str
    content_hash: str
    model: str
    is_empty: bool = False
    segment_index: Optional[int] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None


def build_segment_windows(segments: Sequence[Dict[str, Any]], window_seconds: float) -> List[SegmentWindow]:
    """
    Group transcript segments into windows of `window_seconds`.

    A segment belongs to the window its start time falls in. Windows with no
    text are dropped.
    """
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")

    buckets: Dict[int, List[Dict[str, Any]]] = {}
    for segment in segments:
        start = float(segment.get("start", 0.0))
        buckets.setdefault(int(start // window_seconds), []).append(segment)

    windows = []
    for bucket in sorted(buckets):
        items = sorted(buckets[bucket], key=lambda s: float(s.get("start", 0.0)))
        text = normalize_text(" ".join(s.get("text", "") for s in items))
        if not text:
            continue
        windows.append(SegmentWindow(
            index=len(windows),
            start=float(items[0].get("start", 0.0)),
            end=max(float(s.get("end", s.get("start", 0.0))) for s in items),
            text=text,
        ))
    return windows
