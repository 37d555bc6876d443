"""
Merging of server windows into the retained per-interface history.

The server answers a delta fetch with a fixed-size window per interface. The
buckets the client already holds come back as placeholders at the front of
the window; they only mark where fresh data starts and must never reach the
visible history, where they would read as traffic dropping to zero.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from models import (
    DataSet,
    HistoryEntry,
    InterfaceSegment,
    InterfaceSnapshot,
    SegmentEntry,
    is_placeholder,
)


def first_valid_index(segment: Sequence[SegmentEntry]) -> int:
    """Index of the first non-placeholder entry, or -1."""
    for i, entry in enumerate(segment):
        if not is_placeholder(entry):
            return i
    return -1


def strip_placeholders(segment: Sequence[SegmentEntry]) -> Tuple[HistoryEntry, ...]:
    start = first_valid_index(segment)
    if start == -1:
        return ()
    return tuple(_entries(segment[start:]))


def merge_history(
    previous: Sequence[HistoryEntry],
    segment: Sequence[SegmentEntry],
) -> Tuple[HistoryEntry, ...]:
    """Append the fresh tail of ``segment`` to ``previous``.

    The result is bounded to ``len(segment)`` entries, the window size the
    server just answered with.
    """
    if not previous:
        return strip_placeholders(segment)

    start = first_valid_index(segment)
    if start == -1:
        return tuple(previous)

    last = previous[-1][0]
    fresh = [entry for entry in _entries(segment[start:]) if entry[0] > last]
    merged = list(previous) + fresh
    return tuple(merged[-len(segment):])


def merge_snapshot(
    previous: Optional[InterfaceSnapshot],
    segment: InterfaceSegment,
) -> InterfaceSnapshot:
    if previous is None:
        return InterfaceSnapshot(
            history=strip_placeholders(segment.history),
            closed=segment.closed,
            mac=segment.mac,
        )
    if previous.closed:
        return previous
    return InterfaceSnapshot(
        history=merge_history(previous.history, segment.history),
        closed=segment.closed,
        mac=segment.mac if segment.mac is not None else previous.mac,
    )


def merge_data_set(
    previous: DataSet,
    part: Mapping[str, InterfaceSegment],
) -> Dict[str, InterfaceSnapshot]:
    """Build the new data set from a server response.

    Interfaces the server no longer reports are dropped. ``previous`` is left
    untouched.
    """
    return {name: merge_snapshot(previous.get(name), segment) for name, segment in part.items()}


def adopt_data_set(part: Mapping[str, InterfaceSegment]) -> Dict[str, InterfaceSnapshot]:
    return {name: merge_snapshot(None, segment) for name, segment in part.items()}


def latest_timestamps(data: DataSet) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for name, snapshot in data.items():
        latest = snapshot.latest_timestamp
        if latest is not None:
            out[name] = latest
    return out


def _entries(segment: Sequence[SegmentEntry]) -> List[HistoryEntry]:
    # Placeholders past the first valid entry are gaps, not data.
    return [(entry[0], entry[1]) for entry in segment if not is_placeholder(entry)]
