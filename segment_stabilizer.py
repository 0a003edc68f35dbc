"""Turns revisable streaming transcript results into stable text segments.

A transcription stream keeps re-sending its best hypothesis for the utterance
in flight. Each result is cumulative: item ``i`` of a later result replaces
item ``i`` of an earlier one, until a non-partial result closes the utterance.
The functions here are pure. The caller owns the cursor and feeds it back on
the next call.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Final, Iterable, Optional, Sequence

SEGMENT_BOUNDARY_PUNCTUATION: Final[frozenset[str]] = frozenset({",", ".", "!", "?"})
PUNCTUATION_CHARACTERS: Final[str] = ",.!?"

STABILITY_NONE: Final[str] = "none"
STABILITY_LEVELS: Final[tuple[str, ...]] = ("low", "medium", "high")
STABILITY_MODES: Final[tuple[str, ...]] = (STABILITY_NONE, *STABILITY_LEVELS)

_SPACE_BEFORE_PUNCTUATION = re.compile(r"\s+([,.!?])")


class ItemKind(str, Enum):
    WORD = "word"
    PUNCTUATION = "punctuation"


class SegmentKind(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"


@dataclass(frozen=True)
class TranscriptItem:
    content: str
    kind: ItemKind = ItemKind.WORD
    is_stable: bool = False
    index: int = 0


@dataclass(frozen=True)
class TranscriptResult:
    items: tuple[TranscriptItem, ...]
    is_partial: bool

    @property
    def is_empty(self) -> bool:
        return not self.items


@dataclass(frozen=True)
class Segment:
    kind: SegmentKind
    text: str

    @property
    def is_final(self) -> bool:
        return self.kind is SegmentKind.FINAL


@dataclass(frozen=True)
class StabilizerOutput:
    partial: Optional[Segment]
    final: Optional[Segment]
    cursor: int

    def segments(self) -> list[Segment]:
        """Partial first, then final: the order callers forward them in."""
        return [segment for segment in (self.partial, self.final) if segment is not None]


def is_stabilization_enabled(stability_mode: str) -> bool:
    return (stability_mode or "").strip().lower() in STABILITY_LEVELS


def join_items(items: Iterable[TranscriptItem]) -> str:
    joined = " ".join(item.content for item in items).strip()
    return _SPACE_BEFORE_PUNCTUATION.sub(r"\1", joined)


def find_segment_boundary(items: Sequence[TranscriptItem], cursor: int) -> Optional[int]:
    """Index of the first boundary punctuation item at or after ``cursor``."""
    for index in range(max(cursor, 0), len(items)):
        item = items[index]
        if item.kind is ItemKind.PUNCTUATION and item.content in SEGMENT_BOUNDARY_PUNCTUATION:
            return index
    return None


def stabilize(result: TranscriptResult, cursor: int, stabilization_enabled: bool) -> StabilizerOutput:
    """Derive at most one partial and one final segment from ``result``.

    ``cursor`` is the index of the first item not yet committed to a final
    segment within the current utterance. The returned cursor is what the
    caller must pass on the next call.
    """
    if result.is_empty:
        if not result.is_partial:
            return StabilizerOutput(partial=None, final=None, cursor=0)
        return StabilizerOutput(partial=None, final=None, cursor=cursor)

    items = result.items
    if not result.is_partial:
        # Utterance closed: commit everything after the cursor, stable or not.
        return StabilizerOutput(partial=None, final=_segment(SegmentKind.FINAL, items[cursor:]), cursor=0)

    # Preview always shows the whole in-flight utterance, not just the tail.
    partial = _segment(SegmentKind.PARTIAL, items)
    if not stabilization_enabled:
        return StabilizerOutput(partial=partial, final=None, cursor=cursor)

    boundary = find_segment_boundary(items, cursor)
    if boundary is None:
        return StabilizerOutput(partial=partial, final=None, cursor=cursor)

    candidate = items[cursor : boundary + 1]
    if not all(item.is_stable for item in candidate):
        return StabilizerOutput(partial=partial, final=None, cursor=cursor)

    final = _segment(SegmentKind.FINAL, candidate)
    return StabilizerOutput(partial=partial, final=final, cursor=boundary + 1)


def tokenize_transcript(text: str, is_stable: bool = False) -> list[TranscriptItem]:
    """Split plain transcript text into word and trailing-punctuation items."""
    tokens: list[tuple[str, ItemKind]] = []
    for raw in (text or "").split():
        word = raw.rstrip(PUNCTUATION_CHARACTERS)
        trailing = raw[len(word) :]
        if word:
            tokens.append((word, ItemKind.WORD))
        tokens.extend((mark, ItemKind.PUNCTUATION) for mark in trailing)
    return [
        TranscriptItem(content=content, kind=kind, is_stable=is_stable, index=index)
        for index, (content, kind) in enumerate(tokens)
    ]


def _segment(kind: SegmentKind, items: Sequence[TranscriptItem]) -> Optional[Segment]:
    text = join_items(items)
    if not text:
        return None
    return Segment(kind=kind, text=text)
