"""Splits a subtitle track into bounded translation segments."""

import logging
import math
from dataclasses import dataclass
from typing import List

from ..models.core import SubtitleEntry


logger = logging.getLogger(__name__)


@dataclass
class TranslationSegment:
    """A contiguous run of entries translated as one LLM request."""
    segment_index: int
    start_entry: int
    entries: List[SubtitleEntry]
    character_count: int
    estimated_tokens: int

    @property
    def end_entry(self) -> int:
        """Index one past the last entry of the segment in the source track."""
        return self.start_entry + len(self.entries)


class Segmenter:
    """Greedy segmenter bounded by a character budget and an entry budget."""

    def __init__(
        self,
        max_characters: int = 5000,
        max_entries: int = 50,
        estimated_tokens_per_char: float = 1.3
    ):
        if max_characters < 1 or max_entries < 1:
            raise ValueError("Segment budgets must be positive")
        self.max_characters = max_characters
        self.max_entries = max_entries
        self.estimated_tokens_per_char = estimated_tokens_per_char

    def estimate_tokens(self, character_count: int) -> int:
        return int(math.ceil(character_count * self.estimated_tokens_per_char))

    def segment(self, entries: List[SubtitleEntry]) -> List[TranslationSegment]:
        """Split entries into segments.

        Entries are accumulated in order until adding the next one would exceed
        either budget. An entry is never split; one that is larger than the
        character budget on its own becomes a segment by itself.

        Args:
            entries: Ordered subtitle track

        Returns:
            Segments in track order; empty for an empty track
        """
        segments: List[TranslationSegment] = []
        current: List[SubtitleEntry] = []
        current_chars = 0
        start_entry = 0

        for position, entry in enumerate(entries):
            length = len(entry.text)
            over_chars = current_chars + length > self.max_characters
            over_entries = len(current) + 1 > self.max_entries
            if current and (over_chars or over_entries):
                segments.append(self._close(len(segments), start_entry, current, current_chars))
                current = []
                current_chars = 0
                start_entry = position
            current.append(entry)
            current_chars += length

        if current:
            segments.append(self._close(len(segments), start_entry, current, current_chars))

        logger.info(
            f"Segmented {len(entries)} entries into {len(segments)} segments "
            f"(max {self.max_entries} entries / {self.max_characters} chars)"
        )
        return segments

    def _close(
        self,
        index: int,
        start_entry: int,
        entries: List[SubtitleEntry],
        character_count: int
    ) -> TranslationSegment:
        return TranslationSegment(
            segment_index=index,
            start_entry=start_entry,
            entries=list(entries),
            character_count=character_count,
            estimated_tokens=self.estimate_tokens(character_count),
        )
