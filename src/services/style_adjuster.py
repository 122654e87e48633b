"""Post-translation style adjustment and subtitle merging.

Two merge passes join fragmented lines back into readable sentences:

* subtitle merging joins neighbours when a connector heuristic fires (a
  trailing comma-like mark, a leading continuation word or a trailing modal
  marker);
* complete-sentence merging keeps absorbing lines until one ends in terminal
  punctuation.

Both passes share the same length, gap, display time and line count limits.
Every decision depends only on the accumulated line and its next neighbour,
and a merged line remembers how many source lines it holds, so running the
passes again over their own output changes nothing.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .base import BaseStyleService
from ..models.core import MergeOperation, StyleAdjustmentConfig, SubtitleEntry


logger = logging.getLogger(__name__)

STYLE_CHUNK_SIZE = 20

_TERMINAL_END = re.compile(r'[.!?。！？][」』"\'”’)）]?$')
_CONNECTOR_END = re.compile(r'[，、；,;:：—–-]$')
_CJK_MODAL_END = re.compile(r'(?:會|將|要|能|可|必須|應該|想)$')
_LATIN_MODAL_END = re.compile(
    r'\b(?:will|would|can|could|should|must|shall|may|might|going to|gonna|to)$',
    re.IGNORECASE,
)
_LATIN_CONTINUATION_START = re.compile(
    r'^(?:and|but|so|however|or|because|then|which|while|although|though)\b',
    re.IGNORECASE,
)
_CJK_CONTINUATION_WORDS = (
    '而且', '並且', '但是', '不過', '然而', '所以', '因此', '因為', '由於', '然後', '而', '但', '並',
)


def is_complete_sentence(text: str) -> bool:
    """True if text ends in terminal punctuation, optionally followed by a closing quote."""
    return bool(_TERMINAL_END.search(text.rstrip()))


def ends_with_connector(text: str) -> bool:
    return bool(_CONNECTOR_END.search(text.rstrip()))


def ends_with_modal(text: str) -> bool:
    stripped = text.rstrip()
    return bool(_CJK_MODAL_END.search(stripped) or _LATIN_MODAL_END.search(stripped))


def starts_with_continuation(text: str) -> bool:
    stripped = text.lstrip()
    return bool(_LATIN_CONTINUATION_START.match(stripped) or stripped.startswith(_CJK_CONTINUATION_WORDS))


def join_texts(first: str, second: str) -> str:
    """Join two lines, with a space only between two Latin-script boundaries."""
    first = first.rstrip()
    second = second.lstrip()
    if first and second and first[-1].isascii() and second[0].isascii():
        return f"{first} {second}"
    return first + second


def connector_reason(current: str, following: str) -> Optional[str]:
    """Name of the connector heuristic linking two lines, or None."""
    if is_complete_sentence(current):
        return None
    if ends_with_connector(current):
        return "punctuation connector"
    if starts_with_continuation(following):
        return "continuation word"
    if ends_with_modal(current):
        return "modal marker"
    return None


@dataclass
class StyleChange:
    """One line rewritten by the style pass."""
    index: int
    original_text: str
    adjusted_text: str
    style: str


@dataclass
class StyleAdjustmentResult:
    """Output of the post-translation adjuster."""
    original_entries: List[SubtitleEntry]
    adjusted_entries: List[SubtitleEntry]
    merge_operations: List[MergeOperation] = field(default_factory=list)
    style_changes: List[StyleChange] = field(default_factory=list)
    failed_style_chunks: List[int] = field(default_factory=list)


class StyleAdjuster:
    """Applies the optional style rewrite, then the two merge passes."""

    def __init__(self, style_service: Optional[BaseStyleService] = None):
        self.style_service = style_service

    def adjust(
        self,
        entries: List[SubtitleEntry],
        config: StyleAdjustmentConfig,
        keywords: Optional[List[str]] = None
    ) -> StyleAdjustmentResult:
        original = list(entries)
        adjusted = list(entries)
        style_changes: List[StyleChange] = []
        failed_chunks: List[int] = []
        operations: List[MergeOperation] = []

        if config.enable_style_rewrite:
            if self.style_service is None:
                logger.warning("Style rewrite enabled but no style service configured, skipping")
            else:
                adjusted, style_changes, failed_chunks = self.rewrite_style(adjusted, config, keywords or [])

        if config.enable_subtitle_merging:
            adjusted, merged = self.merge_subtitles(adjusted, config)
            operations.extend(merged)

        if config.enable_complete_sentence_merging:
            adjusted, merged = self.merge_complete_sentences(adjusted, config)
            operations.extend(merged)

        logger.info(
            f"Style adjustment: {len(original)} -> {len(adjusted)} entries, "
            f"{len(operations)} merges, {len(style_changes)} style changes"
        )
        return StyleAdjustmentResult(
            original_entries=original,
            adjusted_entries=adjusted,
            merge_operations=operations,
            style_changes=style_changes,
            failed_style_chunks=failed_chunks,
        )

    # Style rewrite

    def rewrite_style(
        self,
        entries: List[SubtitleEntry],
        config: StyleAdjustmentConfig,
        keywords: List[str]
    ) -> Tuple[List[SubtitleEntry], List[StyleChange], List[int]]:
        """Rewrite entries chunk by chunk; a failed chunk keeps its original text."""
        adjusted: List[SubtitleEntry] = []
        changes: List[StyleChange] = []
        failed: List[int] = []

        for chunk_index, offset in enumerate(range(0, len(entries), STYLE_CHUNK_SIZE)):
            chunk = entries[offset:offset + STYLE_CHUNK_SIZE]
            try:
                rewritten = self.style_service.adjust_style(
                    chunk, keywords, config.style_preference, config.custom_style_prompt
                )
                if len(rewritten) != len(chunk):
                    raise ValueError(f"style rewrite returned {len(rewritten)} lines for {len(chunk)}")
            except Exception as e:
                logger.warning(f"Style chunk {chunk_index} failed, keeping original text: {e}")
                failed.append(chunk_index)
                adjusted.extend(chunk)
                continue

            for position, (before, after) in enumerate(zip(chunk, rewritten)):
                text = after.text.strip() or before.text
                adjusted.append(SubtitleEntry(
                    start=before.start, end=before.end, text=text, merged_count=before.merged_count
                ))
                if text != before.text:
                    changes.append(StyleChange(
                        index=offset + position,
                        original_text=before.text,
                        adjusted_text=text,
                        style=config.style_preference.value,
                    ))

        return adjusted, changes, failed

    # Merging

    def _within_limits(
        self,
        group: SubtitleEntry,
        following: SubtitleEntry,
        config: StyleAdjustmentConfig
    ) -> bool:
        if group.merged_count + following.merged_count > config.max_merge_segments:
            return False
        if following.start - group.end > config.min_time_gap:
            return False
        if following.end - group.start > config.max_merge_display_time:
            return False
        return len(join_texts(group.text, following.text)) <= config.max_merge_characters

    def _merge_pass(
        self,
        entries: List[SubtitleEntry],
        config: StyleAdjustmentConfig,
        complete_sentences: bool
    ) -> Tuple[List[SubtitleEntry], List[MergeOperation]]:
        merged: List[SubtitleEntry] = []
        operations: List[MergeOperation] = []
        position = 0

        while position < len(entries):
            group = entries[position]
            indexes = [position]
            reasons: List[str] = []
            position += 1

            while position < len(entries):
                following = entries[position]
                if complete_sentences:
                    reason = None if is_complete_sentence(group.text) else "incomplete sentence"
                else:
                    reason = connector_reason(group.text, following.text)
                if reason is None or not self._within_limits(group, following, config):
                    break

                group = SubtitleEntry(
                    start=group.start,
                    end=max(group.end, following.end),
                    text=join_texts(group.text, following.text),
                    merged_count=group.merged_count + following.merged_count,
                )
                indexes.append(position)
                if reason not in reasons:
                    reasons.append(reason)
                position += 1

            if len(indexes) > 1:
                characters_before = sum(len(entries[i].text) for i in indexes)
                operations.append(MergeOperation(
                    original_indexes=indexes,
                    new_index=len(merged),
                    reason=" + ".join(reasons),
                    characters_saved=max(0, characters_before - len(group.text)),
                ))
            merged.append(group)

        return merged, operations

    def merge_subtitles(
        self,
        entries: List[SubtitleEntry],
        config: StyleAdjustmentConfig
    ) -> Tuple[List[SubtitleEntry], List[MergeOperation]]:
        """Merge neighbours linked by a connector heuristic."""
        result = self._merge_pass(entries, config, complete_sentences=False)
        if result[1]:
            logger.info(f"Subtitle merging: {len(result[1])} merges")
        return result

    def merge_complete_sentences(
        self,
        entries: List[SubtitleEntry],
        config: StyleAdjustmentConfig
    ) -> Tuple[List[SubtitleEntry], List[MergeOperation]]:
        """Merge lines until each ends in terminal punctuation."""
        result = self._merge_pass(entries, config, complete_sentences=True)
        if result[1]:
            logger.info(f"Complete-sentence merging: {len(result[1])} merges")
        return result
