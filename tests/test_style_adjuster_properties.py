"""Property-based tests for post-translation merging and style rewriting.

Property: merge idempotence
For any track and configuration, running the adjuster again over its own
output changes nothing, and disabled passes leave the track untouched.
"""

from typing import List

import pytest
from hypothesis import given, strategies as st, settings

from src.models.core import StyleAdjustmentConfig, StylePreference, SubtitleEntry
from src.services.base import BaseStyleService
from src.services.style_adjuster import (
    StyleAdjuster,
    connector_reason,
    is_complete_sentence,
    join_texts,
)


FRAGMENTS = [
    "所以，",
    "我們會",
    "而且大家都很開心。",
    "有人能猜到誰會贏嗎？",
    "真的嗎",
    "「好啊。」",
    "I think",
    "and then we left.",
    "but it was fine,",
    "We will",
    "go home!",
    "It is done.",
]


@st.composite
def translated_tracks(draw, max_size=25):
    """Generate tracks mixing complete sentences and fragments with varied gaps."""
    texts = draw(st.lists(st.sampled_from(FRAGMENTS), min_size=0, max_size=max_size))
    entries = []
    current = draw(st.floats(min_value=0.0, max_value=10.0))
    for text in texts:
        duration = draw(st.floats(min_value=0.3, max_value=6.0))
        entries.append(SubtitleEntry(start=current, end=current + duration, text=text))
        current += duration + draw(st.sampled_from([0.05, 0.2, 0.5, 2.0]))
    return entries


@st.composite
def merge_configs(draw):
    return StyleAdjustmentConfig(
        enable_subtitle_merging=draw(st.booleans()),
        enable_complete_sentence_merging=draw(st.booleans()),
        max_merge_segments=draw(st.integers(min_value=1, max_value=5)),
        max_merge_characters=draw(st.integers(min_value=5, max_value=80)),
        max_merge_display_time=draw(st.floats(min_value=1.0, max_value=20.0)),
        min_time_gap=draw(st.sampled_from([0.1, 0.3, 1.0])),
    )


class UppercaseStyleService(BaseStyleService):
    """Upper-cases every line; fails on chunks of the given size."""

    def __init__(self, fail_on_size=None):
        self.fail_on_size = fail_on_size

    def adjust_style(self, entries, keywords, style, custom_prompt=""):
        if len(entries) == self.fail_on_size:
            raise RuntimeError("style service unavailable")
        return [SubtitleEntry(start=e.start, end=e.end, text=e.text.upper()) for e in entries]


def _texts(entries: List[SubtitleEntry]) -> List[str]:
    return [entry.text for entry in entries]


class TestMergeProperties:
    """Property-based tests for merge idempotence and determinism."""

    @given(entries=translated_tracks(), config=merge_configs())
    @settings(max_examples=200, deadline=None)
    def test_adjusting_twice_is_idempotent_property(self, entries, config):
        """Property: a second run over adjusted output performs no merges."""
        adjuster = StyleAdjuster()
        first = adjuster.adjust(entries, config)
        second = adjuster.adjust(first.adjusted_entries, config)

        assert second.adjusted_entries == first.adjusted_entries
        assert second.merge_operations == []

    @given(entries=translated_tracks(), config=merge_configs())
    @settings(max_examples=100, deadline=None)
    def test_merging_preserves_text_and_span_property(self, entries, config):
        """Property: merging only joins lines; no text or time span is lost."""
        adjusted = StyleAdjuster().adjust(entries, config).adjusted_entries

        assert sum(e.merged_count for e in adjusted) == len(entries)
        assert all(e.merged_count <= max(1, config.max_merge_segments) for e in adjusted)
        assert "".join(_texts(adjusted)).replace(" ", "") == "".join(_texts(entries)).replace(" ", "")
        if entries:
            assert adjusted[0].start == entries[0].start
            assert adjusted[-1].end == max(e.end for e in entries)

    @given(entries=translated_tracks())
    @settings(max_examples=50, deadline=None)
    def test_disabled_passes_are_no_op_property(self, entries):
        """Property: with every pass disabled the output equals the input."""
        config = StyleAdjustmentConfig(
            enable_style_rewrite=False,
            enable_subtitle_merging=False,
            enable_complete_sentence_merging=False,
        )
        result = StyleAdjuster(UppercaseStyleService()).adjust(entries, config)

        assert result.adjusted_entries == entries
        assert result.merge_operations == []

    @given(entries=translated_tracks(), config=merge_configs())
    @settings(max_examples=50, deadline=None)
    def test_adjustment_is_deterministic_property(self, entries, config):
        """Property: identical input and configuration give identical output."""
        adjuster = StyleAdjuster()
        assert adjuster.adjust(entries, config).adjusted_entries == \
               adjuster.adjust(entries, config).adjusted_entries


class TestMergeScenarios:
    """Unit tests for concrete merge decisions."""

    def setup_method(self):
        self.adjuster = StyleAdjuster()
        self.config = StyleAdjustmentConfig()

    def test_trailing_connector_merges_across_small_gap(self):
        entries = [
            SubtitleEntry(start=7.1, end=14.23, text="所以你有兩支隊伍在比賽，"),
            SubtitleEntry(start=14.33, end=20.7, text="有人能猜到誰會贏嗎？"),
        ]

        result = self.adjuster.adjust(entries, self.config)

        assert len(result.adjusted_entries) == 1
        merged = result.adjusted_entries[0]
        assert (merged.start, merged.end) == (7.1, 20.7)
        assert merged.text == "所以你有兩支隊伍在比賽，有人能猜到誰會贏嗎？"
        assert len(result.merge_operations) == 1
        assert result.merge_operations[0].original_indexes == [0, 1]
        assert result.merge_operations[0].reason == "punctuation connector"

    def test_large_gap_prevents_merge(self):
        entries = [
            SubtitleEntry(start=0.0, end=1.0, text="所以，"),
            SubtitleEntry(start=2.0, end=3.0, text="好。"),
        ]
        assert len(self.adjuster.adjust(entries, self.config).adjusted_entries) == 2

    def test_complete_sentences_are_untouched(self):
        entries = [
            SubtitleEntry(start=0.0, end=1.0, text="Hello."),
            SubtitleEntry(start=1.05, end=2.0, text="World!"),
        ]
        result = self.adjuster.adjust(entries, self.config)

        assert result.adjusted_entries == entries
        assert result.merge_operations == []

    def test_continuation_word_joins_with_space(self):
        entries = [
            SubtitleEntry(start=0.0, end=1.0, text="I went home"),
            SubtitleEntry(start=1.1, end=2.0, text="and then I slept."),
        ]
        result = self.adjuster.adjust(entries, self.config)

        assert _texts(result.adjusted_entries) == ["I went home and then I slept."]
        assert result.merge_operations[0].reason == "continuation word"

    def test_max_merge_segments_caps_group_size(self):
        entries = [
            SubtitleEntry(start=float(i), end=i + 0.9, text="一，")
            for i in range(5)
        ]
        result = self.adjuster.adjust(entries, self.config)

        assert [e.merged_count for e in result.adjusted_entries] == [3, 2]

    def test_character_cap_prevents_merge(self):
        config = StyleAdjustmentConfig(max_merge_characters=10)
        entries = [
            SubtitleEntry(start=0.0, end=1.0, text="所以你有兩支隊伍，"),
            SubtitleEntry(start=1.1, end=2.0, text="有人能猜到誰會贏嗎？"),
        ]
        assert len(self.adjuster.adjust(entries, config).adjusted_entries) == 2

    def test_complete_sentence_pass_absorbs_until_terminal_punctuation(self):
        config = StyleAdjustmentConfig(enable_subtitle_merging=False)
        entries = [
            SubtitleEntry(start=0.0, end=1.0, text="我覺得"),
            SubtitleEntry(start=1.1, end=2.0, text="這個方法"),
            SubtitleEntry(start=2.1, end=3.0, text="很好。"),
            SubtitleEntry(start=3.1, end=4.0, text="下一個"),
        ]
        result = self.adjuster.adjust(entries, config)

        assert _texts(result.adjusted_entries) == ["我覺得這個方法很好。", "下一個"]
        assert result.merge_operations[0].reason == "incomplete sentence"


class TestStyleRewrite:
    """Unit tests for the optional style pass."""

    def setup_method(self):
        self.config = StyleAdjustmentConfig(
            enable_style_rewrite=True,
            enable_subtitle_merging=False,
            enable_complete_sentence_merging=False,
            style_preference=StylePreference.CASUAL,
        )
        self.entries = [
            SubtitleEntry(start=float(i), end=i + 0.5, text=f"line {i}.") for i in range(25)
        ]

    def test_rewrite_changes_text_but_not_timing(self):
        result = StyleAdjuster(UppercaseStyleService()).adjust(self.entries, self.config)

        assert _texts(result.adjusted_entries) == [f"LINE {i}." for i in range(25)]
        assert [e.start for e in result.adjusted_entries] == [e.start for e in self.entries]
        assert len(result.style_changes) == 25
        assert result.style_changes[0].style == "casual"

    def test_failed_chunk_keeps_original_text(self):
        result = StyleAdjuster(UppercaseStyleService(fail_on_size=5)).adjust(self.entries, self.config)

        assert result.failed_style_chunks == [1]
        assert _texts(result.adjusted_entries)[:20] == [f"LINE {i}." for i in range(20)]
        assert _texts(result.adjusted_entries)[20:] == [f"line {i}." for i in range(20, 25)]

    def test_rewrite_without_service_is_skipped(self):
        result = StyleAdjuster().adjust(self.entries, self.config)

        assert result.adjusted_entries == self.entries
        assert result.style_changes == []


class TestSentenceHeuristics:
    """Unit tests for the punctuation and connector heuristics."""

    @pytest.mark.parametrize("text,expected", [
        ("好的。", True),
        ("真的嗎？", True),
        ("「好啊。」", True),
        ('He said "go."', True),
        ("所以，", False),
        ("I think", False),
        ("", False),
    ])
    def test_is_complete_sentence(self, text, expected):
        assert is_complete_sentence(text) == expected

    @pytest.mark.parametrize("current,following,expected", [
        ("所以，", "好", "punctuation connector"),
        ("I went", "but stayed", "continuation word"),
        ("我們會", "去", "modal marker"),
        ("We will", "go", "modal marker"),
        ("完成了。", "而且", None),
        ("看看", "這個", None),
    ])
    def test_connector_reason(self, current, following, expected):
        assert connector_reason(current, following) == expected

    def test_join_texts_spaces_only_latin_boundaries(self):
        assert join_texts("hello ", " world") == "hello world"
        assert join_texts("你好，", "世界") == "你好，世界"
        assert join_texts("OK，", "fine") == "OK，fine"
