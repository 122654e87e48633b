"""Property-based tests for subtitle segmentation.

For any track and any positive budgets, segmentation should cover the track
exactly once, in order, and respect both budgets except for an oversized
single entry.
"""

import pytest
from hypothesis import given, strategies as st, settings

from src.models.core import SubtitleEntry
from src.services.segmenter import Segmenter
from tests.fakes import make_track


@st.composite
def subtitle_tracks(draw, min_size=0, max_size=60):
    """Generate ordered subtitle tracks with varied text lengths."""
    texts = draw(st.lists(
        st.text(min_size=1, max_size=120).filter(lambda t: t.strip()),
        min_size=min_size,
        max_size=max_size,
    ))
    entries = []
    current = 0.0
    for text in texts:
        duration = draw(st.floats(min_value=0.1, max_value=8.0))
        entries.append(SubtitleEntry(start=current, end=current + duration, text=text))
        current += duration + draw(st.floats(min_value=0.0, max_value=3.0))
    return entries


class TestSegmenterProperties:
    """Property-based tests for segmentation coverage and budgets."""

    @given(
        entries=subtitle_tracks(),
        max_characters=st.integers(min_value=1, max_value=400),
        max_entries=st.integers(min_value=1, max_value=20),
    )
    @settings(max_examples=100, deadline=None)
    def test_segments_cover_track_in_order_property(self, entries, max_characters, max_entries):
        """Property: concatenating segment entries in index order reproduces the track."""
        segments = Segmenter(max_characters, max_entries).segment(entries)

        rebuilt = [entry for segment in segments for entry in segment.entries]
        assert rebuilt == entries, "Segments should cover every entry exactly once, in order"

        assert [s.segment_index for s in segments] == list(range(len(segments)))
        for previous, segment in zip(segments, segments[1:]):
            assert segment.start_entry == previous.end_entry, "Segments should be contiguous"

    @given(
        entries=subtitle_tracks(min_size=1),
        max_characters=st.integers(min_value=1, max_value=400),
        max_entries=st.integers(min_value=1, max_value=20),
    )
    @settings(max_examples=100, deadline=None)
    def test_segments_respect_budgets_property(self, entries, max_characters, max_entries):
        """Property: every segment stays within both budgets unless it is one oversized entry."""
        segments = Segmenter(max_characters, max_entries).segment(entries)

        for segment in segments:
            assert 1 <= len(segment.entries) <= max_entries
            assert segment.character_count == sum(len(e.text) for e in segment.entries)
            if len(segment.entries) > 1:
                assert segment.character_count <= max_characters, \
                    "Multi-entry segments should stay within the character budget"

    @given(entries=subtitle_tracks(min_size=1))
    @settings(max_examples=50, deadline=None)
    def test_segmentation_is_deterministic_property(self, entries):
        """Property: the same input and budgets always give the same segments."""
        segmenter = Segmenter(200, 7)
        first = segmenter.segment(entries)
        second = segmenter.segment(entries)
        assert [(s.start_entry, len(s.entries)) for s in first] == \
               [(s.start_entry, len(s.entries)) for s in second]


class TestSegmenterEdgeCases:
    """Unit tests for segmentation edge cases."""

    def test_entry_budget_splits_ten_entries_into_four_four_two(self):
        segments = Segmenter(max_characters=5000, max_entries=4).segment(make_track(10))

        assert [len(s.entries) for s in segments] == [4, 4, 2]
        assert [s.start_entry for s in segments] == [0, 4, 8]

    def test_empty_track_gives_no_segments(self):
        assert Segmenter().segment([]) == []

    def test_oversized_entry_becomes_its_own_segment(self):
        entries = [
            SubtitleEntry(0.0, 1.0, "short"),
            SubtitleEntry(1.0, 2.0, "x" * 50),
            SubtitleEntry(2.0, 3.0, "tail"),
        ]
        segments = Segmenter(max_characters=10, max_entries=10).segment(entries)

        assert [len(s.entries) for s in segments] == [1, 1, 1]
        assert segments[1].character_count == 50

    def test_estimated_tokens_follow_character_count(self):
        entries = [SubtitleEntry(0.0, 1.0, "a" * 10)]
        segment = Segmenter(estimated_tokens_per_char=1.5).segment(entries)[0]
        assert segment.estimated_tokens == 15

    @pytest.mark.parametrize("max_characters,max_entries", [(0, 5), (5, 0), (-1, -1)])
    def test_non_positive_budgets_rejected(self, max_characters, max_entries):
        with pytest.raises(ValueError):
            Segmenter(max_characters, max_entries)
