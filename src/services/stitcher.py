"""Reassembles segment results into a single ordered track."""

import logging
from typing import List, Optional

from ..models.core import SegmentStatus, SegmentTask, StitchResult, SubtitleEntry


logger = logging.getLogger(__name__)

# Smallest widening of a boundary gap, in seconds, treated as anomalous.
MIN_ANOMALOUS_GAP = 1.0


class Stitcher:
    """Concatenates segment outputs by segment index.

    Segment boundaries whose output timing overlaps, or opens a gap much wider
    than the source track had, are clamped back to the source timings.
    """

    def __init__(self, boundary_gap_tolerance: float = 2.0, allow_partial_results: bool = False):
        self.boundary_gap_tolerance = boundary_gap_tolerance
        self.allow_partial_results = allow_partial_results

    def _usable_output(self, segment: SegmentTask, use_partials: bool) -> Optional[List[SubtitleEntry]]:
        if segment.status == SegmentStatus.COMPLETED:
            output = segment.result
        elif segment.status == SegmentStatus.FAILED and use_partials:
            output = segment.partial_result
        else:
            output = None

        if output is None:
            return None
        if len(output) != segment.subtitle_count:
            logger.warning(
                f"Segment {segment.segment_index} has {len(output)} entries, "
                f"expected {segment.subtitle_count}; treating it as missing"
            )
            return None
        return list(output)

    def _is_anomalous(self, output_gap: float, source_gap: float) -> bool:
        if output_gap < 0 <= source_gap:
            return True
        limit = max(source_gap * self.boundary_gap_tolerance, source_gap + MIN_ANOMALOUS_GAP)
        return output_gap > limit

    def stitch(
        self,
        segments: List[SegmentTask],
        source_entries: List[SubtitleEntry],
        use_partials: Optional[bool] = None
    ) -> StitchResult:
        """Stitch segment outputs in segment order.

        Args:
            segments: Segment records of one task, in any order
            source_entries: The task's original track
            use_partials: Whether failed segments contribute their salvaged
                partial results; defaults to allow_partial_results

        Returns:
            StitchResult with the stitched entries, the indices of segments
            without usable output and the indices of clamped boundaries
        """
        entries: List[SubtitleEntry] = []
        missing: List[int] = []
        clamped: List[int] = []
        previous: Optional[SegmentTask] = None
        if use_partials is None:
            use_partials = self.allow_partial_results

        for segment in sorted(segments, key=lambda s: s.segment_index):
            output = self._usable_output(segment, use_partials)
            if output is None:
                missing.append(segment.segment_index)
                previous = None
                continue

            boundary = segment.start_entry
            if previous is not None and entries and 0 < boundary < len(source_entries):
                source_before = source_entries[boundary - 1]
                source_after = source_entries[boundary]
                source_gap = source_after.start - source_before.end
                output_gap = output[0].start - entries[-1].end
                if self._is_anomalous(output_gap, source_gap):
                    entries[-1] = SubtitleEntry(
                        start=source_before.start,
                        end=source_before.end,
                        text=entries[-1].text,
                        merged_count=entries[-1].merged_count,
                    )
                    output[0] = SubtitleEntry(
                        start=source_after.start,
                        end=source_after.end,
                        text=output[0].text,
                        merged_count=output[0].merged_count,
                    )
                    clamped.append(segment.segment_index)
                    logger.info(
                        f"Clamped boundary before segment {segment.segment_index} "
                        f"(gap {output_gap:.2f}s, source gap {source_gap:.2f}s)"
                    )

            entries.extend(output)
            previous = segment

        if missing:
            logger.warning(f"Stitched output is missing segments: {missing}")
        logger.info(f"Stitched {len(entries)} entries from {len(segments) - len(missing)} segments")
        return StitchResult(entries=entries, missing_segments=missing, clamped_boundaries=clamped)
