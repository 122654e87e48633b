"""Subtitle file import and export for SRT and WebVTT."""

import re
from pathlib import Path
from typing import List, Optional

from ..models.core import SubtitleEntry
from .error_handler import ErrorHandler, ErrorSeverity


_TIMESTAMP = r'(?:(\d+):)?(\d{1,2}):(\d{2})[,.](\d{1,3})'
_TIMING_LINE = re.compile(rf'^\s*{_TIMESTAMP}\s*-->\s*{_TIMESTAMP}')
_BLOCK_SEPARATOR = re.compile(r'\n\s*\n')

SUPPORTED_FORMATS = ('srt', 'vtt')


def _to_seconds(hours: Optional[str], minutes: str, seconds: str, fraction: str) -> float:
    millis = int(fraction.ljust(3, '0'))
    return int(hours or 0) * 3600 + int(minutes) * 60 + int(seconds) + millis / 1000


class SubtitleExporter:
    """Reads and writes subtitle tracks."""

    def __init__(self, error_handler: Optional[ErrorHandler] = None):
        self.error_handler = error_handler or ErrorHandler()

    # Parsing

    def parse(self, content: str) -> List[SubtitleEntry]:
        """Parse SRT or WebVTT content into entries ordered by start time.

        Cues with a non-positive duration are skipped with a warning.
        """
        content = content.replace('\r\n', '\n').replace('\r', '\n').lstrip('\ufeff')
        entries: List[SubtitleEntry] = []
        skipped = 0

        for block in _BLOCK_SEPARATOR.split(content.strip()):
            lines = block.split('\n')
            timing_at = next((i for i, line in enumerate(lines) if '-->' in line), None)
            if timing_at is None:
                # Cue numbers without timing, WEBVTT header, NOTE and STYLE blocks.
                continue
            match = _TIMING_LINE.match(lines[timing_at])
            if match is None:
                skipped += 1
                continue

            start = _to_seconds(*match.groups()[0:4])
            end = _to_seconds(*match.groups()[4:8])
            text = '\n'.join(line.strip() for line in lines[timing_at + 1:]).strip()
            if not text or start >= end:
                skipped += 1
                continue
            entries.append(SubtitleEntry(start=start, end=end, text=text))

        if skipped:
            self.error_handler.log_warning(
                f"Skipped {skipped} malformed or empty subtitle cue(s)",
                context={'parsed': len(entries)}
            )
        entries.sort(key=lambda entry: entry.start)
        return entries

    parse_srt = parse
    parse_vtt = parse

    def load(self, input_path: str) -> List[SubtitleEntry]:
        """Read a subtitle file.

        Raises:
            FileNotFoundError: if the file does not exist
            ValueError: if the file has an unsupported extension
        """
        path = Path(input_path)
        if path.suffix.lower().lstrip('.') not in SUPPORTED_FORMATS:
            raise ValueError(
                f"Unsupported subtitle format: {path.suffix or '(none)'}. "
                f"Supported formats: {', '.join(SUPPORTED_FORMATS)}"
            )
        entries = self.parse(path.read_text(encoding='utf-8-sig'))
        self.error_handler.log_info(
            f"Loaded {len(entries)} subtitle entries from {input_path}",
            context={'format': path.suffix.lower()}
        )
        return entries

    # Formatting

    def _format_timestamp(self, seconds: float, separator: str) -> str:
        """Format seconds as HH:MM:SS{separator}mmm."""
        total_millis = int(round(seconds * 1000))
        hours, remainder = divmod(total_millis, 3600 * 1000)
        minutes, remainder = divmod(remainder, 60 * 1000)
        secs, millis = divmod(remainder, 1000)
        return f"{hours:02d}:{minutes:02d}:{secs:02d}{separator}{millis:03d}"

    def format_srt(self, entries: List[SubtitleEntry]) -> str:
        blocks = []
        for idx, entry in enumerate(entries, start=1):
            start_time = self._format_timestamp(entry.start, ',')
            end_time = self._format_timestamp(entry.end, ',')
            blocks.append(f"{idx}\n{start_time} --> {end_time}\n{entry.text}\n")
        return "\n".join(blocks)

    def format_vtt(self, entries: List[SubtitleEntry]) -> str:
        blocks = ["WEBVTT\n"]
        for entry in entries:
            start_time = self._format_timestamp(entry.start, '.')
            end_time = self._format_timestamp(entry.end, '.')
            blocks.append(f"{start_time} --> {end_time}\n{entry.text}\n")
        return "\n".join(blocks)

    # Export

    def _write(self, content: str, output_path: str, format_name: str, count: int) -> bool:
        try:
            Path(output_path).write_text(content, encoding='utf-8')
            self.error_handler.log_info(
                f"Successfully exported {format_name} subtitles to {output_path}",
                context={'num_entries': count}
            )
            return True
        except OSError as e:
            self.error_handler.log_error(
                e,
                severity=ErrorSeverity.ERROR,
                context={'output_path': output_path, 'format': format_name},
                recovery_suggestion="Check file permissions and disk space"
            )
            return False

    def export_srt(self, entries: List[SubtitleEntry], output_path: str) -> bool:
        """Export entries in SRT format.

        Returns:
            True if export successful, False otherwise
        """
        return self._write(self.format_srt(entries), output_path, 'SRT', len(entries))

    def export_vtt(self, entries: List[SubtitleEntry], output_path: str) -> bool:
        """Export entries in WebVTT format.

        Returns:
            True if export successful, False otherwise
        """
        return self._write(self.format_vtt(entries), output_path, 'VTT', len(entries))

    def export(self, entries: List[SubtitleEntry], output_path: str) -> bool:
        """Export entries in the format named by the output file's extension."""
        if Path(output_path).suffix.lower() == '.vtt':
            return self.export_vtt(entries, output_path)
        return self.export_srt(entries, output_path)
