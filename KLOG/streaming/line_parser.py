"""
Log Line Parser Module - light classification of container log lines

Handles:
- Leading timestamp extraction (ISO 8601, space-delimited, bracketed)
- Error heuristics for lines without a timestamp
- URL segmentation of the displayed payload
- Splitting raw stream chunks into non-blank lines
"""
import re
from dataclasses import dataclass
from typing import List, Optional

# Tried in order; only a timestamp at the very start of the line counts
TIMESTAMP_PATTERNS = [
    # ISO 8601 with optional fraction and zone: 2024-01-01T12:00:00.123Z
    re.compile(r'^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:\d{2})?)'),
    # Space-delimited: 2024-01-01 12:00:00.123
    re.compile(r'^(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}(?:\.\d+)?)'),
    # Bracketed: [2024-01-01 12:00:00]
    re.compile(r'^(\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}(?:\.\d+)?\])'),
]

ERROR_PATTERN = re.compile(r'error|exception|fail|fatal', re.IGNORECASE)
URL_PATTERN = re.compile(r'(https?://\S+)')


@dataclass(frozen=True)
class Segment:
    """A run of payload text; links are rendered differently"""
    text: str
    is_link: bool = False


@dataclass(frozen=True)
class ParsedLogLine:
    """Classified log line. seq is assigned by the render feed when buffered."""
    raw: str
    timestamp: Optional[str] = None
    timestamp_end: Optional[int] = None
    is_error: bool = False
    seq: int = 0

    @property
    def payload(self) -> str:
        """Text after the timestamp span (the whole line when there is none)"""
        if self.timestamp_end:
            return self.raw[self.timestamp_end:]
        return self.raw

    def segments(self) -> List[Segment]:
        return segment_links(self.payload)


def parse_line(line: str) -> ParsedLogLine:
    """
    Classify a single raw log line

    Args:
        line: One line of log text, without the trailing newline

    Returns:
        ParsedLogLine with timestamp span, or the is_error flag when no timestamp matched
    """
    for pattern in TIMESTAMP_PATTERNS:
        match = pattern.match(line)
        if match:
            timestamp = match.group(1)
            return ParsedLogLine(raw=line, timestamp=timestamp, timestamp_end=len(timestamp))

    return ParsedLogLine(raw=line, is_error=bool(ERROR_PATTERN.search(line)))


def split_lines(chunk: str) -> List[str]:
    """Split a chunk on newlines, dropping blank lines."""
    return [line.rstrip('\r') for line in chunk.split('\n') if line.strip()]


def parse_chunk(chunk: str) -> List[ParsedLogLine]:
    return [parse_line(line) for line in split_lines(chunk)]


def error_line(message: str) -> ParsedLogLine:
    """Line shown in a session's buffer when its stream reports an error"""
    return ParsedLogLine(raw=f"[ERROR] {message}", is_error=True)


def segment_links(text: str) -> List[Segment]:
    """Cut http(s) URLs out of text so they can be rendered as links."""
    segments = []
    for part in URL_PATTERN.split(text):
        if not part:
            continue
        segments.append(Segment(text=part, is_link=bool(URL_PATTERN.fullmatch(part))))
    return segments
