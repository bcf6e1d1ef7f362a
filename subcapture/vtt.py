"""
Canonical subtitle text helpers.

Canonical text is WebVTT: a ``WEBVTT`` header followed by cue blocks, each an
optional index line, a ``HH:MM:SS.mmm --> HH:MM:SS.mmm`` line and one or more
text lines, blocks separated by a blank line.

This module also hosts the thumbnail sprite classifier. Many hosts serve a
second subtitle-shaped file per video whose cues only carry image tile
coordinates (``thumbs.jpg#xywh=0,0,160,90``) for hover previews. Those files
must never reach the cache.
"""

import html
import logging
import re
from dataclasses import dataclass

import nh3

from subcapture.config import settings

logger = logging.getLogger(__name__)

VTT_HEADER = "WEBVTT"

SPRITE_PATTERN = re.compile(r"#xywh=")
ARROW_PATTERN = re.compile(r"-->")
DIRECTIVE_PATTERN = re.compile(r"^(WEBVTT|NOTE|STYLE|REGION|CUESTYLETEXT)")
TIMESTAMP_PREFIX_PATTERN = re.compile(r"^\d{2}:\d{2}")
IMAGE_REF_PATTERN = re.compile(r"\.(jpg|jpeg|png|webp|gif)")
INDEX_LINE_PATTERN = re.compile(r"^\d+$")

# Inline tags left over after markup sanitization, e.g. <00:00:02.500> or <c>
TAG_REMOVAL_PATTERN = re.compile(r"<[^>]*>")

# Uses \d+ for hours to handle videos of any length (including >99 hours)
TIMESTAMP_PATTERN = re.compile(r"(\d+:\d{2}:\d{2}\.\d+)\s*-->\s*(\d+:\d{2}:\d{2}\.\d+)")
TIMESTAMP_PATTERN_SHORT = re.compile(r"(\d{2}:\d{2}\.\d+)\s*-->\s*(\d{2}:\d{2}\.\d+)")


@dataclass
class SubtitleEntry:
    """
    A single subtitle entry with timing and text.

    Attributes:
        start: Start timestamp in VTT format (HH:MM:SS.mmm)
        end: End timestamp in VTT format (HH:MM:SS.mmm)
        text: The subtitle text content
    """

    start: str
    end: str
    text: str


def format_timestamp(ms: int | float) -> str:
    """
    Format a millisecond offset as a WebVTT timestamp.

    Hours are always present and zero padded to two digits.

    Examples:
        >>> format_timestamp(0)
        '00:00:00.000'
        >>> format_timestamp(3_723_004)
        '01:02:03.004'
    """
    total = max(0, int(round(ms)))
    hours, remainder = divmod(total, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    seconds, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def is_thumbnail_vtt(
    content: str,
    sample_lines: int | None = None,
    min_sprite_lines: int | None = None,
) -> bool:
    """
    Detect thumbnail sprite sheets disguised as subtitles.

    Scans the first ``sample_lines`` lines and counts sprite coordinate lines
    (``#xywh=``) and real text lines (anything that is not a directive,
    timestamp, comment or image reference). The content is a thumbnail sheet
    iff the sprite count exceeds ``min_sprite_lines`` and there is no real
    text at all.

    Args:
        content: Canonical subtitle text
        sample_lines: Lines to inspect (default from settings, 100)
        min_sprite_lines: Sprite count that must be exceeded (default from settings, 5)

    Returns:
        True if the content is a thumbnail sprite sheet
    """
    if not content:
        return False

    sample_lines = sample_lines if sample_lines is not None else settings.thumbnail_sample_lines
    if min_sprite_lines is None:
        min_sprite_lines = settings.thumbnail_min_sprite_lines

    sprite_count = 0
    arrow_count = 0
    text_count = 0

    for raw_line in content.split("\n")[:sample_lines]:
        line = raw_line.strip()
        if not line:
            continue

        if SPRITE_PATTERN.search(line):
            sprite_count += 1
        if ARROW_PATTERN.search(line):
            arrow_count += 1

        # Sprite coordinates count as image references even without a file extension
        if (
            DIRECTIVE_PATTERN.match(line)
            or TIMESTAMP_PREFIX_PATTERN.match(line)
            or IMAGE_REF_PATTERN.search(line)
            or SPRITE_PATTERN.search(line)
        ):
            continue
        text_count += 1

    is_thumbnail = sprite_count > min_sprite_lines and text_count == 0
    if is_thumbnail:
        logger.debug(f"Thumbnail sheet detected: {sprite_count} sprite lines, {arrow_count} cues")
    return is_thumbnail


def extract_text_from_vtt(content: str, remove_timestamps: bool = False) -> str:
    """
    Extract readable text from canonical subtitle content.

    Header, ``X-TIMESTAMP-MAP``, ``NOTE`` and ``STYLE`` lines and numeric cue
    indexes are skipped. With ``remove_timestamps`` the timing lines are
    dropped and act as block separators, so each cue becomes one output line;
    otherwise timing lines are kept inline.

    Args:
        content: Canonical subtitle text
        remove_timestamps: Whether to drop timing lines

    Returns:
        Extracted text, blocks joined by newlines
    """
    buffer: list[str] = []
    blocks: list[str] = []

    for raw_line in content.split("\n"):
        line = raw_line.strip()
        if not line:
            continue
        if line.startswith(("X-TIMESTAMP-MAP", "WEBVTT", "NOTE", "STYLE")):
            continue
        if INDEX_LINE_PATTERN.match(line):
            continue

        if remove_timestamps and "-->" in line:
            if buffer:
                blocks.append(" ".join(buffer))
                buffer = []
            continue

        buffer.append(line)

    if buffer:
        blocks.append(" ".join(buffer))

    return "\n".join(re.sub(r"[ \t]+", " ", block).strip() for block in blocks).strip()


def extract_title(content: str, max_words: int | None = None) -> str:
    """
    Derive a display title from the first words of a transcript.

    Args:
        content: Canonical subtitle text
        max_words: Number of words to keep (default from settings, 25)

    Returns:
        Title text, with "..." appended when truncated
    """
    max_words = max_words or settings.history_title_words
    words = extract_text_from_vtt(content, remove_timestamps=True).split()
    if not words:
        return "Untitled Video"
    title = " ".join(words[:max_words])
    return title + "..." if len(words) > max_words else title


def sanitize_vtt_content(content: str, max_chars: int | None = None) -> str:
    """
    Strip markup from subtitle content coming from an untrusted page.

    Script elements are removed together with their bodies and every other
    tag is unwrapped. Inline timing tags such as ``<00:00:02.500>`` are then
    removed line by line.

    Args:
        content: Raw canonical text
        max_chars: Length limit (default from settings)

    Returns:
        Sanitized, trimmed content; empty string for non-string input
    """
    if not isinstance(content, str):
        return ""
    max_chars = max_chars or settings.max_content_chars

    cleaned = html.unescape(nh3.clean(content, tags=set()))
    lines = [TAG_REMOVAL_PATTERN.sub("", line) for line in cleaned.split("\n")]
    return "\n".join(lines)[:max_chars].strip()


def parse_vtt_entries(content: str) -> list[SubtitleEntry]:
    """
    Parse canonical subtitle text into structured entries.

    Args:
        content: Canonical subtitle text

    Returns:
        List of SubtitleEntry objects with start, end, and text

    Note:
        Skips the header, NOTE/STYLE blocks and cue indexes. Text spanning
        several lines is joined with single spaces.
    """
    entries = []
    lines = content.split("\n")

    i = 0
    while i < len(lines):
        line = lines[i].strip()

        if not line or line.startswith(VTT_HEADER) or line in ("NOTE", "STYLE"):
            i += 1
            continue

        timestamp_match = TIMESTAMP_PATTERN.search(line)
        if timestamp_match:
            start, end = timestamp_match.groups()
        else:
            timestamp_match = TIMESTAMP_PATTERN_SHORT.search(line)
            if not timestamp_match:
                i += 1
                continue
            # Convert short format to long format
            start, end = (f"00:{value}" for value in timestamp_match.groups())

        text_lines = []
        i += 1
        while i < len(lines) and lines[i].strip():
            text_line = TAG_REMOVAL_PATTERN.sub("", lines[i].strip())
            if text_line:
                text_lines.append(text_line)
            i += 1

        if text_lines:
            text = re.sub(r"\s+", " ", " ".join(text_lines)).strip()
            entries.append(SubtitleEntry(start=start, end=end, text=text))

    return entries
