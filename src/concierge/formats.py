"""Rendering of transcription results: text, json, srt, vtt."""

import json
import logging
import time
from pathlib import Path

from concierge.transcription import Segment, TranscriptionResult

logger = logging.getLogger(__name__)

FORMATS = ("text", "json", "srt", "vtt")
EXTENSIONS = {"text": ".txt", "json": ".json", "srt": ".srt", "vtt": ".vtt"}

SRT_PLACEHOLDER = "Timestamps not available"
VTT_PLACEHOLDER = "WEBVTT\n\nTimestamps not available"


def format_timestamp(seconds: float, separator: str = ",") -> str:
    """Format seconds as ``HH:MM:SS,mmm`` (SRT) or ``HH:MM:SS.mmm`` (VTT)."""
    total_ms = max(0, round(seconds * 1000))
    hours, rest = divmod(total_ms, 3_600_000)
    minutes, rest = divmod(rest, 60_000)
    secs, ms = divmod(rest, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}{separator}{ms:03d}"


def to_srt(segments: tuple[Segment, ...] | None) -> str:
    if not segments:
        return SRT_PLACEHOLDER
    blocks = [
        f"{i}\n{format_timestamp(s.start)} --> {format_timestamp(s.end)}\n{s.text}\n"
        for i, s in enumerate(segments, start=1)
    ]
    return "\n".join(blocks)


def to_vtt(segments: tuple[Segment, ...] | None) -> str:
    if not segments:
        return VTT_PLACEHOLDER
    vtt = "WEBVTT\n\n"
    for s in segments:
        vtt += f"{format_timestamp(s.start, '.')} --> {format_timestamp(s.end, '.')}\n{s.text}\n\n"
    return vtt


def render(result: TranscriptionResult, fmt: str = "text") -> str:
    """Render ``result`` in one of FORMATS.

    Raises:
        ValueError: unknown format.
    """
    if fmt == "text":
        return result.freshest_text
    if fmt == "json":
        return json.dumps(result.to_dict(), indent=2, ensure_ascii=False)
    if fmt == "srt":
        return to_srt(result.timestamps)
    if fmt == "vtt":
        return to_vtt(result.timestamps)
    raise ValueError(f"Unknown output format: {fmt}")


def write_output(result: TranscriptionResult, fmt: str, target: str | Path) -> Path:
    """Write the rendered result.

    ``target`` is either a directory, in which case a ``transcription_<ms>``
    file name is generated, or a full file path.
    """
    content = render(result, fmt)
    target = Path(target)
    if target.is_dir() or not target.suffix:
        target.mkdir(parents=True, exist_ok=True)
        target = target / f"transcription_{int(time.time() * 1000)}{EXTENSIONS[fmt]}"
    else:
        target.parent.mkdir(parents=True, exist_ok=True)

    target.write_text(content, encoding="utf-8")
    logger.info(f"Output saved to: {target}")
    return target
