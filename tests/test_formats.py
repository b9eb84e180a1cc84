"""Tests for concierge.formats: text, json and subtitle rendering."""

import json

import pytest

from concierge.formats import (
    SRT_PLACEHOLDER,
    VTT_PLACEHOLDER,
    format_timestamp,
    render,
    write_output,
)
from concierge.transcription import Segment, TranscriptionResult

SEGMENTS = (
    Segment(0.0, 2.5, "Hola a todos."),
    Segment(2.5, 65.042, "Bienvenidos."),
    Segment(3600.0, 3661.5, "Fin."),
)


@pytest.fixture
def result():
    return TranscriptionResult(text="hola a todos", service="groq-whisper", timestamps=SEGMENTS)


class TestTimestamps:
    """Test timestamp formatting."""

    def test_srt_format(self):
        assert format_timestamp(65.042) == "00:01:05,042"

    def test_vtt_format(self):
        assert format_timestamp(65.042, ".") == "00:01:05.042"

    def test_hours(self):
        assert format_timestamp(3661.5) == "01:01:01,500"

    def test_zero(self):
        assert format_timestamp(0) == "00:00:00,000"


class TestRender:
    """Test output rendering."""

    def test_text_prefers_cleaned(self, result):
        assert render(result, "text") == "hola a todos"
        cleaned = result.with_cleaning("Hola a todos.", 1, ["capitalization"])
        assert render(cleaned, "text") == "Hola a todos."

    def test_json(self, result):
        data = json.loads(render(result, "json"))
        assert data["service"] == "groq-whisper"
        assert len(data["timestamps"]) == 3

    def test_srt_one_block_per_segment(self, result):
        srt = render(result, "srt")
        blocks = [b for b in srt.split("\n\n") if b.strip()]
        assert len(blocks) == 3
        assert blocks[0] == "1\n00:00:00,000 --> 00:00:02,500\nHola a todos."
        assert blocks[2].startswith("3\n01:00:00,000 --> 01:01:01,500")

    def test_vtt_one_cue_per_segment(self, result):
        vtt = render(result, "vtt")
        assert vtt.startswith("WEBVTT\n\n")
        assert vtt.count(" --> ") == 3
        assert "00:00:02.500 --> 00:01:05.042\nBienvenidos." in vtt

    def test_placeholders_without_segments(self):
        bare = TranscriptionResult(text="hola", service="x")
        assert render(bare, "srt") == SRT_PLACEHOLDER == "Timestamps not available"
        assert render(bare, "vtt") == VTT_PLACEHOLDER == "WEBVTT\n\nTimestamps not available"

    def test_placeholders_with_empty_segments(self):
        empty = TranscriptionResult(text="hola", service="x", timestamps=())
        assert render(empty, "srt") == SRT_PLACEHOLDER
        assert render(empty, "vtt") == VTT_PLACEHOLDER

    def test_unknown_format(self, result):
        with pytest.raises(ValueError):
            render(result, "docx")


class TestWriteOutput:
    """Test output files."""

    def test_generated_name_in_directory(self, result, tmp_path):
        path = write_output(result, "srt", tmp_path)
        assert path.parent == tmp_path
        assert path.name.startswith("transcription_")
        assert path.suffix == ".srt"
        assert path.read_text(encoding="utf-8") == render(result, "srt")

    def test_explicit_path(self, result, tmp_path):
        target = tmp_path / "nested" / "out.json"
        path = write_output(result, "json", target)
        assert path == target
        assert json.loads(target.read_text(encoding="utf-8"))["text"] == "hola a todos"


def parse_cues(rendered):
    """Read (start, end, text) back out of SRT or VTT output."""
    cues = []
    for block in rendered.split("\n\n"):
        lines = [line for line in block.strip().splitlines() if line]
        for i, line in enumerate(lines):
            if " --> " in line:
                start, end = line.split(" --> ")
                cues.append((start, end, "\n".join(lines[i + 1:])))
                break
    return cues


class TestSubtitleRoundTrip:
    """Test that SRT and VTT carry the same segments."""

    def test_srt_and_vtt_agree(self, result):
        srt = parse_cues(render(result, "srt"))
        vtt = parse_cues(render(result, "vtt"))

        assert len(srt) == len(vtt) == len(SEGMENTS)
        assert [c[2] for c in srt] == [c[2] for c in vtt] == [s.text for s in SEGMENTS]
        assert [c[0].replace(",", ".") for c in srt] == [c[0] for c in vtt]
        assert [c[1].replace(",", ".") for c in srt] == [c[1] for c in vtt]
