"""
Unit tests for FFmpeg progress line parsing.

Tests field extraction, merging with the previous snapshot, degradation of
malformed fields, and the CPU sample window.
"""

from unittest.mock import patch

from smartstream.models.stream import StreamStats
from smartstream.services.stats_parser import (
    load_average_sample,
    merge_stats,
    parse_progress_fields,
    parse_progress_line,
)


SAMPLE_LINE = (
    "frame=120 fps=30 q=28.0 size=512kB time=00:00:04.00 "
    "bitrate=1024.0kbits/s speed=1.0x"
)


class TestParseProgressLine:
    """Tests for parse_progress_line()."""

    def test_parses_sample_line(self):
        """Should produce every field from a complete progress line."""
        stats = parse_progress_line(SAMPLE_LINE)

        assert stats.fps == 30
        assert stats.size == "512kB"
        assert stats.time == "00:00:04.00"
        assert stats.bitrate == "1024.0kbits/s"
        assert stats.speed == "1.0x"
        assert stats.frame == 120

    def test_handles_padded_values(self):
        """Should accept FFmpeg's space padding after '='."""
        line = "frame=  120 fps= 29.97 q=28.0 size=     512kB time=00:00:04.00 bitrate=1024.0kbits/s speed=1.01x"
        stats = parse_progress_line(line)

        assert stats.frame == 120
        assert stats.fps == 29.97
        assert stats.size == "512kB"
        assert stats.speed == "1.01x"

    def test_returns_none_for_non_progress_lines(self):
        """Should ignore banner, stream info and warnings."""
        assert parse_progress_line("Input #0, rtsp, from 'rtsp://cam/stream':") is None
        assert parse_progress_line("  Stream #0:0: Video: h264, yuv420p, 1920x1080") is None
        assert parse_progress_line("[rtsp @ 0x55d] method DESCRIBE failed: 401 Unauthorized") is None
        assert parse_progress_line("") is None

    def test_missing_fields_keep_previous_values(self):
        """Should carry over fields the line does not mention."""
        previous = parse_progress_line(SAMPLE_LINE)
        stats = parse_progress_line("frame=150 fps=25 time=00:00:05.00", previous)

        assert stats.fps == 25
        assert stats.frame == 150
        assert stats.time == "00:00:05.00"
        assert stats.size == "512kB"
        assert stats.bitrate == "1024.0kbits/s"

    def test_missing_fields_without_previous_use_defaults(self):
        """Should fill unknown fields with StreamStats defaults."""
        stats = parse_progress_line("frame=10 fps=5")

        assert stats.fps == 5
        assert stats.size == "0kB"
        assert stats.time == "00:00:00.00"
        assert stats.bitrate == "0kbits/s"
        assert stats.speed == "0x"

    def test_final_summary_lsize_maps_to_size(self):
        """Should read Lsize from FFmpeg's final summary line."""
        stats = parse_progress_line("frame=300 fps=30 q=-1.0 Lsize=2048kB time=00:00:10.00 bitrate=1677.7kbits/s speed=1x")

        assert stats.size == "2048kB"

    def test_same_line_twice_gives_equal_stats(self):
        """Should be deterministic for identical input."""
        previous = StreamStats()

        assert parse_progress_line(SAMPLE_LINE, previous) == parse_progress_line(SAMPLE_LINE, previous)

    def test_never_mutates_previous(self):
        """Should return a new snapshot and leave the previous one intact."""
        previous = parse_progress_line(SAMPLE_LINE, cpu_sample=0.3)
        before = previous.model_copy(deep=True)

        parse_progress_line("frame=200 fps=10 time=00:00:08.00", previous, cpu_sample=0.9)

        assert previous == before


class TestDegradedFields:
    """Tests for malformed numeric fields."""

    def test_malformed_fps_keeps_previous(self):
        """Should keep the previous fps when fps is not a number."""
        previous = parse_progress_line(SAMPLE_LINE)
        stats = parse_progress_line("frame=130 fps=N/A time=00:00:04.50", previous)

        assert stats.fps == 30
        assert stats.frame == 130
        assert stats.time == "00:00:04.50"

    def test_non_finite_fps_keeps_previous(self):
        """Should reject nan, inf, overflow and negative fps values."""
        previous = parse_progress_line(SAMPLE_LINE)

        for raw in ["nan", "inf", "-inf", "1e999", "-5"]:
            stats = parse_progress_line(f"frame=130 fps={raw} time=00:00:04.50", previous)
            assert stats.fps == 30, raw
            assert stats.frame == 130

    def test_malformed_time_keeps_previous(self):
        """Should keep the previous time when time is not HH:MM:SS."""
        previous = parse_progress_line(SAMPLE_LINE)
        stats = parse_progress_line("frame=130 fps=30 time=N/A", previous)

        assert stats.time == "00:00:04.00"

    def test_counts_degraded_fields(self):
        """Should count each degraded field in the metric, never raise."""
        with patch("smartstream.services.stats_parser.metrics") as mock_metrics:
            parse_progress_line("frame=abc fps=N/A time=bogus")

        fields = [call.kwargs["field"] for call in mock_metrics.stream_parse_degraded_total.labels.call_args_list]
        assert sorted(fields) == ["fps", "frame", "time"]


class TestCpuWindow:
    """Tests for the CPU sample window."""

    def test_appends_samples_up_to_window(self):
        """Should keep only the most recent cpu_window samples."""
        stats = StreamStats()
        fields = parse_progress_fields(SAMPLE_LINE)
        for sample in [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7]:
            stats = merge_stats(stats, fields, cpu_sample=sample, cpu_window=5)

        assert stats.cpu == [0.3, 0.4, 0.5, 0.6, 0.7]

    def test_no_sample_leaves_window_unchanged(self):
        """Should not append when cpu_sample is None."""
        stats = merge_stats(StreamStats(cpu=[0.5]), {"fps": "30"})

        assert stats.cpu == [0.5]

    def test_zero_window_keeps_nothing(self):
        """Should keep no samples with a zero window."""
        stats = merge_stats(StreamStats(), {"fps": "30"}, cpu_sample=0.5, cpu_window=0)

        assert stats.cpu == []

    def test_load_average_sample_falls_back_to_zero(self):
        """Should return 0.0 where getloadavg is unsupported."""
        with patch("smartstream.services.stats_parser.os.getloadavg", side_effect=OSError):
            assert load_average_sample() == 0.0
