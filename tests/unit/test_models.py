"""
Unit tests for stream models and URL/argument validation.
"""

import pytest
from pydantic import ValidationError

from smartstream.models.stream import PlatformConfig, StreamConfig, StreamState, StreamStatus
from smartstream.utils.validation import (
    INPUT_URL_SCHEMES,
    OUTPUT_URL_SCHEMES,
    validate_ffmpeg_args,
    validate_stream_url,
)


class TestStreamConfig:
    """Tests for StreamConfig validation."""

    def test_defaults(self):
        """Should apply documented defaults."""
        config = StreamConfig(input_url="rtsp://192.168.1.100/stream")

        assert config.quality == "medium"
        assert config.fps == 30
        assert config.resolution == "1920x1080"
        assert config.bitrate == "2M"
        assert config.audio is False
        assert config.extra_args == ()
        assert config.autostart is False

    def test_is_frozen(self):
        """Should reject mutation after construction."""
        config = StreamConfig(input_url="rtsp://192.168.1.100/stream")
        with pytest.raises(ValidationError):
            config.fps = 10

    @pytest.mark.parametrize("url", [
        "ftp://192.168.1.100/stream",
        "rtsp://",
        "rtsp://cam/stream;rm -rf /",
        "rtsp://192.168.1.100:99999/stream",
    ])
    def test_rejects_bad_input_urls(self, url):
        """Should reject unsupported schemes, empty hosts, shell chars and bad ports."""
        with pytest.raises(ValidationError):
            StreamConfig(input_url=url)

    def test_accepts_file_input(self):
        """Should accept file:// sources for local testing."""
        config = StreamConfig(input_url="file:///media/test.mp4")
        assert config.input_url == "file:///media/test.mp4"

    @pytest.mark.parametrize("field,value", [
        ("fps", 0),
        ("fps", 61),
        ("resolution", "1080p"),
        ("bitrate", "fast"),
        ("quality", "extreme"),
        ("extra_args", ["-vf", "scale=1280:720|tee"]),
    ])
    def test_rejects_bad_encoder_settings(self, field, value):
        """Should reject out-of-range or malformed encoder settings."""
        with pytest.raises(ValidationError):
            StreamConfig(input_url="rtsp://192.168.1.100/stream", **{field: value})

    def test_rejects_http_output(self):
        """Should only allow streaming output schemes."""
        with pytest.raises(ValidationError):
            StreamConfig(input_url="rtsp://192.168.1.100/stream", output_url="http://example.com/out")


class TestPlatformConfig:
    """Tests for PlatformConfig validation."""

    def test_custom_requires_server(self):
        """Should require server_url for custom platforms."""
        with pytest.raises(ValidationError):
            PlatformConfig(type="custom", stream_key="abc")

    def test_youtube_without_server(self):
        """Should accept known platforms without a server URL."""
        platform = PlatformConfig(type="youtube", stream_key="abcd-efgh")
        assert platform.server_url is None

    def test_rejects_empty_stream_key(self):
        with pytest.raises(ValidationError):
            PlatformConfig(type="twitch", stream_key="")


class TestStreamStatus:
    """Tests for StreamStatus defaults."""

    def test_new_status_is_idle(self):
        """Should start idle with default stats and no error."""
        status = StreamStatus(id="cam1")

        assert status.state == StreamState.IDLE
        assert status.error_message is None
        assert status.error_cause is None
        assert status.stats.fps == 0.0
        assert status.stats.cpu == []

    def test_serializes_state_as_string(self):
        """Should serialize the state as its lowercase value."""
        data = StreamStatus(id="cam1", state=StreamState.RUNNING).model_dump(mode="json")
        assert data["state"] == "running"


class TestValidationHelpers:
    """Tests for utils.validation helpers."""

    def test_valid_rtsp_url(self):
        assert validate_stream_url("rtsp://admin:pw@cam.local:554/live", INPUT_URL_SCHEMES) == (True, None)

    def test_scheme_not_allowed(self):
        is_valid, error = validate_stream_url("udp://239.0.0.1:1234", INPUT_URL_SCHEMES)
        assert not is_valid
        assert "not allowed" in error

    def test_srt_output_allowed(self):
        assert validate_stream_url("srt://relay.example.com:9000", OUTPUT_URL_SCHEMES) == (True, None)

    def test_ffmpeg_args_reject_shell_chars(self):
        assert validate_ffmpeg_args(["-tune", "zerolatency"]) == (True, None)
        assert validate_ffmpeg_args(["-metadata", "title=$(whoami)"])[0] is False
