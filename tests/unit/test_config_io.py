"""
Unit tests for supervisor settings and the stream config store.

The store runs in CI_DRY_RUN (in-memory) mode; see tests/conftest.py.
"""

from smartstream.config_io import (
    DEFAULT_RESTART_FIELDS,
    delete_stream_config,
    get_stream_config,
    load_settings,
    load_stream_configs,
    save_stream_config,
)
from smartstream.models.stream import StreamConfig


class TestLoadSettings:
    """Tests for load_settings()."""

    def test_defaults_with_empty_environment(self):
        """Should use defaults when nothing is set."""
        settings = load_settings({})

        assert settings.max_concurrent_streams == 4
        assert settings.stop_grace_seconds == 5.0
        assert settings.spawn_timeout_seconds == 10.0
        assert settings.stall_timeout_seconds == 20.0
        assert settings.ffmpeg_binary == "ffmpeg"
        assert settings.restart_fields == DEFAULT_RESTART_FIELDS
        assert "autostart" not in settings.restart_fields

    def test_reads_environment(self):
        """Should parse numeric values from env strings."""
        settings = load_settings({
            "MAX_CONCURRENT_STREAMS": "2",
            "STREAM_STOP_GRACE_SECONDS": "1.5",
            "STREAM_STALL_TIMEOUT_SECONDS": "0",
            "FFMPEG_BINARY": "/opt/ffmpeg/bin/ffmpeg",
        })

        assert settings.max_concurrent_streams == 2
        assert settings.stop_grace_seconds == 1.5
        assert settings.stall_timeout_seconds == 0
        assert settings.ffmpeg_binary == "/opt/ffmpeg/bin/ffmpeg"

    def test_invalid_values_fall_back_to_defaults(self):
        """Should ignore unparseable or out-of-range values."""
        settings = load_settings({"MAX_CONCURRENT_STREAMS": "zero", "STREAM_CPU_WINDOW": "-3"})

        assert settings.max_concurrent_streams == 4
        assert settings.cpu_window == 5

    def test_restart_fields_from_environment(self):
        """Should accept a comma list and drop unknown names."""
        settings = load_settings({"STREAM_RESTART_FIELDS": "input_url, bitrate ,nonsense"})

        assert settings.restart_fields == frozenset({"input_url", "bitrate"})


class TestStreamConfigStore:
    """Tests for the per-key config store."""

    def test_save_and_get(self):
        config = StreamConfig(input_url="rtsp://192.168.1.100/stream", fps=15, extra_args=["-tune", "zerolatency"])

        assert save_stream_config("cam1", config) is None
        assert get_stream_config("cam1") == config

    def test_save_returns_previous(self):
        first = StreamConfig(input_url="rtsp://192.168.1.100/stream")
        second = StreamConfig(input_url="rtsp://192.168.1.101/stream")
        save_stream_config("cam1", first)

        assert save_stream_config("cam1", second) == first

    def test_load_all(self):
        save_stream_config("cam1", StreamConfig(input_url="rtsp://192.168.1.100/stream", autostart=True))
        save_stream_config("cam2", StreamConfig(input_url="rtsp://192.168.1.101/stream"))

        configs = load_stream_configs()

        assert sorted(configs) == ["cam1", "cam2"]
        assert configs["cam1"].autostart is True

    def test_delete(self):
        save_stream_config("cam1", StreamConfig(input_url="rtsp://192.168.1.100/stream"))

        assert delete_stream_config("cam1") is True
        assert delete_stream_config("cam1") is False
        assert get_stream_config("cam1") is None

    def test_missing_key(self):
        assert get_stream_config("nope") is None
