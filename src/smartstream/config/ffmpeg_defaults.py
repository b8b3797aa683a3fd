"""FFmpeg option derivation.

Single source of truth for turning a StreamConfig into an FFmpeg command
line. FFmpegOptions are rebuilt from the config on every spawn and never
stored, so a restart with the same config always runs the same command.

Pipeline:
    StreamConfig → build_ffmpeg_options() → FFmpegOptions → build_ffmpeg_args() → argv
"""
from __future__ import annotations

import re
from typing import Final

from ..models.stream import FFmpegOptions, StreamConfig

# ============================================================================
# Base FFmpeg Parameters
# ============================================================================

BASE_FFMPEG_PARAMS: Final[list[str]] = [
    '-hide_banner',
    '-nostdin',
    '-loglevel', 'info',
    '-stats',
    '-y',
]
"""Global parameters applied to every stream. ``-stats`` keeps progress lines on."""

INPUT_PARAMS: Final[dict[str, list[str]]] = {
    'rtsp': ['-rtsp_transport', 'tcp', '-fflags', '+genpts'],
    'rtsps': ['-rtsp_transport', 'tcp', '-fflags', '+genpts'],
    'http': ['-reconnect', '1', '-reconnect_streamed', '1', '-reconnect_delay_max', '5'],
    'https': ['-reconnect', '1', '-reconnect_streamed', '1', '-reconnect_delay_max', '5'],
}
"""Per-scheme input parameters placed before ``-i``."""

SILENT_AUDIO_SOURCE: Final[list[str]] = [
    '-f', 'lavfi',
    '-i', 'anullsrc=channel_layout=stereo:sample_rate=44100',
]
"""Silent audio input; most ingest platforms reject video-only streams."""

# ============================================================================
# Quality Presets
# ============================================================================

QUALITY_PRESETS: Final[dict[str, tuple[str, int]]] = {
    'low': ('ultrafast', 28),
    'medium': ('veryfast', 23),
    'high': ('fast', 20),
    'ultra': ('medium', 18),
}
"""x264 (preset, crf) per quality level."""

# ============================================================================
# Platform Ingest
# ============================================================================

PLATFORM_INGEST_URLS: Final[dict[str, str]] = {
    'youtube': 'rtmp://a.rtmp.youtube.com/live2',
    'twitch': 'rtmp://live.twitch.tv/app',
}
"""Default ingest servers per platform."""

OUTPUT_FORMATS: Final[dict[str, str]] = {
    'rtmp': 'flv',
    'rtmps': 'flv',
    'rtsp': 'rtsp',
    'srt': 'mpegts',
    'udp': 'mpegts',
}
"""Container format per output scheme (file outputs let FFmpeg guess)."""

BITRATE_PATTERN: Final[re.Pattern[str]] = re.compile(r'^(\d+(?:\.\d+)?)([kKmM]?)$')

# ============================================================================
# Helper Functions
# ============================================================================

def resolve_output_url(config: StreamConfig) -> str | None:
    """Resolve where a stream is sent.

    An explicit ``output_url`` wins, then the platform ingest URL. Returns
    None when the stream has no destination (encoded to the null muxer).
    """
    if config.output_url:
        return config.output_url

    platform = config.platform
    if platform is None:
        return None

    server = platform.server_url or PLATFORM_INGEST_URLS[platform.type]
    return f"{server.rstrip('/')}/{platform.stream_key}"


def double_bitrate(bitrate: str) -> str:
    """Rate-control buffer is twice the max bitrate: '2M' -> '4M'."""
    match = BITRATE_PATTERN.match(bitrate)
    if not match:
        return bitrate
    value = float(match.group(1)) * 2
    number = str(int(value)) if value.is_integer() else f"{value:g}"
    return f"{number}{match.group(2)}"


def build_ffmpeg_options(config: StreamConfig) -> FFmpegOptions:
    """Derive FFmpeg options from a stream config.

    Deterministic: equal configs produce equal options.
    """
    preset, crf = QUALITY_PRESETS[config.quality]
    scheme = config.input_url.split('://', 1)[0].lower()
    output = resolve_output_url(config)

    if output is None:
        output_format = 'null'
    else:
        output_format = OUTPUT_FORMATS.get(output.split('://', 1)[0].lower())

    return FFmpegOptions(
        input=config.input_url,
        input_args=tuple(INPUT_PARAMS.get(scheme, [])),
        output=output,
        output_format=output_format,
        silent_audio=not config.audio,
        preset=preset,
        crf=crf,
        maxrate=config.bitrate,
        bufsize=double_bitrate(config.bitrate),
        keyint=config.fps * 2,
        framerate=config.fps,
        resolution=config.resolution,
        custom_args=config.extra_args,
    )


def build_ffmpeg_args(options: FFmpegOptions, binary: str = 'ffmpeg') -> list[str]:
    """Render FFmpeg options as an argv list (binary first).

    Command structure:
    1. Global params
    2. Camera input (-i ...)
    3. Optional silent audio input
    4. Stream mapping, codecs, rate control, frame rate, size, GOP
    5. Custom args
    6. Output format and destination (``-`` with null muxer if none)
    """
    cmd = [binary, *BASE_FFMPEG_PARAMS]

    cmd.extend(options.input_args)
    cmd.extend(['-i', options.input])

    if options.silent_audio:
        cmd.extend(SILENT_AUDIO_SOURCE)
        cmd.extend(['-map', '0:v:0', '-map', '1:a:0', '-shortest'])
    else:
        cmd.extend(['-map', '0:v:0', '-map', '0:a:0?'])

    cmd.extend(['-c:v', options.video_codec, '-c:a', options.audio_codec])
    cmd.extend(['-preset', options.preset, '-crf', str(options.crf)])
    cmd.extend(['-maxrate', options.maxrate, '-bufsize', options.bufsize])
    cmd.extend(['-r', str(options.framerate), '-s', options.resolution])
    cmd.extend(['-g', str(options.keyint)])

    cmd.extend(options.custom_args)

    if options.output_format:
        cmd.extend(['-f', options.output_format])
    cmd.append(options.output or '-')

    return cmd
