"""SmartStream: FFmpeg stream supervisor for camera restreaming."""

__version__ = "1.0.0"
