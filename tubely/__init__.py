"""Tubely: a thin HTTP shim around yt-dlp and ffmpeg."""

__version__ = "1.0.0"
