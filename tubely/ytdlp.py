"""Command lines for yt-dlp and ffmpeg, and the plumbing that runs them."""

import json
import logging
import re
import subprocess
import tempfile
from typing import Iterator, List, Optional, Sequence

from .errors import InvalidOutputError, YtDlpError
from .models import VideoFormat, VideoInfo

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024

MP3_BITRATE = "128k"
MP3_HQ_BITRATE = "320k"

# Plain format ids only: "<itag>+ba" is built from it, so selectors are not allowed through.
FORMAT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


def is_valid_format_id(format_id: str) -> bool:
    return bool(format_id) and bool(FORMAT_ID_PATTERN.match(format_id))


def build_yt_dlp_args(url: str, fmt: str, extra_args: Sequence[str] = (),
                      ffmpeg_path: Optional[str] = None) -> List[str]:
    args = ["-f", fmt, *extra_args]
    if ffmpeg_path:
        args += ["--ffmpeg-location", ffmpeg_path]
    # "--" ends option parsing, so a URL can never be read as a flag
    return [*args, "--", url]


def build_info_args(url: str) -> List[str]:
    return ["-J", "--no-playlist", "--no-warnings", "--", url]


def build_stream_url_args(url: str, fmt: str, ffmpeg_path: Optional[str] = None) -> List[str]:
    """yt-dlp args that print the direct media URL(s) for `fmt`, one per line."""
    return build_yt_dlp_args(url, fmt, ["-g", "--no-playlist", "--no-warnings"], ffmpeg_path)


def build_mp4_ffmpeg_args(media_urls: Sequence[str]) -> List[str]:
    """Mux the video of the first input with the audio of the last into fragmented MP4 on stdout."""
    if not media_urls:
        raise ValueError("at least one media URL is required")
    args = ["-hide_banner", "-loglevel", "error", "-nostdin"]
    for media_url in media_urls:
        args += ["-i", media_url]
    last = len(media_urls) - 1
    args += [
        "-map", "0:v:0",
        "-map", f"{last}:a:0?",
        "-c", "copy",
        # moov up front so the container can be written to a pipe
        "-movflags", "frag_keyframe+empty_moov",
        "-f", "mp4",
        "pipe:1",
    ]
    return args


def build_mp3_ffmpeg_args(media_url: str, bitrate: str) -> List[str]:
    return [
        "-hide_banner", "-loglevel", "error", "-nostdin",
        "-i", media_url,
        "-vn",
        "-c:a", "libmp3lame",
        "-b:a", bitrate,
        "-f", "mp3",
        "pipe:1",
    ]


def _run(cmd: List[str], timeout: int) -> str:
    """Run a short-lived yt-dlp call and return its stdout."""
    logger.info(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired:
        raise YtDlpError(f"yt-dlp timed out after {timeout} seconds")
    except OSError as e:
        raise YtDlpError(f"Could not start yt-dlp: {e}")

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        logger.error(f"yt-dlp exited with {result.returncode}: {stderr}")
        raise YtDlpError(_last_line(stderr) or f"yt-dlp exited with status {result.returncode}",
                         detail=stderr)
    return result.stdout


def _last_line(text: str) -> str:
    lines = [line for line in text.splitlines() if line.strip()]
    return lines[-1] if lines else ""


def fetch_info(binary: str, url: str, timeout: int = 120) -> dict:
    """Run `yt-dlp -J` for `url` and return the decoded JSON document."""
    raw_output = _run([binary, *build_info_args(url)], timeout)
    logger.debug(f"yt-dlp raw output (first 200 chars): {raw_output[:200]}")
    try:
        info = json.loads(raw_output)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse yt-dlp JSON: {e}")
        raise InvalidOutputError("yt-dlp returned invalid JSON", detail=raw_output[:1000])
    if not isinstance(info, dict):
        raise InvalidOutputError("yt-dlp returned invalid JSON", detail=raw_output[:1000])
    return info


def _quality_label(fmt: dict) -> str:
    if fmt.get("format_note"):
        return str(fmt["format_note"])
    if fmt.get("height"):
        return f"{fmt['height']}p"
    return str(fmt["format_id"])


def parse_video_info(raw: dict) -> VideoInfo:
    """Reduce yt-dlp's info document to title, thumbnail and the video formats."""
    candidates = [
        f for f in raw.get("formats") or []
        if f.get("format_id")
        and f.get("vcodec") != "none"
        and f.get("ext") not in (None, "mhtml")
    ]
    candidates.sort(key=lambda f: (f.get("height") or 0, f.get("tbr") or 0), reverse=True)

    formats = []
    seen = set()
    for fmt in candidates:
        label = _quality_label(fmt)
        key = (label, fmt["ext"].lower())
        if key in seen:
            continue
        seen.add(key)
        formats.append(VideoFormat(itag=str(fmt["format_id"]), qualityLabel=label, container=fmt["ext"]))

    return VideoInfo(
        title=raw.get("title") or "video",
        thumbnail=raw.get("thumbnail"),
        formats=formats,
    )


def get_stream_urls(binary: str, url: str, fmt: str, timeout: int = 120,
                    ffmpeg_path: Optional[str] = None) -> List[str]:
    output = _run([binary, *build_stream_url_args(url, fmt, ffmpeg_path)], timeout)
    urls = [line.strip() for line in output.splitlines() if line.strip()]
    if not urls:
        raise YtDlpError(f"yt-dlp returned no stream URL for format {fmt}")
    return urls


class ProcessStream:
    """Iterate over the stdout of a child process in fixed-size chunks.

    `start()` blocks until the first chunk arrives. A process that dies
    before writing anything raises YtDlpError there, while the HTTP status
    can still be chosen. Later failures are only logged.
    """

    def __init__(self, cmd: List[str], chunk_size: int = STREAM_CHUNK_SIZE):
        self.cmd = cmd
        self.chunk_size = chunk_size
        self.process: Optional[subprocess.Popen] = None
        self._stderr = None
        self._first_chunk = b""
        self._closed = False

    def start(self) -> "ProcessStream":
        logger.info(f"Streaming: {self.cmd[0]} ({len(self.cmd) - 1} args)")
        # stderr goes to a file; a pipe nobody reads could block the child
        self._stderr = tempfile.TemporaryFile()
        try:
            self.process = subprocess.Popen(self.cmd, stdin=subprocess.DEVNULL,
                                            stdout=subprocess.PIPE, stderr=self._stderr)
        except OSError as e:
            self._stderr.close()
            raise YtDlpError(f"Could not start {self.cmd[0]}: {e}")

        self._first_chunk = self.process.stdout.read(self.chunk_size)
        if not self._first_chunk:
            returncode = self.process.wait()
            stderr = self._read_stderr()
            self._cleanup()
            logger.error(f"{self.cmd[0]} produced no output (exit {returncode}): {stderr}")
            raise YtDlpError(_last_line(stderr) or f"Process exited with status {returncode}",
                             detail=stderr)
        return self

    def __iter__(self) -> Iterator[bytes]:
        try:
            if self._first_chunk:
                yield self._first_chunk
                self._first_chunk = b""
            while True:
                chunk = self.process.stdout.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk
            self.process.wait()
        finally:
            self.close()

    def close(self) -> None:
        if self._closed or self.process is None:
            return
        self._closed = True
        if self.process.poll() is None:
            # client went away mid-stream
            logger.info(f"Terminating {self.cmd[0]} (pid {self.process.pid})")
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()
        elif self.process.returncode != 0:
            logger.error(f"{self.cmd[0]} exited with {self.process.returncode} after streaming started: "
                         f"{self._read_stderr()}")
        self._cleanup()

    def _read_stderr(self) -> str:
        if self._stderr is None or self._stderr.closed:
            return ""
        self._stderr.seek(0)
        return self._stderr.read().decode("utf-8", errors="replace").strip()

    def _cleanup(self) -> None:
        if self.process is not None and self.process.stdout is not None:
            self.process.stdout.close()
        if self._stderr is not None:
            self._stderr.close()


def open_mp4_stream(binary: str, ffmpeg: str, url: str, itag: str, timeout: int = 120) -> ProcessStream:
    media_urls = get_stream_urls(binary, url, f"{itag}+ba", timeout, ffmpeg_path=ffmpeg)
    return ProcessStream([ffmpeg, *build_mp4_ffmpeg_args(media_urls)]).start()


def open_mp3_stream(binary: str, ffmpeg: str, url: str, bitrate: str, timeout: int = 120) -> ProcessStream:
    media_urls = get_stream_urls(binary, url, "ba", timeout, ffmpeg_path=ffmpeg)
    return ProcessStream([ffmpeg, *build_mp3_ffmpeg_args(media_urls[0], bitrate)]).start()
