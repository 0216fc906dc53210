"""Locating, fetching and tracking the external yt-dlp and ffmpeg binaries."""

import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Optional

import imageio_ffmpeg
import requests

from .config import Settings
from .errors import BinaryDownloadError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192


def resolve_yt_dlp_path(settings: Settings, log_missing: bool = True) -> Optional[str]:
    """Return the yt-dlp binary to use, or None if none is on disk yet."""
    if settings.yt_dlp_path and os.path.exists(settings.yt_dlp_path):
        logger.info(f"Using yt-dlp from env: {settings.yt_dlp_path}")
        return settings.yt_dlp_path
    if settings.yt_dlp_path:
        logger.warning(f"YT_DLP_PATH={settings.yt_dlp_path} does not exist, ignoring it")

    local_path = settings.local_yt_dlp_path
    if local_path.exists():
        logger.info(f"Using locally downloaded yt-dlp: {local_path}")
        return str(local_path)

    message = "yt-dlp binary not found. Run `python -m tubely fetch-yt-dlp` or set YT_DLP_PATH"
    if log_missing:
        logger.error(message)
    else:
        logger.debug(message)
    return None


def resolve_ffmpeg_path(settings: Settings) -> Optional[str]:
    """FFMPEG_PATH, then the imageio-ffmpeg bundled binary, then PATH."""
    if settings.ffmpeg_path and os.path.exists(settings.ffmpeg_path):
        return settings.ffmpeg_path

    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError as e:
        logger.warning(f"imageio-ffmpeg has no bundled binary: {e}")

    found = shutil.which("ffmpeg")
    if found:
        return found
    logger.error("ffmpeg not found, downloads will fail")
    return None


def download_yt_dlp(url: str, dest: Path, timeout: int = 60) -> Path:
    """Download the yt-dlp binary to `dest` and mark it executable.

    Redirects are followed (GitHub's `latest` URL redirects to the asset).
    The body goes to a temporary file next to `dest` and is moved into place
    only once complete, so a half-written binary is never picked up.
    """
    logger.info(f"Downloading yt-dlp binary from: {url}")
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)

    try:
        response = requests.get(url, stream=True, allow_redirects=True, timeout=timeout)
    except requests.RequestException as e:
        raise BinaryDownloadError(f"Failed to download yt-dlp: {e}")

    with response:
        for hop in response.history:
            logger.info(f"Redirecting to: {hop.headers.get('location')}")
        if response.status_code != 200:
            raise BinaryDownloadError(f"Failed to download yt-dlp: Status {response.status_code}")

        fd, tmp_name = tempfile.mkstemp(prefix=".yt-dlp-", dir=str(dest.parent))
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
            os.chmod(tmp_name, 0o755)
            os.replace(tmp_name, dest)
        except (OSError, requests.RequestException) as e:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise BinaryDownloadError(f"Failed to download yt-dlp: {e}")

    logger.info(f"yt-dlp binary downloaded successfully: {dest}")
    return dest


def ensure_yt_dlp(settings: Settings, force: bool = False) -> str:
    """Return a usable yt-dlp path, downloading the binary if needed."""
    if not force:
        path = resolve_yt_dlp_path(settings)
        if path:
            return path
    return str(download_yt_dlp(settings.yt_dlp_download_url, settings.local_yt_dlp_path))


class BinaryRegistry:
    """Resolved binary locations shared by all requests."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._lock = threading.Lock()
        self._yt_dlp: Optional[str] = None
        self._ffmpeg: Optional[str] = None
        self._download_thread: Optional[threading.Thread] = None

    @property
    def yt_dlp(self) -> Optional[str]:
        with self._lock:
            path = self._yt_dlp
        if path is None:
            # Picks up a binary that finished downloading after startup.
            path = self.refresh_yt_dlp(log_missing=False)
        return path

    @property
    def ffmpeg(self) -> Optional[str]:
        with self._lock:
            path = self._ffmpeg
        if path is None:
            path = resolve_ffmpeg_path(self.settings)
            with self._lock:
                self._ffmpeg = path
        return path

    def refresh_yt_dlp(self, log_missing: bool = True) -> Optional[str]:
        path = resolve_yt_dlp_path(self.settings, log_missing)
        with self._lock:
            self._yt_dlp = path
        return path

    def start(self) -> None:
        """Resolve both binaries; fetch yt-dlp in the background if allowed."""
        if self.refresh_yt_dlp() is None and self.settings.yt_dlp_auto_download:
            self._download_thread = threading.Thread(
                target=self._background_download, name="yt-dlp-download", daemon=True
            )
            self._download_thread.start()
        with self._lock:
            self._ffmpeg = resolve_ffmpeg_path(self.settings)

    def _background_download(self) -> None:
        try:
            path = download_yt_dlp(self.settings.yt_dlp_download_url, self.settings.local_yt_dlp_path)
        except BinaryDownloadError as e:
            logger.error(f"Error downloading yt-dlp: {e}")
            return
        with self._lock:
            self._yt_dlp = str(path)
