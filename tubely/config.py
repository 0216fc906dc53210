import os
from pathlib import Path
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

YT_DLP_RELEASE_URL = "https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


class Settings:
    """Runtime settings taken from the environment (and an optional .env file)."""

    def __init__(
        self,
        yt_dlp_path: Optional[str] = None,
        yt_dlp_dir: Optional[str] = None,
        yt_dlp_download_url: str = YT_DLP_RELEASE_URL,
        yt_dlp_auto_download: bool = True,
        yt_dlp_timeout: int = 120,
        ffmpeg_path: Optional[str] = None,
        host: str = "0.0.0.0",
        port: int = 4000,
        cors_origins: Optional[List[str]] = None,
        log_level: str = "INFO",
    ):
        self.yt_dlp_path = yt_dlp_path or None
        self.yt_dlp_dir = Path(yt_dlp_dir) if yt_dlp_dir else Path.cwd()
        self.yt_dlp_download_url = yt_dlp_download_url
        self.yt_dlp_auto_download = yt_dlp_auto_download
        self.yt_dlp_timeout = yt_dlp_timeout
        self.ffmpeg_path = ffmpeg_path or None
        self.host = host
        self.port = port
        self.cors_origins = cors_origins or ["*"]
        self.log_level = log_level.upper()

    @property
    def local_yt_dlp_path(self) -> Path:
        """Location of the binary fetched by `fetch-yt-dlp`."""
        name = "yt-dlp.exe" if os.name == "nt" else "yt-dlp"
        return self.yt_dlp_dir / name

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv(find_dotenv(usecwd=True))
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            yt_dlp_path=os.getenv("YT_DLP_PATH"),
            yt_dlp_dir=os.getenv("YT_DLP_DIR"),
            yt_dlp_download_url=os.getenv("YT_DLP_DOWNLOAD_URL") or YT_DLP_RELEASE_URL,
            yt_dlp_auto_download=_env_bool("YT_DLP_AUTO_DOWNLOAD", True),
            yt_dlp_timeout=_env_int("YT_DLP_TIMEOUT", 120),
            ffmpeg_path=os.getenv("FFMPEG_PATH"),
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 4000),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
