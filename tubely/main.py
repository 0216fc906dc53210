import logging
import re
import urllib.parse
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from . import __version__
from .binaries import BinaryRegistry
from .config import Settings
from .errors import BadRequestError, BinaryNotReadyError, TubelyError
from .models import VideoInfo
from .ytdlp import (
    MP3_BITRATE,
    MP3_HQ_BITRATE,
    fetch_info,
    is_valid_format_id,
    open_mp3_stream,
    open_mp4_stream,
    parse_video_info,
)

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"

NOT_READY_MESSAGE = "yt-dlp is not ready yet, please try again in a few seconds."


def sanitize_filename(name: str) -> str:
    """Strip characters that are not allowed in file names."""
    return re.sub(r'[\\/*?:"<>|\r\n]', "_", name).strip() or "download"


def content_disposition(filename: str) -> str:
    safe_name = sanitize_filename(filename)
    ascii_name = safe_name.encode("ascii", "ignore").decode("ascii") or "download"
    encoded_name = urllib.parse.quote(safe_name)
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{encoded_name}"


def _require_url(url: Optional[str]) -> str:
    if not url or not url.strip():
        raise BadRequestError("No URL provided")
    url = url.strip()
    if url.startswith("-") or urllib.parse.urlsplit(url).scheme.lower() not in ("http", "https"):
        raise BadRequestError("Only http(s) URLs are supported")
    return url


def _require_yt_dlp(registry: BinaryRegistry) -> str:
    binary = registry.yt_dlp
    if not binary:
        raise BinaryNotReadyError(NOT_READY_MESSAGE)
    return binary


def _require_ffmpeg(registry: BinaryRegistry) -> str:
    ffmpeg = registry.ffmpeg
    if not ffmpeg:
        raise BinaryNotReadyError("ffmpeg is not available on this server.")
    return ffmpeg


def _attachment(stream, filename: str, media_type: str) -> StreamingResponse:
    response = StreamingResponse(
        stream,
        media_type=media_type,
        headers={
            "Content-Disposition": content_disposition(filename),
            "Access-Control-Expose-Headers": "Content-Disposition",
        },
        # runs even when the client disconnects before the body starts
        background=BackgroundTask(stream.close),
    )
    # The page polls this cookie to know the browser has started receiving the file
    response.set_cookie("download-status", "starting", path="/")
    return response


def create_app(settings: Optional[Settings] = None, registry: Optional[BinaryRegistry] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    registry = registry or BinaryRegistry(settings)

    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry.start()
        logger.info(f"Backend server is live on http://{settings.host}:{settings.port}")
        yield

    app = FastAPI(title="Tubely", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.binaries = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )

    @app.exception_handler(TubelyError)
    async def tubely_exception_handler(request: Request, exc: TubelyError):
        logger.error(f"{request.url.path} failed ({exc.status_code}): {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error(f"Validation error: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request parameters"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal Server Error"},
        )

    @app.get("/", include_in_schema=False)
    def index():
        return FileResponse(STATIC_DIR / "index.html")

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "yt_dlp": registry.yt_dlp is not None,
            "ffmpeg": registry.ffmpeg is not None,
        }

    @app.get("/info", response_model=VideoInfo)
    def info(url: Optional[str] = None):
        logger.info(f"Fetching info for: {url}")
        url = _require_url(url)
        binary = _require_yt_dlp(registry)
        raw = fetch_info(binary, url, timeout=settings.yt_dlp_timeout)
        return parse_video_info(raw)

    @app.get("/download-mp4")
    def download_mp4(url: Optional[str] = None, itag: Optional[str] = None, title: Optional[str] = None):
        url = _require_url(url)
        if not itag:
            raise BadRequestError("No itag provided")
        if not is_valid_format_id(itag):
            raise BadRequestError(f"Invalid itag: {itag}")
        binary = _require_yt_dlp(registry)
        ffmpeg = _require_ffmpeg(registry)

        logger.info(f"Downloading MP4 itag={itag} for: {url}")
        stream = open_mp4_stream(binary, ffmpeg, url, itag, timeout=settings.yt_dlp_timeout)
        return _attachment(stream, f"{title or 'video'}.mp4", "video/mp4")

    @app.get("/download-mp3")
    def download_mp3(url: Optional[str] = None, title: Optional[str] = None):
        return _download_audio(url, title, MP3_BITRATE, "128kbps")

    @app.get("/download-mp3-hq")
    def download_mp3_hq(url: Optional[str] = None, title: Optional[str] = None):
        return _download_audio(url, title, MP3_HQ_BITRATE, "320kbps")

    def _download_audio(url: Optional[str], title: Optional[str], bitrate: str, label: str):
        url = _require_url(url)
        binary = _require_yt_dlp(registry)
        ffmpeg = _require_ffmpeg(registry)

        logger.info(f"Downloading MP3 ({label}) for: {url}")
        stream = open_mp3_stream(binary, ffmpeg, url, bitrate, timeout=settings.yt_dlp_timeout)
        return _attachment(stream, f"{title or 'audio'} ({label}).mp3", "audio/mpeg")

    return app
