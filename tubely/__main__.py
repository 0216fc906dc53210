import argparse
import logging
import sys

import uvicorn

from .binaries import ensure_yt_dlp
from .config import Settings
from .errors import BinaryDownloadError

logger = logging.getLogger("tubely")


def serve(args, settings: Settings) -> int:
    uvicorn.run(
        "tubely.main:create_app",
        factory=True,
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
        log_level=settings.log_level.lower(),
    )
    return 0


def fetch_yt_dlp(args, settings: Settings) -> int:
    try:
        path = ensure_yt_dlp(settings, force=args.force)
    except BinaryDownloadError as e:
        logger.error(f"Error downloading yt-dlp: {e}")
        return 1
    print(path)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="tubely", description="YouTube download backend built on yt-dlp")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="run the HTTP server")
    serve_parser.add_argument("--host", help="bind address (default: $HOST or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="port (default: $PORT or 4000)")
    serve_parser.add_argument("--reload", action="store_true", help="restart on code changes")
    serve_parser.set_defaults(handler=serve)

    fetch_parser = subparsers.add_parser("fetch-yt-dlp", help="download the yt-dlp binary")
    fetch_parser.add_argument("--force", action="store_true", help="download even if a binary is present")
    fetch_parser.set_defaults(handler=fetch_yt_dlp)

    args = parser.parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    return args.handler(args, settings)


if __name__ == "__main__":
    sys.exit(main())
