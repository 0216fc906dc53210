class TubelyError(Exception):
    """Base error; `status_code` is what the HTTP layer answers with."""

    status_code = 500

    def __init__(self, message: str, detail: str = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class BadRequestError(TubelyError):
    status_code = 400


class BinaryNotReadyError(TubelyError):
    status_code = 503


class YtDlpError(TubelyError):
    """yt-dlp or ffmpeg exited non-zero, timed out or produced nothing."""


class InvalidOutputError(TubelyError):
    """yt-dlp printed something that is not the JSON we asked for."""


class BinaryDownloadError(TubelyError):
    pass
