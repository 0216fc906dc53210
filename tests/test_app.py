import pytest

from tubely import main
from tubely.errors import InvalidOutputError, YtDlpError
from tubely.ytdlp import MP3_BITRATE, MP3_HQ_BITRATE

RAW_INFO = {
    "title": "Never Gonna Give You Up",
    "thumbnail": "https://i.ytimg.com/vi/dQw4w9WgXcQ/maxresdefault.jpg",
    "formats": [
        {"format_id": "140", "ext": "m4a", "vcodec": "none", "acodec": "mp4a.40.2"},
        {"format_id": "137", "ext": "mp4", "vcodec": "avc1.640028", "height": 1080, "format_note": "1080p"},
        {"format_id": "136", "ext": "mp4", "vcodec": "avc1.4d401f", "height": 720, "format_note": "720p"},
    ],
}

VIDEO_URL = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


class FakeStream:
    def __init__(self, chunks):
        self.chunks = chunks
        self.closed = False

    def __iter__(self):
        return iter(self.chunks)

    def close(self):
        self.closed = True


class StreamLog(list):
    """Calls made to the stream openers; `opened` keeps the returned streams."""

    def __init__(self):
        super().__init__()
        self.opened = []


@pytest.fixture
def streams(monkeypatch):
    calls = StreamLog()
    opened = calls.opened

    def fake_mp4(binary, ffmpeg, url, itag, timeout=120):
        calls.append(("mp4", binary, ffmpeg, url, itag))
        opened.append(FakeStream([b"ftyp", b"moov"]))
        return opened[-1]

    def fake_mp3(binary, ffmpeg, url, bitrate, timeout=120):
        calls.append(("mp3", binary, ffmpeg, url, bitrate))
        opened.append(FakeStream([b"ID3", b"data"]))
        return opened[-1]

    monkeypatch.setattr(main, "open_mp4_stream", fake_mp4)
    monkeypatch.setattr(main, "open_mp3_stream", fake_mp3)
    return calls


@pytest.mark.parametrize("path", ["/info", "/download-mp4?itag=137", "/download-mp3", "/download-mp3-hq"])
def test_missing_url_is_rejected(client, path):
    response = client.get(path)
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "No URL provided"}


def test_blank_url_is_rejected(client):
    response = client.get("/info", params={"url": "   "})
    assert response.status_code == 400


@pytest.mark.parametrize("url", [
    "--batch-file=/etc/passwd",
    "-a/etc/passwd",
    "file:///etc/passwd",
    "/etc/passwd",
    "youtube.com/watch?v=dQw4w9WgXcQ",
])
def test_info_rejects_non_http_urls(client, monkeypatch, url):
    def unexpected(binary, url, timeout=120):
        raise AssertionError("yt-dlp must not run")

    monkeypatch.setattr(main, "fetch_info", unexpected)
    response = client.get("/info", params={"url": url})
    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Only http(s) URLs are supported"}


@pytest.mark.parametrize("path", ["/download-mp4", "/download-mp3", "/download-mp3-hq"])
def test_downloads_reject_option_urls(client, streams, path):
    response = client.get(path, params={"url": "--batch-file=/etc/passwd", "itag": "137"})
    assert response.status_code == 400
    assert streams == []


def test_info_returns_title_thumbnail_and_formats(client, monkeypatch):
    seen = {}

    def fake_fetch_info(binary, url, timeout=120):
        seen["args"] = (binary, url)
        return RAW_INFO

    monkeypatch.setattr(main, "fetch_info", fake_fetch_info)
    response = client.get("/info", params={"url": VIDEO_URL})

    assert response.status_code == 200
    assert seen["args"] == ("/opt/bin/yt-dlp", VIDEO_URL)
    assert response.json() == {
        "success": True,
        "title": "Never Gonna Give You Up",
        "thumbnail": "https://i.ytimg.com/vi/dQw4w9WgXcQ/maxresdefault.jpg",
        "formats": [
            {"itag": "137", "qualityLabel": "1080p", "container": "mp4"},
            {"itag": "136", "qualityLabel": "720p", "container": "mp4"},
        ],
    }


def test_info_without_binary_is_unavailable(client, binaries):
    binaries.yt_dlp = None
    response = client.get("/info", params={"url": VIDEO_URL})
    assert response.status_code == 503
    assert response.json()["error"] == "yt-dlp is not ready yet, please try again in a few seconds."


def test_info_process_failure(client, monkeypatch):
    def failing(binary, url, timeout=120):
        raise YtDlpError("ERROR: [youtube] dQw4w9WgXcQ: Video unavailable")

    monkeypatch.setattr(main, "fetch_info", failing)
    response = client.get("/info", params={"url": VIDEO_URL})
    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "ERROR: [youtube] dQw4w9WgXcQ: Video unavailable"}


def test_info_invalid_json(client, monkeypatch):
    def garbage(binary, url, timeout=120):
        raise InvalidOutputError("yt-dlp returned invalid JSON")

    monkeypatch.setattr(main, "fetch_info", garbage)
    response = client.get("/info", params={"url": VIDEO_URL})
    assert response.status_code == 500
    assert response.json()["error"] == "yt-dlp returned invalid JSON"


def test_download_mp4_streams_attachment(client, streams):
    response = client.get("/download-mp4", params={"url": VIDEO_URL, "itag": "137", "title": "My Video"})

    assert response.status_code == 200
    assert response.content == b"ftypmoov"
    assert response.headers["content-type"] == "video/mp4"
    disposition = response.headers["content-disposition"]
    assert disposition.startswith('attachment; filename="My Video.mp4"')
    assert "filename*=UTF-8''My%20Video.mp4" in disposition
    assert "download-status=starting" in response.headers["set-cookie"]
    assert streams == [("mp4", "/opt/bin/yt-dlp", "/opt/bin/ffmpeg", VIDEO_URL, "137")]


def test_download_mp4_default_title(client, streams):
    response = client.get("/download-mp4", params={"url": VIDEO_URL, "itag": "22"})
    assert 'filename="video.mp4"' in response.headers["content-disposition"]


def test_download_mp4_requires_itag(client, streams):
    response = client.get("/download-mp4", params={"url": VIDEO_URL})
    assert response.status_code == 400
    assert response.json()["error"] == "No itag provided"
    assert streams == []


def test_download_mp4_rejects_format_selectors(client, streams):
    response = client.get("/download-mp4", params={"url": VIDEO_URL, "itag": "bv*+ba/b"})
    assert response.status_code == 400
    assert streams == []


def test_download_mp3_uses_128k(client, streams):
    response = client.get("/download-mp3", params={"url": VIDEO_URL})

    assert response.status_code == 200
    assert response.content == b"ID3data"
    assert response.headers["content-type"] == "audio/mpeg"
    assert "filename*=UTF-8''audio%20%28128kbps%29.mp3" in response.headers["content-disposition"]
    assert streams[0][4] == MP3_BITRATE


def test_download_mp3_hq_uses_320k(client, streams):
    response = client.get("/download-mp3-hq", params={"url": VIDEO_URL, "title": "Song"})

    assert response.status_code == 200
    assert 'filename="Song (320kbps).mp3"' in response.headers["content-disposition"]
    assert streams[0][4] == MP3_HQ_BITRATE


def test_download_title_is_sanitized(client, streams):
    response = client.get("/download-mp3", params={"url": VIDEO_URL, "title": 'AC/DC: "Live"'})
    assert 'filename="AC_DC_ _Live_ (128kbps).mp3"' in response.headers["content-disposition"]


@pytest.mark.parametrize("path", ["/download-mp4", "/download-mp3", "/download-mp3-hq"])
def test_download_without_yt_dlp_is_unavailable(client, binaries, streams, path):
    binaries.yt_dlp = None
    response = client.get(path, params={"url": VIDEO_URL, "itag": "137"})
    assert response.status_code == 503
    assert response.json() == {
        "success": False,
        "error": "yt-dlp is not ready yet, please try again in a few seconds.",
    }
    assert streams == []


def test_download_without_ffmpeg_is_unavailable(client, binaries, streams):
    binaries.ffmpeg = None
    response = client.get("/download-mp3", params={"url": VIDEO_URL})
    assert response.status_code == 503
    assert streams == []


def test_download_failure_before_output(client, monkeypatch):
    def failing(binary, ffmpeg, url, bitrate, timeout=120):
        raise YtDlpError("ERROR: Requested format is not available")

    monkeypatch.setattr(main, "open_mp3_stream", failing)
    response = client.get("/download-mp3", params={"url": VIDEO_URL})
    assert response.status_code == 500
    assert response.json()["success"] is False
    assert "content-disposition" not in response.headers


def test_health(client, binaries):
    binaries.ffmpeg = None
    assert client.get("/health").json() == {"status": "ok", "yt_dlp": True, "ffmpeg": False}


def test_index_page(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "text/html" in response.headers["content-type"]
    assert "/download-mp3-hq" in response.text


def test_lifespan_starts_binaries(client, binaries):
    with client:
        assert binaries.started


def test_download_closes_stream_after_response(client, streams):
    response = client.get("/download-mp3", params={"url": VIDEO_URL})
    assert response.status_code == 200
    assert [s.closed for s in streams.opened] == [True]


def test_cors_exposes_content_disposition(client):
    response = client.get("/health", headers={"Origin": "http://localhost:3000"})
    assert response.headers["access-control-allow-origin"] == "*"
    assert "content-disposition" in response.headers["access-control-expose-headers"].lower()


def test_cors_on_download(client, streams):
    response = client.get("/download-mp4", params={"url": VIDEO_URL, "itag": "137"},
                          headers={"Origin": "http://localhost:3000"})
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"
    assert "Content-Disposition" in response.headers["access-control-expose-headers"]
