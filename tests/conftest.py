import pytest
from fastapi.testclient import TestClient

from tubely.config import Settings
from tubely.main import create_app


class FakeBinaries:
    def __init__(self, yt_dlp="/opt/bin/yt-dlp", ffmpeg="/opt/bin/ffmpeg"):
        self.yt_dlp = yt_dlp
        self.ffmpeg = ffmpeg
        self.started = False

    def start(self):
        self.started = True


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.delenv("YT_DLP_PATH", raising=False)
    monkeypatch.delenv("FFMPEG_PATH", raising=False)
    return Settings(yt_dlp_dir=str(tmp_path), yt_dlp_auto_download=False, yt_dlp_timeout=5)


@pytest.fixture
def binaries():
    return FakeBinaries()


@pytest.fixture
def client(settings, binaries):
    return TestClient(create_app(settings, binaries))
