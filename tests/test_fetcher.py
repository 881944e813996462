import asyncio
import contextlib
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import logging
from pathlib import Path
import socket
import sys
import threading
import time

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from keymotion.components.fetcher import AssetFetcher, extract_file_id
from keymotion.config.settings import DownloadSettings
from keymotion.exceptions import DownloadError
from keymotion.models import AssetKind, AssetLocator, AssetState


class _FakeResponse:
    def __init__(self, chunks=(b"data",), status_code=200, delay=0.0):
        self.chunks = list(chunks)
        self.status_code = status_code
        self.delay = delay

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            if self.delay:
                time.sleep(self.delay)
            yield chunk

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class _FakeSession:
    """URL ごとに応答(または例外)を返す requests.Session の代用品。"""

    def __init__(self, routes, calls):
        self.routes = routes
        self.calls = calls
        self.max_redirects = 30

    def get(self, url, **kwargs):
        self.calls.append({"url": url, "max_redirects": self.max_redirects, **kwargs})
        route = self.routes.get(url)
        if route is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(route, list):
            route = route.pop(0)
        if isinstance(route, Exception):
            raise route
        return route

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _fetcher(routes, calls, **settings):
    settings.setdefault("retry_backoff_sec", 0)
    return AssetFetcher(
        DownloadSettings(**settings),
        session_factory=lambda: _FakeSession(routes, calls),
    )


def _unused_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.mark.parametrize(
    "uri,expected",
    [
        ("https://drive.google.com/file/d/1AbC-d_9/view?usp=sharing", "1AbC-d_9"),
        ("https://drive.google.com/open?id=XYZ_123", "XYZ_123"),
        ("https://drive.google.com/uc?export=download&id=Q-1", "Q-1"),
        ("https://drive.google.com/drive/folders", None),
    ],
)
def test_extract_file_id(uri, expected):
    assert extract_file_id(uri) == expected


def test_sharing_link_is_rewritten_before_fetch(tmp_path):
    direct = "https://drive.example.com/uc?export=download&id=ABC123"
    calls = []
    fetcher = _fetcher({direct: _FakeResponse([b"img"])}, calls, rewrite_hosts=("drive.example.com",))

    locator = AssetLocator(AssetKind.BACKGROUND, "https://drive.example.com/file/d/ABC123/view")
    asset = fetcher.fetch(locator, tmp_path)

    assert [c["url"] for c in calls] == [direct]
    assert asset.source_uri == locator.source_uri
    assert asset.local_path == tmp_path / "background.jpg"
    assert asset.local_path.read_bytes() == b"img"
    assert asset.state is AssetState.DOWNLOADED


def test_rewrite_without_file_id_warns_and_keeps_uri(caplog):
    fetcher = AssetFetcher(DownloadSettings())
    uri = "https://drive.google.com/drive/my-drive"
    with caplog.at_level(logging.WARNING, logger="keymotion"):
        assert fetcher.resolve_uri(uri) == uri
    assert any("No file id" in r.getMessage() for r in caplog.records)


def test_other_hosts_are_not_rewritten():
    fetcher = AssetFetcher(DownloadSettings())
    uri = "https://cdn.example.com/file/d/ABC123/view"
    assert fetcher.resolve_uri(uri) == uri


def test_stream_options_and_extension(tmp_path):
    calls = []
    url = "https://cdn.example.com/media/voice.WAV?sig=1"
    fetcher = _fetcher({url: _FakeResponse([b"ab", b"", b"cd"])}, calls, timeout_sec=60, max_redirects=5)

    asset = fetcher.fetch(AssetLocator(AssetKind.AUDIO, url), tmp_path)

    assert asset.local_path.name == "audio.wav"
    assert asset.size_bytes == 4
    call = calls[0]
    assert call["stream"] is True
    assert call["timeout"] == (60, 60)
    assert call["allow_redirects"] is True
    assert call["max_redirects"] == 5


@pytest.mark.parametrize(
    "route,match",
    [
        (_FakeResponse(status_code=404), "HTTP 404"),
        (requests.TooManyRedirects("Exceeded 5 redirects."), "more than 5 redirects"),
        (requests.ReadTimeout("read timed out"), "timed out"),
        (requests.ConnectionError("refused"), "refused"),
    ],
)
def test_transfer_failures_raise_download_error(tmp_path, route, match):
    url = "https://cdn.example.com/fg.mp4"
    fetcher = _fetcher({url: route}, [])
    locator = AssetLocator(AssetKind.FOREGROUND, url)

    with pytest.raises(DownloadError, match=match) as excinfo:
        fetcher.fetch(locator, tmp_path)

    assert excinfo.value.locator == locator
    assert not (tmp_path / "foreground.mp4").exists()


def test_transfer_deadline_is_enforced(tmp_path):
    url = "https://cdn.example.com/slow.mp4"
    slow = _FakeResponse([b"x"] * 50, delay=0.05)
    fetcher = _fetcher({url: slow}, [], timeout_sec=0.2)

    with pytest.raises(DownloadError, match="exceeded"):
        fetcher.fetch(AssetLocator(AssetKind.FOREGROUND, url), tmp_path)
    assert not (tmp_path / "foreground.mp4").exists()


@pytest.mark.parametrize("uri", ["not a url", "ftp://example.com/a.mp3", "/local/file.mp3"])
def test_malformed_uri_is_rejected_without_network(tmp_path, uri):
    calls = []
    fetcher = _fetcher({}, calls)
    with pytest.raises(DownloadError, match="absolute http"):
        fetcher.fetch(AssetLocator(AssetKind.AUDIO, uri), tmp_path)
    assert calls == []


def test_retries_transient_failures_only_when_enabled(tmp_path):
    url = "https://cdn.example.com/a.mp3"
    calls = []
    routes = {url: [requests.ConnectionError("reset"), _FakeResponse(status_code=503), _FakeResponse([b"ok"])]}
    fetcher = _fetcher(routes, calls, retries=2)

    asset = fetcher.fetch(AssetLocator(AssetKind.AUDIO, url), tmp_path)
    assert asset.local_path.read_bytes() == b"ok"
    assert len(calls) == 3


def test_client_errors_are_not_retried(tmp_path):
    url = "https://cdn.example.com/a.mp3"
    calls = []
    fetcher = _fetcher({url: [_FakeResponse(status_code=403), _FakeResponse([b"ok"])]}, calls, retries=3)

    with pytest.raises(DownloadError, match="HTTP 403"):
        fetcher.fetch(AssetLocator(AssetKind.AUDIO, url), tmp_path)
    assert len(calls) == 1


def test_connection_refused_raises_download_error(tmp_path):
    url = f"http://127.0.0.1:{_unused_port()}/bg.jpg"
    fetcher = AssetFetcher(DownloadSettings(timeout_sec=5))
    with pytest.raises(DownloadError):
        fetcher.fetch(AssetLocator(AssetKind.BACKGROUND, url), tmp_path)


def test_fetch_all_returns_assets_in_locator_order(tmp_path):
    routes = {
        "https://x/bg.png": _FakeResponse([b"bg"], delay=0.05),
        "https://x/fg.mp4": _FakeResponse([b"fg"]),
        "https://x/a.mp3": _FakeResponse([b"a"]),
    }
    fetcher = _fetcher(routes, [])
    locators = [
        AssetLocator(AssetKind.BACKGROUND, "https://x/bg.png"),
        AssetLocator(AssetKind.FOREGROUND, "https://x/fg.mp4"),
        AssetLocator(AssetKind.AUDIO, "https://x/a.mp3"),
    ]
    assets = asyncio.run(fetcher.fetch_all(locators, tmp_path / "job"))
    assert [a.kind for a in assets] == [AssetKind.BACKGROUND, AssetKind.FOREGROUND, AssetKind.AUDIO]
    assert [a.local_path.name for a in assets] == ["background.png", "foreground.mp4", "audio.mp3"]


def test_fetch_all_stops_siblings_on_first_failure(tmp_path):
    routes = {
        "https://x/bg.jpg": _FakeResponse(status_code=404),
        "https://x/fg.mp4": _FakeResponse([b"f"] * 200, delay=0.05),
        "https://x/a.mp3": _FakeResponse([b"a"] * 200, delay=0.05),
    }
    fetcher = _fetcher(routes, [])
    locators = [
        AssetLocator(AssetKind.BACKGROUND, "https://x/bg.jpg"),
        AssetLocator(AssetKind.FOREGROUND, "https://x/fg.mp4"),
        AssetLocator(AssetKind.AUDIO, "https://x/a.mp3"),
    ]
    dest = tmp_path / "job"

    t0 = time.monotonic()
    with pytest.raises(DownloadError, match="background"):
        asyncio.run(fetcher.fetch_all(locators, dest))
    # 兄弟のダウンロードは 10 秒かかるはずだが途中で止まる
    assert time.monotonic() - t0 < 5
    assert list(dest.iterdir()) == []


class _TrickleHandler(BaseHTTPRequestHandler):
    """/slow は 10 バイトずつ 0.4 秒おきに送り、/missing は 404 を返す。"""

    def do_GET(self):
        if self.path.startswith("/missing"):
            self.send_error(404)
            return
        self.send_response(200)
        self.send_header("Content-Type", "application/octet-stream")
        self.send_header("Content-Length", "100")
        self.end_headers()
        with contextlib.suppress(OSError):
            for _ in range(10):
                self.wfile.write(b"x" * 10)
                self.wfile.flush()
                time.sleep(0.4)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def trickle_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _TrickleHandler)
    server.daemon_threads = True
    server.block_on_close = False
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()


def test_deadline_holds_against_slow_sender(tmp_path, trickle_server):
    fetcher = AssetFetcher(DownloadSettings(timeout_sec=1.0))
    locator = AssetLocator(AssetKind.FOREGROUND, f"{trickle_server}/slow.mp4")

    t0 = time.monotonic()
    with pytest.raises(DownloadError, match="exceeded"):
        fetcher.fetch(locator, tmp_path)
    assert time.monotonic() - t0 < 2.0
    assert not (tmp_path / "foreground.mp4").exists()


def test_sibling_failure_stops_slow_downloads(tmp_path, trickle_server):
    fetcher = AssetFetcher(DownloadSettings(timeout_sec=30))
    locators = [
        AssetLocator(AssetKind.BACKGROUND, f"{trickle_server}/missing.jpg"),
        AssetLocator(AssetKind.FOREGROUND, f"{trickle_server}/slow.mp4"),
        AssetLocator(AssetKind.AUDIO, f"{trickle_server}/slow.mp3"),
    ]
    dest = tmp_path / "job"

    t0 = time.monotonic()
    with pytest.raises(DownloadError, match="HTTP 404"):
        asyncio.run(fetcher.fetch_all(locators, dest))
    # 兄弟は 4 秒かかる転送の途中で止まる
    assert time.monotonic() - t0 < 2.0
    assert list(dest.iterdir()) == []


def test_subdomains_of_rewrite_hosts_are_rewritten():
    fetcher = AssetFetcher(DownloadSettings(rewrite_hosts=("example.com",)))
    uri = "https://drive.example.com/file/d/ABC123/view"
    assert fetcher.resolve_uri(uri) == "https://drive.example.com/uc?export=download&id=ABC123"
    assert fetcher.resolve_uri("https://notexample.com/file/d/ABC123/view") == "https://notexample.com/file/d/ABC123/view"
