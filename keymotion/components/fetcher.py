"""リモートのアセットを作業ディレクトリへダウンロードする。"""

from __future__ import annotations

import asyncio
import contextlib
import os
import re
import socket
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import parse_qs, urlparse

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from ..config.settings import DownloadSettings
from ..exceptions import DownloadError
from ..models import Asset, AssetKind, AssetLocator, AssetState
from ..utils.logger import logger, time_log

DEFAULT_EXTENSIONS = {
    AssetKind.BACKGROUND: ".jpg",
    AssetKind.FOREGROUND: ".mp4",
    AssetKind.AUDIO: ".mp3",
}

_FILE_ID_RE = re.compile(r"/d/([A-Za-z0-9_-]+)")
_QUERY_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_EXT_RE = re.compile(r"^\.[A-Za-z0-9]{1,5}$")


class _TransferTimeout(Exception):
    pass


class _Cancelled(Exception):
    pass


class _TransferGuard:
    """転送の期限とキャンセルを監視し、超えたら受信中のソケットを閉じる。

    `iter_content` はチャンクが揃うまで戻らないため、ループ内の確認だけでは
    少しずつ送ってくるサーバーに対して期限を守れない。
    """

    POLL_INTERVAL = 0.05

    def __init__(self, deadline: float, cancel_event: Optional[threading.Event]):
        self.deadline = deadline
        self.cancel_event = cancel_event
        self.reason: Optional[Exception] = None
        self._response: Optional[requests.Response] = None
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._watch, name="transfer-guard", daemon=True)

    def __enter__(self) -> "_TransferGuard":
        self._thread.start()
        return self

    def __exit__(self, *exc) -> bool:
        self._done.set()
        self._thread.join()
        return False

    def attach(self, response: requests.Response) -> None:
        with self._lock:
            self._response = response
            aborted = self.reason is not None
        if aborted:
            self._shutdown_socket()

    def check(self) -> None:
        self.raise_if_aborted()
        if _is_set(self.cancel_event):
            raise _Cancelled()
        if time.monotonic() > self.deadline:
            raise _TransferTimeout()

    def raise_if_aborted(self) -> None:
        if self.reason is not None:
            raise self.reason

    def _watch(self) -> None:
        while not self._done.wait(self.POLL_INTERVAL):
            if _is_set(self.cancel_event):
                self._abort(_Cancelled())
                return
            if time.monotonic() > self.deadline:
                self._abort(_TransferTimeout())
                return

    def _abort(self, reason: Exception) -> None:
        with self._lock:
            self.reason = reason
        self._shutdown_socket()

    def _shutdown_socket(self) -> None:
        # close() では別スレッドの recv が起きないため shutdown する。
        # 接続が応答側へ引き渡された後も使えるよう fileno から辿る
        fileno = getattr(getattr(self._response, "raw", None), "fileno", None)
        if fileno is None:
            return
        try:
            fd = fileno()
        except (OSError, ValueError):
            return
        with contextlib.suppress(OSError):
            with socket.socket(fileno=os.dup(fd)) as sock:
                sock.shutdown(socket.SHUT_RDWR)


def extract_file_id(uri: str) -> Optional[str]:
    """共有リンクからファイルIDを取り出す。`/d/<id>` を `id=<id>` より優先する。"""
    parsed = urlparse(uri)
    match = _FILE_ID_RE.search(parsed.path)
    if match:
        return match.group(1)
    for value in parse_qs(parsed.query).get("id", []):
        if _QUERY_ID_RE.match(value):
            return value
    return None


class AssetFetcher:
    """URI をローカルファイルへ解決する。

    Args:
        settings: タイムアウトやリダイレクト上限などのダウンロード設定。
        session_factory: `requests.Session` 互換オブジェクトを返す callable。
    """

    def __init__(
        self,
        settings: Optional[DownloadSettings] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        self.settings = settings or DownloadSettings()
        self.session_factory = session_factory

    def resolve_uri(self, uri: str) -> str:
        """ファイル共有ホストの閲覧用リンクを直接ダウンロード形式へ書き換える。"""
        parsed = urlparse(uri)
        host = (parsed.hostname or "").lower()
        if not self._is_rewrite_host(host):
            return uri
        file_id = extract_file_id(uri)
        if file_id is None:
            logger.kv_warning(
                f"No file id found in {uri}; fetching it unmodified.",
                kv_pairs={"Event": "RewriteSkipped", "Host": host},
            )
            return uri
        direct = f"https://{host}/uc?export=download&id={file_id}"
        logger.debug(f"Rewrote {uri} -> {direct}")
        return direct

    def _is_rewrite_host(self, host: str) -> bool:
        """設定されたホスト、またはそのサブドメインなら True。"""
        return any(host == h or host.endswith("." + h) for h in self.settings.rewrite_hosts)

    @staticmethod
    def destination_for(locator: AssetLocator, dest_dir: Path) -> Path:
        suffix = Path(urlparse(locator.source_uri).path).suffix.lower()
        if not _EXT_RE.match(suffix):
            suffix = DEFAULT_EXTENSIONS[locator.kind]
        return dest_dir / f"{locator.kind.value}{suffix}"

    def fetch(
        self,
        locator: AssetLocator,
        dest_dir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> Asset:
        """1 アセットをダウンロードする(ブロッキング)。

        Raises:
            DownloadError: URI が不正、タイムアウト、リダイレクト超過、非2xx 応答など。
        """
        parsed = urlparse(locator.source_uri)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise DownloadError(locator, "URI must be an absolute http(s) URL")

        url = self.resolve_uri(locator.source_uri)
        dest_dir.mkdir(parents=True, exist_ok=True)
        path = self.destination_for(locator, dest_dir)
        asset = Asset(kind=locator.kind, source_uri=locator.source_uri, local_path=path)

        def attempt() -> int:
            try:
                return self._download(url, path, cancel_event)
            except Exception:
                with contextlib.suppress(FileNotFoundError):
                    path.unlink()
                raise

        def log_retry(state: RetryCallState) -> None:
            error = state.outcome.exception()
            logger.kv_warning(
                f"Download of {locator.kind.value} failed ({self._describe(error)}); "
                f"retry {state.attempt_number}/{self.settings.retries}",
                kv_pairs={"Event": "DownloadRetry", "Kind": locator.kind.value},
            )

        # 4xx とキャンセルは再試行しない
        retrying = Retrying(
            stop=stop_after_attempt(1 + max(0, self.settings.retries)),
            wait=wait_incrementing(start=self.settings.retry_backoff_sec, increment=self.settings.retry_backoff_sec),
            retry=retry_if_exception(lambda e: self._is_retryable(e) and not _is_set(cancel_event)),
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            asset.size_bytes = retrying(attempt)
        except Exception as e:
            asset.state = AssetState.FAILED
            raise DownloadError(locator, self._describe(e)) from e
        asset.state = AssetState.DOWNLOADED

        logger.kv_info(
            f"Downloaded {locator.kind.value}: {path.name} ({asset.size_bytes} bytes)",
            kv_pairs={"Event": "AssetDownloaded", "Kind": locator.kind.value, "Bytes": asset.size_bytes},
        )
        return asset

    def _download(self, url: str, path: Path, cancel_event: Optional[threading.Event]) -> int:
        timeout = self.settings.timeout_sec
        written = 0
        with _TransferGuard(time.monotonic() + timeout, cancel_event) as guard:
            try:
                with self.session_factory() as session:
                    session.max_redirects = self.settings.max_redirects
                    with session.get(url, stream=True, timeout=(timeout, timeout), allow_redirects=True) as r:
                        guard.attach(r)
                        r.raise_for_status()
                        with open(path, "wb") as f:
                            for chunk in r.iter_content(chunk_size=self.settings.chunk_size):
                                guard.check()
                                if not chunk:
                                    continue
                                f.write(chunk)
                                written += len(chunk)
            except Exception:
                # 監視スレッドがソケットを閉じた場合は接続エラーより中断理由を優先する
                guard.raise_if_aborted()
                raise
            # 長さ不明の応答は途中で閉じても正常終了に見える
            guard.raise_if_aborted()
        return written

    def _describe(self, error: Exception) -> str:
        if isinstance(error, _TransferTimeout):
            return f"transfer exceeded {self.settings.timeout_sec:g}s"
        if isinstance(error, _Cancelled):
            return "cancelled after a sibling download failed"
        if isinstance(error, requests.TooManyRedirects):
            return f"more than {self.settings.max_redirects} redirects"
        if isinstance(error, requests.HTTPError) and error.response is not None:
            return f"HTTP {error.response.status_code}"
        if isinstance(error, requests.Timeout):
            return f"timed out after {self.settings.timeout_sec:g}s"
        return str(error) or type(error).__name__

    @staticmethod
    def _is_retryable(error: Exception) -> bool:
        if isinstance(error, requests.HTTPError):
            response = error.response
            return response is not None and response.status_code >= 500
        return isinstance(error, (requests.ConnectionError, requests.Timeout, _TransferTimeout))

    @time_log(logger)
    async def fetch_all(self, locators: List[AssetLocator], dest_dir: Path) -> List[Asset]:
        """全アセットを並行ダウンロードする。最初の失敗で残りを止めて例外を送出する。"""
        cancel_event = threading.Event()
        tasks = [
            asyncio.create_task(asyncio.to_thread(self.fetch, loc, dest_dir, cancel_event))
            for loc in locators
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            cancel_event.set()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        first_error = next(
            (t.exception() for t in tasks if t.done() and t.exception() is not None), None
        )
        if first_error is None:
            return [t.result() for t in tasks]

        cancel_event.set()
        await asyncio.gather(*tasks, return_exceptions=True)
        for t in tasks:
            if t.exception() is None:
                with contextlib.suppress(FileNotFoundError):
                    t.result().local_path.unlink()
        raise first_error


def _is_set(event: Optional[threading.Event]) -> bool:
    return event is not None and event.is_set()
