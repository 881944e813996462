"""YAML 設定からパイプライン設定オブジェクトを組み立てる。"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from .io import load_config
from .merge import merge_configs
from .validate import validate_config

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "templates" / "config.yaml"


@dataclass(frozen=True)
class DownloadSettings:
    timeout_sec: float = 60.0
    max_redirects: int = 5
    chunk_size: int = 1024 * 1024
    retries: int = 0
    retry_backoff_sec: float = 1.0
    rewrite_hosts: Tuple[str, ...] = ("drive.google.com",)


@dataclass(frozen=True)
class EncodeSettings:
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    timeout_sec: float = 1800.0
    progress_bar: bool = True


@dataclass(frozen=True)
class PipelineSettings:
    """CompositionPipeline に明示的に渡す設定。グローバル状態は持たない。"""

    scratch_dir: Path = Path("temp")
    output_dir: Path = Path("output")
    max_concurrent_encodes: int = field(default_factory=lambda: os.cpu_count() or 1)
    queue_when_busy: bool = True
    keep_failed_artifacts: bool = False
    download: DownloadSettings = field(default_factory=DownloadSettings)
    encode: EncodeSettings = field(default_factory=EncodeSettings)

    def ensure_dirs(self) -> None:
        """作業ディレクトリと出力ディレクトリを作成する(既存なら何もしない)。"""
        self.scratch_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "PipelineSettings":
        system = config.get("system") or {}
        dl = config.get("download") or {}
        enc = config.get("encode") or {}

        limit = system.get("max_concurrent_encodes", "auto")
        if limit is None or (isinstance(limit, str) and limit.lower() == "auto"):
            limit = os.cpu_count() or 1

        download = DownloadSettings(
            timeout_sec=float(dl.get("timeout_sec", 60)),
            max_redirects=int(dl.get("max_redirects", 5)),
            chunk_size=int(dl.get("chunk_size", 1024 * 1024)),
            retries=int(dl.get("retries", 0)),
            retry_backoff_sec=float(dl.get("retry_backoff_sec", 1.0)),
            rewrite_hosts=tuple(h.lower() for h in dl.get("rewrite_hosts", ["drive.google.com"])),
        )
        encode = EncodeSettings(
            ffmpeg_path=os.getenv("FFMPEG_BINARY_PATH") or enc.get("ffmpeg_path", "ffmpeg"),
            ffprobe_path=os.getenv("FFPROBE_BINARY_PATH") or enc.get("ffprobe_path", "ffprobe"),
            timeout_sec=float(enc.get("timeout_sec", 1800)),
            progress_bar=bool(enc.get("progress_bar", True)),
        )
        return cls(
            scratch_dir=Path(system.get("scratch_dir", "temp")),
            output_dir=Path(system.get("output_dir", "output")),
            max_concurrent_encodes=int(limit),
            queue_when_busy=bool(system.get("queue_when_busy", True)),
            keep_failed_artifacts=bool(system.get("keep_failed_artifacts", False)),
            download=download,
            encode=encode,
        )


def load_settings(
    config_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
    default_config_path: Union[str, Path] = DEFAULT_CONFIG_PATH,
) -> PipelineSettings:
    """既定 YAML・ユーザー YAML・上書き値の順にマージして設定を作る。

    Args:
        config_path: 任意のユーザー設定 YAML。
        overrides: CLI 引数などから来るセクション単位の上書き。`None` の値は無視される。
        default_config_path: 既定設定のパス。

    Raises:
        ValidationError: YAML が読めない、または値が不正な場合。
    """
    config = load_config(default_config_path)
    if config_path is not None:
        config = merge_configs(config, load_config(config_path))
    if overrides:
        config = merge_configs(config, overrides)
    validate_config(config)
    return PipelineSettings.from_config(config)
