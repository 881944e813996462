"""FFmpeg/ffprobe の実行可否とバージョンを確認するユーティリティ。"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Optional, Tuple

from ..config.settings import EncodeSettings
from ..exceptions import DependencyError
from .ffmpeg_runner import run_ffmpeg_async
from .logger import logger

_VERSION_PATTERN = re.compile(r"version\s+n?(\d+)(?:\.(\d+))?(?:\.(\d+))?")

# -stream_loop と colorkey が揃うバージョン
MIN_FFMPEG_VERSION = "4.0"


@dataclass(frozen=True)
class VersionRequirement:
    """バージョン互換性チェックに利用する正規化済みバージョン情報。"""

    major: int
    minor: int
    patch: int = 0

    @classmethod
    def parse(cls, version_str: str) -> "VersionRequirement":
        match = re.search(r"(\d+)(?:\.(\d+))?(?:\.(\d+))?", version_str)
        if not match:
            raise ValueError(f"Unsupported version string: '{version_str}'")
        return cls(
            major=int(match.group(1)),
            minor=int(match.group(2) or 0),
            patch=int(match.group(3) or 0),
        )

    def satisfies(self, minimum: "VersionRequirement") -> bool:
        return (self.major, self.minor, self.patch) >= (
            minimum.major,
            minimum.minor,
            minimum.patch,
        )


async def get_tool_version(binary: str) -> Optional[str]:
    """`<binary> -version` の出力からバージョン文字列を取り出す。

    実行できない場合は None。git ビルド等で数値が取れない場合は "unknown"。
    """
    try:
        result = await run_ffmpeg_async([binary, "-version"], timeout=15, error_log_level=logging.DEBUG)
    except (FileNotFoundError, PermissionError, subprocess.CalledProcessError, subprocess.TimeoutExpired):
        return None
    match = _VERSION_PATTERN.search(result.stdout)
    if not match:
        return "unknown"
    return ".".join(g for g in match.groups() if g is not None)


async def ensure_ffmpeg_dependencies(
    settings: EncodeSettings,
    *,
    min_version: str = MIN_FFMPEG_VERSION,
) -> Tuple[str, str]:
    """ffmpeg と ffprobe が起動でき、最低バージョンを満たすことを確認する。"""
    minimum = VersionRequirement.parse(min_version)
    versions = []
    for tool, binary in (("ffmpeg", settings.ffmpeg_path), ("ffprobe", settings.ffprobe_path)):
        raw = await get_tool_version(binary)
        kv = {"Event": "DependencyCheck", "Tool": tool, "Binary": binary, "MinimumVersion": min_version}
        if raw is None:
            logger.kv_error(f"{tool} を実行できません: {binary}", kv_pairs={**kv, "Status": "NotDetected"})
            raise DependencyError(f"{tool} is missing or not executable: {binary}")
        if raw == "unknown":
            # 開発版ビルドは番号を持たないため通す
            logger.kv_warning(
                f"{tool} のバージョンを判別できませんでした。続行します。",
                kv_pairs={**kv, "Status": "UnknownVersion"},
            )
        elif not VersionRequirement.parse(raw).satisfies(minimum):
            logger.kv_error(
                f"{tool} {raw} は古すぎます。{min_version} 以降が必要です。",
                kv_pairs={**kv, "Status": "VersionTooOld", "ReportedVersion": raw},
            )
            raise DependencyError(f"{tool} {min_version}+ is required, but {raw} is installed.")
        versions.append(raw)

    logger.kv_info(
        "FFmpeg/ffprobe の環境要件を満たしています。",
        kv_pairs={"Event": "DependencyCheck", "Status": "OK", "FFmpegVersion": versions[0], "FFprobeVersion": versions[1]},
    )
    return versions[0], versions[1]
