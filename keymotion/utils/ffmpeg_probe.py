"""ffprobe を利用したメディア情報取得ヘルパー。"""

from __future__ import annotations

import json
import math
import subprocess
from pathlib import Path
from typing import Optional, TypedDict, Union

from ..exceptions import ProbeError
from .ffmpeg_runner import run_ffmpeg_async
from .logger import logger

PathLike = Union[str, Path]


class VideoInfo(TypedDict, total=False):
    """動画ストリームの基本情報。"""

    codec_name: str
    width: int
    height: int
    pix_fmt: str
    r_frame_rate: str
    fps: float


class AudioInfo(TypedDict, total=False):
    """音声ストリームの基本情報。"""

    codec_name: str
    sample_rate: int
    channels: int


class MediaInfo(TypedDict, total=False):
    """動画/音声のメタ情報。"""

    video: Optional[VideoInfo]
    audio: Optional[AudioInfo]


def _parse_fps(r_rate: str) -> float:
    try:
        num, den = map(int, r_rate.split("/"))
        return float(num) / float(den) if den else 0.0
    except ValueError:
        return 0.0


async def get_media_info(file_path: PathLike, ffprobe_path: str = "ffprobe") -> MediaInfo:
    """動画/音声ファイルの最初のストリーム情報を取得する。"""
    cmd = [
        ffprobe_path,
        "-v",
        "error",
        "-show_streams",
        "-of",
        "json",
        str(file_path),
    ]
    try:
        result = await run_ffmpeg_async(cmd)
        info = json.loads(result.stdout)
    except subprocess.CalledProcessError as e:
        raise ProbeError(file_path, f"ffprobe failed: {(e.stderr or '').strip() or e}") from e
    except json.JSONDecodeError as e:
        raise ProbeError(file_path, f"Unreadable ffprobe output: {e}") from e
    except FileNotFoundError as e:
        raise ProbeError(file_path, f"ffprobe not available: {ffprobe_path}") from e

    media_info: MediaInfo = {"video": None, "audio": None}
    for s in info.get("streams", []):
        if s.get("codec_type") == "video" and media_info["video"] is None:
            r_rate = s.get("r_frame_rate", "0/0")
            media_info["video"] = {
                "codec_name": s.get("codec_name"),
                "width": int(s.get("width", 0)),
                "height": int(s.get("height", 0)),
                "pix_fmt": s.get("pix_fmt"),
                "r_frame_rate": r_rate,
                "fps": _parse_fps(r_rate),
            }
        elif s.get("codec_type") == "audio" and media_info["audio"] is None:
            media_info["audio"] = {
                "codec_name": s.get("codec_name"),
                "sample_rate": int(s.get("sample_rate") or 0),
                "channels": int(s.get("channels") or 0),
            }
    return media_info


async def get_media_duration(file_path: PathLike, ffprobe_path: str = "ffprobe") -> float:
    """コンテナの duration (秒, 浮動小数) を返す。"""
    cmd = [
        ffprobe_path,
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        str(file_path),
    ]
    try:
        result = await run_ffmpeg_async(cmd)
        info = json.loads(result.stdout)
    except subprocess.CalledProcessError as e:
        raise ProbeError(file_path, f"ffprobe failed: {(e.stderr or '').strip() or e}") from e
    except json.JSONDecodeError as e:
        raise ProbeError(file_path, f"Unreadable ffprobe output: {e}") from e
    except FileNotFoundError as e:
        raise ProbeError(file_path, f"ffprobe not available: {ffprobe_path}") from e

    raw = (info.get("format") or {}).get("duration")
    if raw is None:
        raise ProbeError(file_path, "No duration in container metadata")
    try:
        duration = float(raw)
    except (TypeError, ValueError):
        raise ProbeError(file_path, f"Invalid duration value {raw!r}")
    if not math.isfinite(duration) or duration <= 0:
        raise ProbeError(file_path, f"Non-positive duration {duration}")
    return duration


async def probe_audio_duration(audio_path: PathLike, ffprobe_path: str = "ffprobe") -> int:
    """音声の長さを整数秒に切り上げて返す。

    動画が音声より短くならないよう、四捨五入ではなく ceil を使う。
    """
    duration = await get_media_duration(audio_path, ffprobe_path=ffprobe_path)
    seconds = math.ceil(duration)
    logger.debug(f"Probed audio duration {duration:.3f}s -> {seconds}s ({audio_path})")
    return seconds
