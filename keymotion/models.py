"""合成ジョブで扱うアセット・ジョブ・リクエストのデータ型。"""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .exceptions import PipelineError, ValidationError

if TYPE_CHECKING:
    from .components.planner import FilterGraphPlan


class AssetKind(str, Enum):
    BACKGROUND = "background"
    FOREGROUND = "foreground"
    AUDIO = "audio"


class AssetState(str, Enum):
    PENDING = "pending"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


class JobStatus(str, Enum):
    FETCHING = "fetching"
    PROBING = "probing"
    PLANNING = "planning"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"


# 正常系は一本道。FAILED へはどの非終端状態からでも遷移できる
_NEXT_STATUS = {
    JobStatus.FETCHING: JobStatus.PROBING,
    JobStatus.PROBING: JobStatus.PLANNING,
    JobStatus.PLANNING: JobStatus.ENCODING,
    JobStatus.ENCODING: JobStatus.DONE,
}
TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.FAILED})


@dataclass(frozen=True)
class AssetLocator:
    kind: AssetKind
    source_uri: str


@dataclass
class Asset:
    """ダウンロード済み(または失敗した)アセット。ジョブ終了時にファイルは削除される。"""

    kind: AssetKind
    source_uri: str
    local_path: Path
    size_bytes: int = 0
    state: AssetState = AssetState.PENDING


@dataclass
class RenderJob:
    """1リクエスト分の合成ジョブ。"""

    output_path: Optional[Path] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    assets: List[Asset] = field(default_factory=list)
    duration_seconds: Optional[int] = None
    status: JobStatus = JobStatus.FETCHING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: JobStatus) -> None:
        if self.is_terminal:
            raise PipelineError(
                f"Job {self.id} is already {self.status.value}; cannot move to {new_status.value}"
            )
        if new_status is not JobStatus.FAILED and _NEXT_STATUS.get(self.status) is not new_status:
            raise PipelineError(
                f"Invalid transition for job {self.id}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status

    def asset(self, kind: AssetKind) -> Asset:
        for a in self.assets:
            if a.kind is kind:
                return a
        raise KeyError(kind)


_PAYLOAD_KEYS = {
    "background_image_uri": ("background_image_uri", "backgroundImageURI", "backgroundImageUrl"),
    "foreground_video_uri": ("foreground_video_uri", "foregroundVideoURI", "foregroundVideoUrl"),
    "audio_uri": ("audio_uri", "audioURI", "audioUrl"),
    "output_name": ("output_name", "outputName"),
}


def _pick(payload: Dict[str, Any], names) -> Any:
    for name in names:
        if payload.get(name) not in (None, ""):
            return payload[name]
    return None


@dataclass(frozen=True)
class RenderRequest:
    background_image_uri: str
    foreground_video_uri: str
    audio_uri: str
    output_name: Optional[str] = None

    def __post_init__(self):
        for name in ("background_image_uri", "foreground_video_uri", "audio_uri"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"'{name}' is required and must be a non-empty string.")
        if self.output_name is not None:
            name = self.output_name
            if (
                not isinstance(name, str)
                or not name.strip()
                or "/" in name
                or "\\" in name
                or ".." in name
            ):
                raise ValidationError(
                    f"output_name must be a plain file name without path separators: {name!r}"
                )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RenderRequest":
        """HTTP 層から渡される JSON ボディ(camelCase 可)を受け取る。"""
        if not isinstance(payload, dict):
            raise ValidationError("Request payload must be a JSON object.")
        values = {key: _pick(payload, names) for key, names in _PAYLOAD_KEYS.items()}
        return cls(**values)

    def locators(self) -> List[AssetLocator]:
        return [
            AssetLocator(AssetKind.BACKGROUND, self.background_image_uri),
            AssetLocator(AssetKind.FOREGROUND, self.foreground_video_uri),
            AssetLocator(AssetKind.AUDIO, self.audio_uri),
        ]


@dataclass
class RenderResult:
    job_id: str
    output_name: str
    video_bytes: bytes
    duration_seconds: int
    plan: "FilterGraphPlan"

    @property
    def size_bytes(self) -> int:
        return len(self.video_bytes)

    def to_payload(self, include_data: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": True,
            "jobId": self.job_id,
            "outputName": self.output_name,
            "videoSize": self.size_bytes,
            "duration": self.duration_seconds,
        }
        if include_data:
            payload["videoData"] = base64.b64encode(self.video_bytes).decode("ascii")
        return payload


def failure_payload(error: Exception) -> Dict[str, Any]:
    kind = getattr(error, "kind", type(error).__name__)
    message = getattr(error, "message", None) or str(error)
    return {"success": False, "error": {"kind": kind, "message": message}}
