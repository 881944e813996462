"""背景・前景・音声から filter_complex を組み立てるプランナー。

I/O を持たない純粋関数で、同じ入力からは常に同じプランを返す。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple, Union

from ..exceptions import PlanningError

TARGET_WIDTH = 1920
TARGET_HEIGHT = 1080

# 既存出力と同じ抜け具合にするため固定値
KEY_COLOR = "0x00FF00"
KEY_SIMILARITY = 0.3
KEY_BLEND = 0.2

OUTPUT_PIX_FMT = "yuv420p"
AUDIO_INPUT_INDEX = 2

_RAW_INPUT_RE = re.compile(r"^\d+:[va]$")


@dataclass(frozen=True)
class InputSpec:
    """ffmpeg の 1 入力 (-i の前に付くオプション込み)。"""

    path: str
    options: Tuple[str, ...] = ()

    def to_args(self) -> List[str]:
        return [*self.options, "-i", self.path]


@dataclass(frozen=True)
class FilterStage:
    name: str
    inputs: Tuple[str, ...]
    expression: str
    outputs: Tuple[str, ...]

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        outs = "".join(f"[{label}]" for label in self.outputs)
        return f"{ins}{self.expression}{outs}"


@dataclass(frozen=True)
class FilterGraphPlan:
    duration_seconds: int
    time_bound: int
    inputs: Tuple[InputSpec, ...]
    stages: Tuple[FilterStage, ...]
    video_output: str = "final"
    audio_input_index: int = AUDIO_INPUT_INDEX

    @property
    def audio_map(self) -> str:
        return f"{self.audio_input_index}:a"

    def filter_complex(self) -> str:
        return ";".join(stage.render() for stage in self.stages)

    def stage(self, name: str) -> FilterStage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def validate(self) -> None:
        """各ステージが前段の出力か生の入力ストリームだけを参照しているか検証する。"""
        produced = set()
        for s in self.stages:
            for label in s.inputs:
                if _RAW_INPUT_RE.match(label):
                    index = int(label.split(":", 1)[0])
                    if index >= len(self.inputs) and index != self.audio_input_index:
                        raise PlanningError(f"Stage '{s.name}' reads unknown input #{index}")
                elif label not in produced:
                    raise PlanningError(
                        f"Stage '{s.name}' consumes [{label}] before it is produced"
                    )
            produced.update(s.outputs)
        if self.video_output not in produced:
            raise PlanningError(f"Final label [{self.video_output}] is never produced")


def scale_to_cover(width: int, height: int) -> Tuple[int, int]:
    """force_original_aspect_ratio=increase 相当のサイズ。"""
    ratio = max(TARGET_WIDTH / width, TARGET_HEIGHT / height)
    return max(TARGET_WIDTH, round(width * ratio)), max(TARGET_HEIGHT, round(height * ratio))


def scale_to_fit(width: int, height: int) -> Tuple[int, int]:
    """force_original_aspect_ratio=decrease 相当のサイズ。"""
    ratio = min(TARGET_WIDTH / width, TARGET_HEIGHT / height)
    return min(TARGET_WIDTH, round(width * ratio)), min(TARGET_HEIGHT, round(height * ratio))


def centered_offset(bg_width: int, bg_height: int, fg_width: int, fg_height: int) -> Tuple[int, int]:
    """overlay=(W-w)/2:(H-h)/2 が評価する位置。"""
    return (bg_width - fg_width) // 2, (bg_height - fg_height) // 2


class CompositionPlanner:
    """合成用の FilterGraphPlan を生成する。"""

    def plan(
        self,
        duration_seconds: int,
        background_path: Union[str, Path],
        foreground_path: Union[str, Path],
    ) -> FilterGraphPlan:
        if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int):
            raise PlanningError(f"Duration must be a whole number of seconds, got {duration_seconds!r}")
        if duration_seconds <= 0:
            raise PlanningError(f"Duration must be positive, got {duration_seconds}")

        # 映像入力は音声より 1 秒長く取り、最後は -shortest で音声に合わせる
        time_bound = duration_seconds + 1
        inputs = (
            InputSpec(str(background_path), ("-loop", "1", "-t", str(time_bound))),
            InputSpec(str(foreground_path), ("-stream_loop", "-1", "-t", str(time_bound))),
        )

        size = f"{TARGET_WIDTH}:{TARGET_HEIGHT}"
        stages = (
            FilterStage(
                "background",
                ("0:v",),
                f"scale={size}:force_original_aspect_ratio=increase,crop={size}",
                ("bg",),
            ),
            FilterStage(
                "foreground",
                ("1:v",),
                f"scale={size}:force_original_aspect_ratio=decrease",
                ("fg_scaled",),
            ),
            FilterStage(
                "colorkey",
                ("fg_scaled",),
                f"colorkey={KEY_COLOR}:{KEY_SIMILARITY}:{KEY_BLEND}",
                ("fg_keyed",),
            ),
            FilterStage(
                "overlay",
                ("bg", "fg_keyed"),
                f"overlay=(W-w)/2:(H-h)/2:format=auto,format={OUTPUT_PIX_FMT}",
                ("final",),
            ),
        )

        plan = FilterGraphPlan(
            duration_seconds=duration_seconds,
            time_bound=time_bound,
            inputs=inputs,
            stages=stages,
        )
        plan.validate()
        return plan
