"""FFmpegエンコードパラメータのデータクラス。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class EncodeOptions:
    """合成動画の出力設定。出力プロファイルは1種類に固定している。"""

    video_codec: str = "libx264"
    audio_codec: str = "aac"
    preset: str = "medium"  # 速度と画質のバランス
    crf: int = 20
    fps: int = 30
    profile: str = "main"
    level: str = "4.0"
    movflags: str = "+faststart"  # moov atom を先頭へ
    shortest: bool = True

    def __post_init__(self):
        if not self.shortest:
            raise ValueError("EncodeOptions.shortest must stay enabled; output length follows the audio track.")

    def to_ffmpeg_opts(self) -> List[str]:
        """現在の設定をFFmpegの引数へ変換する。"""
        opts: List[str] = []
        opts.extend(["-c:v", self.video_codec])
        opts.extend(["-c:a", self.audio_codec])
        opts.extend(["-preset", self.preset])
        opts.extend(["-crf", str(self.crf)])
        opts.extend(["-r", str(self.fps)])
        opts.extend(["-profile:v", self.profile])
        opts.extend(["-level", self.level])
        opts.extend(["-movflags", self.movflags])
        # 出力長は常に最短ストリーム(音声)に揃える
        opts.append("-shortest")
        return opts
