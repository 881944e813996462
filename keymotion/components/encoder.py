"""FilterGraphPlan を FFmpeg で実行して合成動画を書き出す。"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import time
from pathlib import Path
from typing import Callable, Deque, List, Optional, Union

from tqdm import tqdm

from ..config.settings import EncodeSettings
from ..exceptions import EncodeError
from ..utils.ffmpeg_params import EncodeOptions
from ..utils.ffmpeg_runner import terminate_process
from ..utils.logger import logger, time_log
from .planner import FilterGraphPlan

ProgressCallback = Callable[[float], None]

STDERR_TAIL_LINES = 40


class ProgressTracker:
    """`-progress pipe:1` の出力から単調非減少の進捗率(%)を求める。"""

    def __init__(
        self,
        total_seconds: float,
        callback: Optional[ProgressCallback] = None,
        show_bar: bool = False,
    ):
        self.total_seconds = total_seconds
        self.callback = callback
        self.percent = 0.0
        self._bar = tqdm(
            total=100,
            desc="Encoding",
            unit="%",
            leave=False,
            disable=not show_bar,
            bar_format="{l_bar}{bar}| {n:.0f}/{total_fmt}% [{elapsed}<{remaining}]",
        )

    def feed_line(self, line: str) -> None:
        key, _, value = line.strip().partition("=")
        if key in ("out_time_us", "out_time_ms"):
            # out_time_ms も実際はマイクロ秒
            try:
                seconds = int(value) / 1_000_000
            except ValueError:
                return
            self.update(seconds)
        elif key == "progress" and value == "end":
            self.update(self.total_seconds)

    def update(self, seconds: float) -> None:
        if self.total_seconds <= 0:
            return
        percent = max(0.0, min(100.0, seconds / self.total_seconds * 100.0))
        if percent <= self.percent:
            return
        self._bar.update(percent - self.percent)
        self.percent = percent
        if self.callback is not None:
            try:
                self.callback(percent)
            except Exception:
                logger.warning("Progress observer raised; ignoring.", exc_info=True)

    def close(self) -> None:
        self._bar.close()


class Encoder:
    """合成プランを ffmpeg コマンドへ変換して実行する。"""

    def __init__(
        self,
        settings: Optional[EncodeSettings] = None,
        options: Optional[EncodeOptions] = None,
    ):
        self.settings = settings or EncodeSettings()
        self.options = options or EncodeOptions()

    def build_command(
        self,
        plan: FilterGraphPlan,
        audio_path: Union[str, Path],
        output_path: Union[str, Path],
    ) -> List[str]:
        cmd: List[str] = [self.settings.ffmpeg_path, "-y", "-nostdin", "-hide_banner", "-loglevel", "error"]
        for spec in plan.inputs:
            cmd.extend(spec.to_args())
        cmd.extend(["-i", str(audio_path)])
        cmd.extend(["-filter_complex", plan.filter_complex()])
        cmd.extend(["-map", f"[{plan.video_output}]", "-map", plan.audio_map])
        cmd.extend(self.options.to_ffmpeg_opts())
        cmd.extend(["-progress", "pipe:1", "-nostats"])
        cmd.append(str(output_path))
        return cmd

    @time_log(logger)
    async def encode(
        self,
        plan: FilterGraphPlan,
        audio_path: Union[str, Path],
        output_path: Union[str, Path],
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """エンコードを実行し、成功時は出力パスを返す。

        失敗・タイムアウト・キャンセル時は書きかけの出力を削除する。

        Raises:
            EncodeError: ffmpeg が非0で終了した、見つからない、またはタイムアウトした場合。
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(plan, audio_path, output_path)
        logger.debug(f"Running command: {' '.join(cmd)}")

        tracker = ProgressTracker(plan.duration_seconds, on_progress, show_bar=self.settings.progress_bar)
        stderr_tail: Deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        t0 = time.monotonic()
        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as e:
                raise EncodeError(f"ffmpeg not available: {self.settings.ffmpeg_path}") from e

            async def _read_progress() -> None:
                assert process.stdout is not None
                async for raw in process.stdout:
                    tracker.feed_line(raw.decode("utf-8", errors="replace"))

            async def _read_stderr() -> None:
                assert process.stderr is not None
                async for raw in process.stderr:
                    line = raw.decode("utf-8", errors="replace").rstrip()
                    if line:
                        stderr_tail.append(line)

            async def _run() -> int:
                await asyncio.gather(_read_progress(), _read_stderr())
                return await process.wait()

            timeout = self.settings.timeout_sec if self.settings.timeout_sec > 0 else None
            try:
                rc = await asyncio.wait_for(_run(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.error(f"Encode timed out after {timeout:.0f}s (PID={process.pid}); terminating...")
                await terminate_process(process)
                raise EncodeError(
                    f"Encode timed out after {timeout:.0f}s",
                    diagnostic="\n".join(stderr_tail),
                )
            except asyncio.CancelledError:
                logger.warning(f"Encode cancelled (PID={process.pid}); terminating...")
                with contextlib.suppress(Exception):
                    await asyncio.shield(terminate_process(process, grace=3.0))
                raise

            if rc != 0:
                diagnostic = "\n".join(stderr_tail)
                last_line = stderr_tail[-1] if stderr_tail else "no diagnostic output"
                logger.error(f"ffmpeg failed rc={rc}. stderr:\n{diagnostic}")
                raise EncodeError(f"ffmpeg exited with code {rc}: {last_line}", diagnostic=diagnostic, returncode=rc)
            tracker.update(plan.duration_seconds)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                output_path.unlink()
            raise
        finally:
            tracker.close()

        logger.kv_info(
            f"Encoded {output_path.name} in {time.monotonic() - t0:.2f}s",
            kv_pairs={"Event": "EncodeFinished", "Output": output_path.name},
        )
        return output_path
