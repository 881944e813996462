"""ダウンロード・尺取得・プラン生成・エンコードを統括するパイプライン実装。"""

from __future__ import annotations

import asyncio
import shutil
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from .components.encoder import Encoder, ProgressCallback
from .components.fetcher import AssetFetcher
from .components.planner import (
    TARGET_HEIGHT,
    TARGET_WIDTH,
    CompositionPlanner,
    centered_offset,
    scale_to_fit,
)
from .config.settings import PipelineSettings
from .exceptions import CapacityError, KeymotionError, PipelineError, ProbeError
from .models import AssetKind, JobStatus, RenderJob, RenderRequest, RenderResult, failure_payload
from .utils.ffmpeg_probe import get_media_info, probe_audio_duration
from .utils.logger import logger, time_log


def default_output_name(job_id: str) -> str:
    return f"video_{time.strftime('%Y%m%d_%H%M%S')}_{job_id[:8]}"


class CompositionPipeline:
    """1 リクエストごとに合成ジョブを実行する。

    ディレクトリや上限値は `PipelineSettings` で明示的に受け取り、
    生成時に作業/出力ディレクトリを用意する。同時エンコード数は
    パイプライン単位のセマフォで制限する。
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        fetcher: Optional[AssetFetcher] = None,
        planner: Optional[CompositionPlanner] = None,
        encoder: Optional[Encoder] = None,
    ):
        self.settings = settings or PipelineSettings()
        self.settings.ensure_dirs()
        self.fetcher = fetcher or AssetFetcher(self.settings.download)
        self.planner = planner or CompositionPlanner()
        self.encoder = encoder or Encoder(self.settings.encode)
        self._encode_slots = asyncio.Semaphore(max(1, self.settings.max_concurrent_encodes))
        self._active_encodes = 0

    @property
    def active_encodes(self) -> int:
        return self._active_encodes

    def _enter(self, job: RenderJob, status: JobStatus) -> None:
        job.transition(status)
        logger.kv_info(
            f"Job {job.id[:8]}: {status.value}",
            kv_pairs={"Event": "JobStatus", "Job": job.id, "Status": status.value},
        )

    @time_log(logger)
    async def run(
        self,
        request: RenderRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> RenderResult:
        """合成を実行して成果物を返す。

        成功・失敗に関わらず一時ファイルは削除する
        (`keep_failed_artifacts` が有効な失敗時のみ残す)。

        Raises:
            KeymotionError: いずれかのステージが失敗した場合。種類は例外クラスの `kind`。
        """
        job = RenderJob()
        output_name = request.output_name or default_output_name(job.id)
        # 同名の出力を並行して作っても衝突しないようジョブごとに分ける
        job.output_path = self.settings.output_dir / job.id / f"{output_name}.mp4"
        job_dir = self.settings.scratch_dir / job.id
        logger.kv_info(
            f"New composition job {job.id[:8]} -> {job.output_path.name}",
            kv_pairs={"Event": "JobStart", "Job": job.id, "Output": output_name},
        )

        try:
            result = await self._execute(job, request, job_dir, output_name, on_progress)
        except BaseException as e:
            if not job.is_terminal:
                job.transition(JobStatus.FAILED)
            if self.settings.keep_failed_artifacts and not isinstance(e, asyncio.CancelledError):
                logger.warning(f"Keeping artifacts of failed job in {job_dir}")
            else:
                self._cleanup(job, job_dir)
            if isinstance(e, KeymotionError):
                logger.kv_error(
                    f"Job {job.id[:8]} failed: {e}",
                    kv_pairs={"Event": "JobFailed", "Job": job.id, "Kind": e.kind},
                )
                raise
            if isinstance(e, Exception):
                logger.kv_error(
                    f"Job {job.id[:8]} failed unexpectedly: {e}",
                    kv_pairs={"Event": "JobFailed", "Job": job.id, "Kind": PipelineError.kind},
                )
                raise PipelineError(f"Unexpected failure in job {job.id}: {e}") from e
            raise

        self._cleanup(job, job_dir)
        logger.kv_info(
            f"Job {job.id[:8]} done: {result.size_bytes} bytes, {result.duration_seconds}s",
            kv_pairs={"Event": "JobDone", "Job": job.id, "Bytes": result.size_bytes},
        )
        return result

    async def _execute(
        self,
        job: RenderJob,
        request: RenderRequest,
        job_dir: Path,
        output_name: str,
        on_progress: Optional[ProgressCallback],
    ) -> RenderResult:
        assert job.output_path is not None

        # 1. ダウンロード(3 本並行)
        job.assets = await self.fetcher.fetch_all(request.locators(), job_dir)
        background = job.asset(AssetKind.BACKGROUND).local_path
        foreground = job.asset(AssetKind.FOREGROUND).local_path
        audio = job.asset(AssetKind.AUDIO).local_path

        # 2. 音声の尺(切り上げ秒)
        self._enter(job, JobStatus.PROBING)
        job.duration_seconds = await probe_audio_duration(audio, self.settings.encode.ffprobe_path)
        logger.kv_info(
            f"Audio duration: {job.duration_seconds}s",
            kv_pairs={"Event": "AudioDuration", "Job": job.id, "Seconds": job.duration_seconds},
        )
        await self._log_foreground_geometry(foreground)

        # 3. フィルターグラフ
        self._enter(job, JobStatus.PLANNING)
        plan = self.planner.plan(job.duration_seconds, background, foreground)
        logger.debug(f"filter_complex: {plan.filter_complex()}")

        # 4. エンコード
        self._enter(job, JobStatus.ENCODING)
        if not self.settings.queue_when_busy and self._encode_slots.locked():
            raise CapacityError(
                f"All {self.settings.max_concurrent_encodes} encode slots are busy; retry later."
            )
        job.output_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._encode_slots:
            self._active_encodes += 1
            try:
                await self.encoder.encode(plan, audio, job.output_path, on_progress=on_progress)
            finally:
                self._active_encodes -= 1

        video_bytes = await asyncio.to_thread(job.output_path.read_bytes)
        self._enter(job, JobStatus.DONE)
        return RenderResult(
            job_id=job.id,
            output_name=output_name,
            video_bytes=video_bytes,
            duration_seconds=job.duration_seconds,
            plan=plan,
        )

    async def _log_foreground_geometry(self, foreground: Path) -> None:
        try:
            info = await get_media_info(foreground, self.settings.encode.ffprobe_path)
        except ProbeError as e:
            logger.warning(f"Could not inspect foreground video: {e}")
            return
        video = info.get("video")
        if not video or not video.get("width") or not video.get("height"):
            logger.warning(f"Foreground has no readable video stream: {foreground.name}")
            return
        fg_w, fg_h = scale_to_fit(video["width"], video["height"])
        x, y = centered_offset(TARGET_WIDTH, TARGET_HEIGHT, fg_w, fg_h)
        logger.kv_info(
            f"Foreground {video['width']}x{video['height']} -> {fg_w}x{fg_h} at ({x},{y})",
            kv_pairs={"Event": "ForegroundGeometry", "X": x, "Y": y},
        )

    def _cleanup(self, job: RenderJob, job_dir: Path) -> None:
        paths = [a.local_path for a in job.assets]
        if job.output_path is not None:
            paths.append(job.output_path)
        cleanup_files(paths)
        dirs = [job_dir]
        if job.output_path is not None:
            dirs.append(job.output_path.parent)
        for directory in dirs:
            if not directory.exists():
                continue
            try:
                shutil.rmtree(directory)
            except OSError as e:
                logger.warning(f"Could not remove job directory {directory}: {e}")

    async def render(self, request: Union[RenderRequest, Dict[str, Any]]) -> Dict[str, Any]:
        """HTTP 層向けのレスポンス辞書を返す。失敗時は種類とメッセージのみ。"""
        try:
            if not isinstance(request, RenderRequest):
                request = RenderRequest.from_payload(request)
            result = await self.run(request)
        except KeymotionError as e:
            return failure_payload(e)
        return result.to_payload()


def cleanup_files(paths: Iterable[Path]) -> None:
    """存在するファイルを削除する。削除できなくても例外にはしない。"""
    for path in paths:
        try:
            path.unlink()
            logger.debug(f"Removed {path}")
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")


async def run_composition(
    request: RenderRequest,
    settings: Optional[PipelineSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> RenderResult:
    """単発実行用のヘルパー。"""
    pipeline = CompositionPipeline(settings)
    return await pipeline.run(request, on_progress=on_progress)

