"""FFmpeg/ffprobe コマンドを非同期実行するヘルパー。"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import subprocess
import time
from typing import List, Optional

from .logger import logger

KILL_GRACE_SEC = 5.0


async def terminate_process(process: asyncio.subprocess.Process, grace: float = KILL_GRACE_SEC) -> None:
    """terminate を送り、猶予内に終了しなければ kill する。"""
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=max(0.1, grace))
    except asyncio.TimeoutError:
        logger.error(f"Process did not terminate in {grace:.1f}s; killing PID={process.pid}...")
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


async def run_ffmpeg_async(
    args: List[str], *, timeout: Optional[float] = None, error_log_level: int | None = logging.ERROR
) -> subprocess.CompletedProcess:
    """
    FFmpeg/ffprobe を非同期で起動し、ログとタイムアウトを管理する。

    :param timeout: 秒数。`None` または 0 以下ならタイムアウトなし。
    :param error_log_level: 非0終了コード時に出力するログレベル。
        `None` を指定するとログ出力しない。
    """
    exe = str(args[0]) if args else "ffmpeg"
    base = os.path.basename(exe)
    cmd_str = " ".join(map(str, args))
    logger.debug(f"Running command: {cmd_str}")

    try:
        t0 = time.monotonic()
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        logger.error(
            f"{base} not found. Please ensure FFmpeg is installed and in your PATH."
        )
        raise
    logger.debug(f"Spawned PID={process.pid} for {base}")

    try:
        if timeout is not None and timeout > 0:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        else:
            stdout, stderr = await process.communicate()
    except asyncio.TimeoutError:
        logger.error(
            f"Command timed out after {timeout:.1f}s (PID={process.pid}). Sending terminate..."
        )
        await terminate_process(process)
        raise subprocess.TimeoutExpired(args, timeout)
    except asyncio.CancelledError:
        logger.warning(f"Task cancelled while running {base} (PID={process.pid}); terminating...")
        with contextlib.suppress(Exception):
            await asyncio.shield(terminate_process(process, grace=3.0))
        raise

    stdout_str = stdout.decode(errors="ignore")
    stderr_str = stderr.decode(errors="ignore")

    rc = process.returncode if process.returncode is not None else 0
    logger.debug(f"Command finished rc={rc} in {time.monotonic() - t0:.2f}s (PID={process.pid})")

    if rc != 0:
        if error_log_level is not None:
            logger.log(error_log_level, f"{base} command failed rc={rc}. Command: {cmd_str}")
            if stderr_str:
                logger.log(error_log_level, f"stderr:\n{stderr_str}")
        elif stderr_str:
            logger.debug(f"stderr:\n{stderr_str}")
        raise subprocess.CalledProcessError(
            rc,
            args,
            output=stdout_str,
            stderr=stderr_str,
        )

    return subprocess.CompletedProcess(args, rc, stdout_str, stderr_str)
