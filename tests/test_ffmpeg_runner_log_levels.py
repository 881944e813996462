import asyncio
import logging
import pathlib
import subprocess
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from keymotion.utils.ffmpeg_runner import run_ffmpeg_async


def test_run_ffmpeg_async_no_error_logs(caplog):
    """error_log_levelをWARNINGにするとERRORログが出ない"""
    with caplog.at_level(logging.ERROR, logger="keymotion"):
        with pytest.raises(subprocess.CalledProcessError):
            asyncio.run(
                run_ffmpeg_async(["bash", "-c", "exit 1"], error_log_level=logging.WARNING)
            )
    assert not caplog.records


def test_run_ffmpeg_async_logs_stderr_on_failure(caplog):
    with caplog.at_level(logging.ERROR, logger="keymotion"):
        with pytest.raises(subprocess.CalledProcessError) as excinfo:
            asyncio.run(run_ffmpeg_async(["bash", "-c", "echo broken input >&2; exit 3"]))
    assert excinfo.value.returncode == 3
    assert "broken input" in excinfo.value.stderr
    assert any("broken input" in r.getMessage() for r in caplog.records)


def test_run_ffmpeg_async_returns_stdout():
    result = asyncio.run(run_ffmpeg_async(["bash", "-c", "echo '{\"ok\": true}'"]))
    assert result.returncode == 0
    assert result.stdout.strip() == '{"ok": true}'


def test_run_ffmpeg_async_times_out():
    with pytest.raises(subprocess.TimeoutExpired):
        asyncio.run(run_ffmpeg_async(["bash", "-c", "sleep 10"], timeout=0.3))
