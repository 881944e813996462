import asyncio
import json
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import keymotion.main as main_module
from keymotion.components.planner import CompositionPlanner
from keymotion.exceptions import DownloadError
from keymotion.models import AssetKind, AssetLocator, RenderResult


class _FakePipeline:
    error = None
    requests = []

    def __init__(self, settings):
        self.settings = settings

    async def run(self, request, on_progress=None):
        _FakePipeline.requests.append(request)
        if _FakePipeline.error is not None:
            raise _FakePipeline.error
        plan = CompositionPlanner().plan(4, "bg.jpg", "fg.mp4")
        return RenderResult(
            job_id="0123456789abcdef",
            output_name=request.output_name or "generated",
            video_bytes=b"mp4bytes",
            duration_seconds=4,
            plan=plan,
        )


def _config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        f"system:\n  scratch_dir: {tmp_path / 'scratch'}\n  output_dir: {tmp_path / 'output'}\n",
        encoding="utf-8",
    )
    return str(path)


def _argv(tmp_path, *extra):
    return [
        "https://example.com/bg.jpg",
        "https://example.com/fg.mp4",
        "https://example.com/a.mp3",
        "--config",
        _config(tmp_path),
        "--skip-dependency-check",
        "--no-progress",
        *extra,
    ]


def test_main_writes_video_and_response(tmp_path, monkeypatch):
    monkeypatch.setattr(main_module, "CompositionPipeline", _FakePipeline)
    monkeypatch.setattr(_FakePipeline, "error", None)
    save_to = tmp_path / "final" / "promo.mp4"
    response = tmp_path / "response.json"

    code = asyncio.run(
        main_module.main(_argv(tmp_path, "-n", "promo", "-o", str(save_to), "--response-json", str(response)))
    )

    assert code == 0
    assert save_to.read_bytes() == b"mp4bytes"
    payload = json.loads(response.read_text(encoding="utf-8"))
    assert payload["success"] is True
    assert payload["outputName"] == "promo"
    assert payload["videoSize"] == 8
    assert "videoData" not in payload


def test_main_returns_nonzero_on_pipeline_error(tmp_path, monkeypatch):
    monkeypatch.setattr(main_module, "CompositionPipeline", _FakePipeline)
    monkeypatch.setattr(
        _FakePipeline,
        "error",
        DownloadError(AssetLocator(AssetKind.AUDIO, "https://example.com/a.mp3"), "HTTP 404"),
    )
    save_to = tmp_path / "clip.mp4"

    code = asyncio.run(main_module.main(_argv(tmp_path, "-o", str(save_to))))

    assert code == 1
    assert not save_to.exists()


def test_main_rejects_invalid_output_name(tmp_path, monkeypatch):
    monkeypatch.setattr(main_module, "CompositionPipeline", _FakePipeline)
    monkeypatch.setattr(_FakePipeline, "requests", [])

    code = asyncio.run(main_module.main(_argv(tmp_path, "-n", "../escape")))

    assert code == 1
    assert _FakePipeline.requests == []
