"""コマンドラインから合成パイプラインを実行するエントリポイント。"""

import argparse
import asyncio
import json
import sys
import time
import traceback
from pathlib import Path
from typing import List, Optional

from keymotion.config import load_settings
from keymotion.exceptions import KeymotionError, ValidationError
from keymotion.models import RenderRequest
from keymotion.pipeline import CompositionPipeline
from keymotion.utils.dependency_checks import ensure_ffmpeg_dependencies
from keymotion.utils.logger import (
    KVLogger,
    get_logger,
    setup_logging,
    shutdown_logging,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Composite a chroma-keyed foreground video over a background image, timed to an audio track."
    )
    parser.add_argument("background", help="URL of the background image.")
    parser.add_argument("foreground", help="URL of the green-screen foreground video (looped).")
    parser.add_argument("audio", help="URL of the audio track; it sets the output duration.")
    parser.add_argument(
        "-n",
        "--output-name",
        default=None,
        help="Base name of the artifact (no extension). Defaults to a timestamped name.",
    )
    parser.add_argument(
        "-o",
        "--save-to",
        default=None,
        help="Where to write the finished MP4. Defaults to '<output-name>.mp4' in the current directory.",
    )
    parser.add_argument("--config", default=None, help="YAML file merged over the default configuration.")
    parser.add_argument(
        "--max-encodes",
        type=int,
        default=None,
        help="Maximum number of concurrent ffmpeg encodes.",
    )
    parser.add_argument("--no-progress", action="store_true", help="Disable the encode progress bar.")
    parser.add_argument(
        "--response-json",
        default=None,
        help="Also write the response payload (without video data) to this JSON file.",
    )
    parser.add_argument("--skip-dependency-check", action="store_true", help="Do not probe ffmpeg/ffprobe versions first.")
    parser.add_argument("--log-json", action="store_true", help="Output logs in JSON format.")
    parser.add_argument("--log-kv", action="store_true", help="Output logs in Key-Value pair format.")
    parser.add_argument("--log-dir", default=None, help="Also write logs to a timestamped file in this directory.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """コマンドライン引数を解析し合成を実行する。終了コードを返す。"""
    args = build_parser().parse_args(argv)

    setup_logging(log_json=args.log_json, debug_mode=args.debug, log_kv=args.log_kv, log_dir=args.log_dir)
    logger: KVLogger = get_logger()

    start_time = time.monotonic()
    try:
        overrides = {
            "system": {"max_concurrent_encodes": args.max_encodes},
            "encode": {"progress_bar": False if args.no_progress else None},
        }
        settings = load_settings(args.config, overrides=overrides)
        request = RenderRequest(
            background_image_uri=args.background,
            foreground_video_uri=args.foreground,
            audio_uri=args.audio,
            output_name=args.output_name,
        )
        if not args.skip_dependency_check:
            await ensure_ffmpeg_dependencies(settings.encode)

        pipeline = CompositionPipeline(settings)
        result = await pipeline.run(request)

        save_to = Path(args.save_to) if args.save_to else Path(f"{result.output_name}.mp4")
        save_to.parent.mkdir(parents=True, exist_ok=True)
        save_to.write_bytes(result.video_bytes)
        if args.response_json:
            payload = result.to_payload(include_data=False)
            payload["savedTo"] = str(save_to)
            Path(args.response_json).write_text(json.dumps(payload, indent=2), encoding="utf-8")

        elapsed = time.monotonic() - start_time
        logger.kv_info(
            f"Saved {save_to} ({result.size_bytes} bytes, {result.duration_seconds}s) in {elapsed:.2f}s.",
            kv_pairs={"Event": "GenerationSuccess", "Duration": f"{elapsed:.2f}s"},
        )
        return 0
    except ValidationError as e:
        logger.kv_error(
            f"Validation Error: {e.message}",
            kv_pairs={
                "Event": "ValidationError",
                "Message": e.message,
                "Line": e.line_number,
                "Column": e.column_number,
            },
        )
        return 1
    except KeymotionError as e:
        logger.kv_error(
            f"{e.kind} Error: {e.message}",
            kv_pairs={"Event": "GenerationFailed", "Kind": e.kind, "Message": e.message},
        )
        return 1
    except Exception as e:
        logger.kv_error(
            f"An unexpected error occurred during generation: {e}",
            kv_pairs={
                "Event": "UnexpectedError",
                "Message": str(e),
                "Traceback": traceback.format_exc(),
            },
        )
        return 1
    finally:
        shutdown_logging()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
