#!/usr/bin/env python3
"""
tensor_to_mp4.py

Offline variant of POST /api/video: resolve a tensor payload (JSON file, URL or
the built-in placeholder) and write the encoded MP4 to disk.

  python -m scripts.tensor_to_mp4 --payload episode_front.json -o front.mp4
  python -m scripts.tensor_to_mp4 --tensor-url http://host/tensors/front.json -o front.mp4
  python -m scripts.tensor_to_mp4 --camera-name "Wrist Camera" -o wrist.mp4
"""
import argparse
import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path

from common.errors import MalformedPayloadError, VideoPipelineError
from common.logging import configure_loggers, get_logger
from common.schemas import parse_payload
from services.video_encoder.encoder import encode_payload
from services.video_encoder.main import CFG_PATH, COMPONENT_LOGGERS, encoder_settings, load_config
from services.video_encoder.resolver import resolve_payload

log = get_logger("tensor_to_mp4")


def load_payload_file(path: Path):
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise MalformedPayloadError(f"{path} is not JSON ({e})") from e
    return parse_payload(data)


async def run(args) -> int:
    cfg = load_config(Path(args.config))
    rt = cfg.get("runtime", {}) or {}
    if rt:
        configure_loggers(COMPONENT_LOGGERS + ("tensor_to_mp4",),
                          log_dir=str(rt.get("log_dir", "logs")), level=rt.get("log_level", "INFO"))
    settings = encoder_settings(cfg)
    overrides = {k: v for k, v in {
        "ffmpeg_bin": args.ffmpeg,
        "fps": args.fps,
        "crf": args.crf,
    }.items() if v is not None}
    settings = replace(settings, **overrides)

    try:
        payload = load_payload_file(Path(args.payload)) if args.payload else None
        payload = await resolve_payload(args.tensor_url, args.camera_name, payload)
        video = await encode_payload(payload, settings)
    except VideoPipelineError as e:
        log.error(f"{type(e).__name__}: {e}")
        return 1

    out = Path(args.output)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(video)
    log.info(f"[done] wrote {out} ({len(video)} bytes)")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Encode a robot-episode video tensor payload into an MP4.")
    src = parser.add_mutually_exclusive_group()
    src.add_argument("--payload", default=None, help="Path to a VideoTensorPayload JSON file")
    src.add_argument("--tensor-url", default=None, help="URL serving a VideoTensorPayload JSON body")
    parser.add_argument("--camera-name", default="Front Camera",
                        help="Label for the placeholder payload when no source is given")
    parser.add_argument("-o", "--output", required=True, help="Output .mp4 path")
    parser.add_argument("--config", default=str(CFG_PATH), help="config.yaml with a video_encoder section")
    parser.add_argument("--ffmpeg", default=None, help="Encoder command (default from config)")
    parser.add_argument("--fps", type=int, default=None)
    parser.add_argument("--crf", type=int, default=None)
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
