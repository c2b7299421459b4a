"""Shared fixtures: quiet logging, no config file, and a scriptable stand-in for ffmpeg."""

import json
import os
import shlex
import sys
from pathlib import Path

import pytest

# Must be set before any service module creates its logger / loads config.
os.environ["LOG_DIR"] = ""
os.environ["VIDEO_ENCODER_CONFIG"] = str(Path(__file__).parent / "no-such-config.yaml")

from common.schemas import parse_payload  # noqa: E402
from services.video_encoder.encoder import EncoderSettings  # noqa: E402

# Records each invocation, copies the first staged frames aside, then behaves per mode.
FAKE_FFMPEG = r'''
import json, os, shutil, sys, time

record_dir, mode = sys.argv[1], sys.argv[2]
args = sys.argv[3:]
pattern = args[args.index("-i") + 1]
stage = os.path.dirname(pattern)
staged = sorted(n for n in os.listdir(stage) if n.endswith(".ppm"))

with open(os.path.join(record_dir, "calls.jsonl"), "a") as f:
    f.write(json.dumps({"args": args, "stage": stage, "staged": staged}) + "\n")
for name in staged[:2]:
    shutil.copy(os.path.join(stage, name), os.path.join(record_dir, name))

if mode == "fail":
    sys.stderr.write("fake encoder: boom\n")
    sys.exit(1)
if mode == "nooutput":
    sys.exit(0)
if mode == "hang":
    time.sleep(60)
if not staged:
    sys.stderr.write("Could find no file with path pattern\n")
    sys.exit(1)
with open(args[-1], "wb") as f:
    f.write(b"FAKEMP4:" + str(len(staged)).encode())
'''


class FakeFFmpeg:
    def __init__(self, root: Path):
        self.script = root / "fake_ffmpeg.py"
        self.script.write_text(FAKE_FFMPEG)
        self.record = root / "record"
        self.record.mkdir()
        self.staging = root / "staging"

    def settings(self, mode: str = "ok", **kw) -> EncoderSettings:
        cmd = " ".join(shlex.quote(p) for p in (sys.executable, str(self.script), str(self.record), mode))
        kw.setdefault("staging_root", str(self.staging))
        return EncoderSettings(ffmpeg_bin=cmd, **kw)

    def calls(self):
        log = self.record / "calls.jsonl"
        if not log.exists():
            return []
        return [json.loads(line) for line in log.read_text().splitlines()]

    def leftovers(self):
        if not self.staging.exists():
            return []
        return sorted(p.name for p in self.staging.rglob("*"))


@pytest.fixture
def fake_ffmpeg(tmp_path):
    return FakeFFmpeg(tmp_path)


def make_payload(frames, width=2, height=2, channels=3, camera_name="Front Camera"):
    """frames: list of tensor_data lists, indexed in order unless given as (index, data)."""
    out = []
    for i, fr in enumerate(frames):
        idx, data = fr if isinstance(fr, tuple) else (i, fr)
        out.append({
            "frame_index": idx,
            "timestamp": f"2025-01-01T00:00:00.{idx:03d}Z",
            "tensor_data": data,
            "width": width,
            "height": height,
            "channels": channels,
        })
    return {
        "camera_name": camera_name,
        "width": width,
        "height": height,
        "channels": channels,
        "frames": out,
    }


RGBW = [255, 0, 0, 0, 255, 0, 0, 0, 255, 255, 255, 255]


@pytest.fixture
def rgbw_payload():
    return parse_payload(make_payload([RGBW, list(reversed(RGBW))]))
