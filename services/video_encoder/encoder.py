# services/video_encoder/encoder.py
from __future__ import annotations
import asyncio, os, shlex, shutil, tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

import aiofiles
import numpy as np
from PIL import Image

from common.errors import CleanupWarning, EncodeError
from common.logging import get_logger
from common.schemas import VideoTensorPayload

log = get_logger("tensor_encoder")

MIN_INDEX_WIDTH = 6
OUTPUT_NAME = "output.mp4"

@dataclass
class EncoderSettings:
    ffmpeg_bin: str = "ffmpeg"
    fps: int = 30
    codec: str = "libx264"
    pix_fmt: str = "yuv420p"   # 4:2:0 for broad playback compatibility
    crf: int = 23
    timeout_sec: Optional[float] = 300.0
    staging_root: Optional[str] = None  # None -> system temp dir

    def command(self) -> List[str]:
        # shlex so the binary may carry its own args ("nice -n 10 ffmpeg")
        return shlex.split(self.ffmpeg_bin)

# ----------------- Frame packing -----------------
def pack_frame(tensor_data: Sequence[Optional[float]], width: int, height: int, stride: int) -> np.ndarray:
    """
    Build an (H, W, 3) uint8 RGB raster from a flat, channel-interleaved tensor.
    Pixel p reads samples stride*p .. stride*p+2. Samples past the end, None and
    non-finite values count as 0; the rest become max(0, min(255, floor(v))).
    """
    n_pixels = width * height
    # one past the last sample read: stride*(n-1) + 3
    size = stride * (n_pixels - 1) + 3 if n_pixels else 0
    buf = np.zeros(max(size, n_pixels * stride), dtype=np.float64)

    if len(tensor_data):
        # None -> nan under a float dtype
        vals = np.asarray(tensor_data, dtype=np.float64)
        take = min(len(vals), len(buf))
        buf[:take] = vals[:take]
    buf = np.nan_to_num(buf, nan=0.0, posinf=0.0, neginf=0.0)

    if stride >= 3:
        rgb = buf[:n_pixels * stride].reshape(n_pixels, stride)[:, :3]
    else:
        # fewer than 3 channels: neighbouring pixels share samples
        offsets = (np.arange(n_pixels, dtype=np.int64) * stride)[:, None] + np.arange(3)
        rgb = buf[offsets]
    px = np.clip(np.floor(rgb), 0, 255).astype(np.uint8)
    return px.reshape(height, width, 3)

def index_width(frame_count: int) -> int:
    return max(MIN_INDEX_WIDTH, len(str(max(frame_count - 1, 0))))

def frame_filename(i: int, width: int) -> str:
    return f"frame_{i:0{width}d}.ppm"

def write_ppm(raster: np.ndarray, path: Path) -> None:
    # Pillow writes binary P6: "P6\n<w> <h>\n255\n" + raw RGB triples
    Image.fromarray(raster).save(path, format="PPM")

# ----------------- Staging area -----------------
def _remove(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.warning(f"[cleanup] {CleanupWarning(str(path), str(e))}")

@contextmanager
def staging_area(frame_count: int, root: Optional[str] = None) -> Iterator[Path]:
    """
    Fresh directory owned by one encode. On exit every expected frame file and the
    output are removed, then the directory itself; failures are logged only.
    """
    try:
        if root:
            os.makedirs(root, exist_ok=True)
        stage = Path(tempfile.mkdtemp(prefix="tensor_frames_", dir=root))
    except OSError as e:
        raise EncodeError(f"cannot create staging directory: {e}") from e
    log.debug(f"[stage] created {stage}")
    try:
        yield stage
    finally:
        width = index_width(frame_count)
        for i in range(frame_count):
            _remove(stage / frame_filename(i, width))
        _remove(stage / OUTPUT_NAME)
        try:
            stage.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"[cleanup] {CleanupWarning(str(stage), str(e))}")
            shutil.rmtree(stage, ignore_errors=True)

# ----------------- ffmpeg -----------------
def build_ffmpeg_args(settings: EncoderSettings, stage: Path, width: int, output: Path) -> List[str]:
    pattern = stage / f"frame_%0{width}d.ppm"
    return settings.command() + [
        "-y", "-hide_banner", "-loglevel", "error",
        "-framerate", str(settings.fps),
        "-i", str(pattern),
        "-c:v", settings.codec,
        "-pix_fmt", settings.pix_fmt,
        "-crf", str(settings.crf),
        str(output),
    ]

async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()

async def run_ffmpeg(args: List[str], timeout_sec: Optional[float] = None) -> None:
    """Run the encoder to completion; EncodeError on any failure. Killed on cancel/timeout."""
    log.debug(f"ffmpeg: {' '.join(args)}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise EncodeError(f"cannot start encoder {args[0]!r}: {e}") from e

    try:
        _out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout_sec)
    except asyncio.TimeoutError as e:
        await _kill(proc)
        raise EncodeError(f"encoder timed out after {timeout_sec}s") from e
    except asyncio.CancelledError:
        log.warning(f"[encode] cancelled, killing encoder pid={proc.pid}")
        await _kill(proc)
        raise

    if proc.returncode != 0:
        raise EncodeError("encoder failed", returncode=proc.returncode,
                          stderr=(err or b"").decode(errors="ignore"))

# ----------------- Pipeline -----------------
async def encode_payload(payload: VideoTensorPayload, settings: Optional[EncoderSettings] = None) -> bytes:
    """
    Stage every frame as PPM, run ffmpeg over the sequence and return the MP4 bytes.
    Frames are taken in frame_index order at the payload-level geometry.
    """
    settings = settings or EncoderSettings()
    frames = payload.ordered_frames()
    w, h, stride = payload.width, payload.height, payload.channels

    mismatched = payload.mismatched_frames()
    if mismatched:
        log.warning(f"[encode] camera={payload.camera_name} frames {mismatched[:10]} declare their own "
                    f"geometry; encoding all at {w}x{h}x{stride}")

    with staging_area(len(frames), settings.staging_root) as stage:
        iw = index_width(len(frames))
        for i, fr in enumerate(frames):
            if len(fr.tensor_data) < w * h * stride:
                log.debug(f"[encode] frame {fr.frame_index} short ({len(fr.tensor_data)} samples), padding black")
            path = stage / frame_filename(i, iw)
            try:
                write_ppm(pack_frame(fr.tensor_data, w, h, stride), path)
            except OSError as e:
                raise EncodeError(f"cannot write {path.name}: {e}") from e

        output = stage / OUTPUT_NAME
        await run_ffmpeg(build_ffmpeg_args(settings, stage, iw, output), settings.timeout_sec)

        if not output.exists():
            raise EncodeError(f"encoder exited 0 but wrote no {output.name}")
        try:
            async with aiofiles.open(output, "rb") as f:
                video = await f.read()
        except OSError as e:
            raise EncodeError(f"cannot read encoded video: {e}") from e

    log.info(f"[encode] camera={payload.camera_name} frames={len(frames)} "
             f"geometry={w}x{h} fps={settings.fps} bytes={len(video)}")
    return video
