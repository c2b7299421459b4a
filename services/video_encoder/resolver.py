# services/video_encoder/resolver.py
from __future__ import annotations
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
import numpy as np

from common.errors import MalformedPayloadError, SourceFetchError
from common.logging import get_logger
from common.schemas import Frame, VideoTensorPayload, parse_payload

log = get_logger("tensor_resolver")

MOCK_FRAMES   = 60
MOCK_WIDTH    = 320
MOCK_HEIGHT   = 240
MOCK_CHANNELS = 3
MOCK_FRAME_INTERVAL = timedelta(milliseconds=33)
MOCK_TIME_STEP = 0.1

# (base, amplitude, x frequency, t frequency, wave) per channel
_FRONT_PARAMS = (
    (80, 40, 3, 0.2, np.sin),
    (90, 30, 2, 0.3, np.cos),
    (100, 25, 4, 0.1, np.sin),
)
_OTHER_PARAMS = (
    (120, 30, 5, 0.4, np.sin),
    (130, 25, 4, 0.3, np.cos),
    (140, 20, 6, 0.2, np.sin),
)

# ----------------- Remote source -----------------
async def fetch_payload(url: str, timeout_sec: float = 30.0,
                        client: Optional[httpx.AsyncClient] = None) -> VideoTensorPayload:
    """
    GET <url> and validate the JSON body as a VideoTensorPayload.
    Non-2xx / transport failures -> SourceFetchError; bad body -> MalformedPayloadError.
    """
    log.info(f"[fetch] GET {url}")
    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=timeout_sec, follow_redirects=True)
    try:
        resp = await client.get(url)
        resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise SourceFetchError(url, e.response.status_code, e.response.reason_phrase) from e
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise SourceFetchError(url, None, str(e) or type(e).__name__) from e
    finally:
        if own_client:
            await client.aclose()

    try:
        data = resp.json()
    except ValueError as e:
        raise MalformedPayloadError(f"response body is not JSON ({e})") from e
    payload = parse_payload(data)
    log.info(f"[fetch] ok camera={payload.camera_name} frames={len(payload.frames)} "
             f"geometry={payload.width}x{payload.height}x{payload.channels}")
    return payload

# ----------------- Placeholder source -----------------
def _is_front(camera_name: str) -> bool:
    return "front" in camera_name.lower()

def _mock_tensor(params, frame_index: int) -> np.ndarray:
    t = frame_index * MOCK_TIME_STEP
    nx = np.arange(MOCK_WIDTH, dtype=np.float64) / MOCK_WIDTH
    row = np.stack([
        np.floor(base + amp * wave(nx * fx + t * ft))
        for base, amp, fx, ft, wave in params
    ], axis=-1)  # (W, 3)
    return np.broadcast_to(row, (MOCK_HEIGHT, MOCK_WIDTH, MOCK_CHANNELS))

def mock_payload(camera_name: str, start: Optional[datetime] = None) -> VideoTensorPayload:
    """
    Deterministic placeholder: 60 frames of 320x240 RGB, colour bands varying with
    pixel column and frame time. Front-style labels get the cooler workshop palette.
    """
    start = start or datetime.now(timezone.utc)
    params = _FRONT_PARAMS if _is_front(camera_name) else _OTHER_PARAMS
    frames = []
    for i in range(MOCK_FRAMES):
        frames.append(Frame(
            frame_index=i,
            timestamp=(start + i * MOCK_FRAME_INTERVAL).isoformat(),
            tensor_data=_mock_tensor(params, i).ravel().tolist(),
            width=MOCK_WIDTH,
            height=MOCK_HEIGHT,
            channels=MOCK_CHANNELS,
        ))
    return VideoTensorPayload(
        camera_name=camera_name,
        width=MOCK_WIDTH,
        height=MOCK_HEIGHT,
        channels=MOCK_CHANNELS,
        frames=frames,
    )

# ----------------- Entry point -----------------
async def resolve_payload(tensor_url: Optional[str], camera_name: str,
                          payload: Optional[VideoTensorPayload] = None,
                          timeout_sec: float = 30.0,
                          client: Optional[httpx.AsyncClient] = None) -> VideoTensorPayload:
    if payload is not None:
        log.info(f"[resolve] inline payload camera={payload.camera_name} frames={len(payload.frames)}")
        return payload
    if tensor_url:
        return await fetch_payload(tensor_url, timeout_sec=timeout_sec, client=client)
    log.info(f"[resolve] no tensor_url, synthesizing placeholder for camera={camera_name}")
    return mock_payload(camera_name)
