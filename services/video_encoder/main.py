# services/video_encoder/main.py
from __future__ import annotations
import asyncio, os, shutil
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn
import yaml
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from common.errors import MalformedPayloadError, VideoPipelineError
from common.logging import configure_loggers, get_logger
from common.schemas import VideoTensorPayload, parse_request
from services.video_encoder.encoder import EncoderSettings, encode_payload
from services.video_encoder.resolver import resolve_payload

# ----------------------- config & logging -----------------------
ROOT = Path(__file__).resolve().parents[2]
CFG_PATH = Path(os.getenv("VIDEO_ENCODER_CONFIG", str(ROOT / "config" / "config.yaml")))

def load_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    return yaml.safe_load(path.read_text(encoding="utf-8")) or {}

def encoder_settings(cfg: Dict[str, Any]) -> EncoderSettings:
    ve = cfg.get("video_encoder", {}) or {}
    ff = ve.get("ffmpeg", {}) or {}
    timeout = ff.get("timeout_sec", os.getenv("VE_FFMPEG_TIMEOUT_SEC", 300))
    # 0 or empty (from yaml or env) disables the timeout
    timeout = float(timeout) if timeout not in (None, "") else 0.0
    return EncoderSettings(
        ffmpeg_bin=str(ff.get("bin", os.getenv("VE_FFMPEG_BIN", "ffmpeg"))),
        fps=int(ff.get("fps", os.getenv("VE_FPS", 30))),
        codec=str(ff.get("codec", os.getenv("VE_CODEC", "libx264"))),
        pix_fmt=str(ff.get("pix_fmt", os.getenv("VE_PIX_FMT", "yuv420p"))),
        crf=int(ff.get("crf", os.getenv("VE_CRF", 23))),
        timeout_sec=timeout if timeout > 0 else None,
        staging_root=ve.get("staging_root", os.getenv("VE_STAGING_ROOT")) or None,
    )

cfg: Dict[str, Any] = load_config(CFG_PATH)

rt = cfg.get("runtime", {}) or {}
ve = cfg.get("video_encoder", {}) or {}

LOG_LEVEL = rt.get("log_level", os.getenv("LOG_LEVEL", "INFO"))
LOG_DIR   = rt.get("log_dir", os.getenv("LOG_DIR", "logs"))

HOST = ve.get("host", os.getenv("VE_HOST", "0.0.0.0"))
PORT = int(ve.get("port", os.getenv("VE_PORT", 8080)))
FETCH_TIMEOUT = float(ve.get("fetch_timeout_sec", os.getenv("VE_FETCH_TIMEOUT_SEC", 30)))
DISCONNECT_POLL_SEC = float(ve.get("disconnect_poll_sec", os.getenv("VE_DISCONNECT_POLL_SEC", 0.5)))
SETTINGS = encoder_settings(cfg)

# resolver / encoder loggers exist since import; bring them onto the runtime config too
COMPONENT_LOGGERS = ("video_encoder", "tensor_resolver", "tensor_encoder")
configure_loggers(COMPONENT_LOGGERS, log_dir=str(LOG_DIR), level=LOG_LEVEL)
log = get_logger("video_encoder")

app = FastAPI(title="Robot Episode Tensor → Video")

FAILURE_BODY = {"error": "Failed to convert tensor data to video"}

# ----------------------- routes -----------------------
@app.get("/health", response_class=JSONResponse)
async def health():
    ffmpeg = SETTINGS.command()
    return JSONResponse({
        "status": "healthy",
        "ffmpeg": bool(ffmpeg) and shutil.which(ffmpeg[0]) is not None,
    })

async def _encode_while_connected(request: Request, payload: VideoTensorPayload) -> Optional[bytes]:
    """
    Run the encode as its own task and poll the client between waits. If the client
    goes away (or this request task is cancelled) the encode task is cancelled, which
    kills ffmpeg and tears down the staging dir. Returns None on disconnect.
    """
    job = asyncio.create_task(encode_payload(payload, SETTINGS))
    try:
        while True:
            done, _ = await asyncio.wait({job}, timeout=DISCONNECT_POLL_SEC)
            if done:
                return job.result()
            if await request.is_disconnected():
                log.warning(f"[request] client disconnected, cancelling encode camera={payload.camera_name}")
                job.cancel()
                await asyncio.wait({job})
                return None
    except asyncio.CancelledError:
        job.cancel()
        await asyncio.wait({job})
        raise

@app.post("/api/video")
async def tensor_to_video(request: Request):
    try:
        try:
            body = await request.json() if await request.body() else {}
        except ValueError as e:
            raise MalformedPayloadError(f"request body is not JSON ({e})") from e
        req = parse_request(body)

        payload = await resolve_payload(req.tensor_url, req.camera_name, req.payload,
                                        timeout_sec=FETCH_TIMEOUT)
        video = await _encode_while_connected(request, payload)
    except VideoPipelineError as e:
        log.error(f"[request] {type(e).__name__}: {e}")
        return JSONResponse(FAILURE_BODY, status_code=500)
    except Exception as e:
        log.exception(f"[request] unexpected error: {e}")
        return JSONResponse(FAILURE_BODY, status_code=500)

    if video is None:
        # nobody is listening; keep the single failure shape
        return JSONResponse(FAILURE_BODY, status_code=500)

    return Response(
        content=video,
        media_type="video/mp4",
        headers={
            "Content-Length": str(len(video)),
            "Cache-Control": "public, max-age=3600",
        },
    )

# ----------------------- main -----------------------
if __name__ == "__main__":
    log.info("Tensor → video service starting on %s:%d (ffmpeg=%s)", HOST, PORT, SETTINGS.ffmpeg_bin)
    uvicorn.run("services.video_encoder.main:app",
                host=HOST, port=PORT,
                reload=False, log_level=str(LOG_LEVEL).lower())
