from __future__ import annotations
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from common.errors import MalformedPayloadError

# upper bounds on raster geometry; 8192x8192 per side but at most 4K UHD worth of pixels
MAX_DIMENSION = 8192
MAX_CHANNELS  = 16
MAX_PIXELS    = 3840 * 2160

class Frame(BaseModel):
    frame_index: int = Field(ge=0)
    timestamp: str                      # ISO8601
    tensor_data: List[Optional[float]]  # row-major, channel-interleaved (R,G,B,...)
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    channels: Optional[int] = Field(default=None, gt=0)

class VideoTensorPayload(BaseModel):
    camera_name: str
    width: int = Field(gt=0, le=MAX_DIMENSION)
    height: int = Field(gt=0, le=MAX_DIMENSION)
    channels: int = Field(gt=0, le=MAX_CHANNELS)
    frames: List[Frame]

    @model_validator(mode="after")
    def _check_frames(self) -> "VideoTensorPayload":
        if self.width * self.height > MAX_PIXELS:
            raise ValueError(
                f"raster {self.width}x{self.height} exceeds {MAX_PIXELS} pixels"
            )
        limit = self.width * self.height * self.channels
        seen = set()
        for fr in self.frames:
            if fr.frame_index in seen:
                raise ValueError(f"duplicate frame_index {fr.frame_index}")
            seen.add(fr.frame_index)
            if len(fr.tensor_data) > limit:
                raise ValueError(
                    f"frame {fr.frame_index} has {len(fr.tensor_data)} samples, "
                    f"raster {self.width}x{self.height}x{self.channels} holds {limit}"
                )
        return self

    def ordered_frames(self) -> List[Frame]:
        return sorted(self.frames, key=lambda f: f.frame_index)

    def mismatched_frames(self) -> List[int]:
        """frame_index of every frame whose own geometry disagrees with the payload's."""
        out = []
        for fr in self.frames:
            own = (fr.width, fr.height, fr.channels)
            ref = (self.width, self.height, self.channels)
            if any(o is not None and o != r for o, r in zip(own, ref)):
                out.append(fr.frame_index)
        return out

class VideoRequest(BaseModel):
    tensor_url: Optional[str] = None
    camera_name: str = "Front Camera"
    payload: Optional[VideoTensorPayload] = None

def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(x) for x in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else str(err.get("msg"))

def parse_payload(data: Any) -> VideoTensorPayload:
    """Validate decoded JSON into a payload, failing fast with MalformedPayloadError."""
    try:
        return VideoTensorPayload.model_validate(data)
    except ValidationError as e:
        raise MalformedPayloadError(_first_error(e)) from e

def parse_request(data: Any) -> VideoRequest:
    try:
        return VideoRequest.model_validate(data if data is not None else {})
    except ValidationError as e:
        raise MalformedPayloadError(_first_error(e)) from e
