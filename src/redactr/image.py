"""Image buffer shared by both engines.

``ImageBuffer`` mirrors what the editing surface exposes: width, height and
packed RGBA bytes. Helpers convert to the PIL / numpy views detectors need and
to the base64 data URL the remote models accept.
"""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass

import numpy as np
from PIL import Image


@dataclass(frozen=True)
class ImageBuffer:
    width: int
    height: int
    data: bytes

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid image size {self.width}x{self.height}")
        expected = self.width * self.height * 4
        if len(self.data) != expected:
            raise ValueError(
                f"RGBA buffer has {len(self.data)} bytes, expected {expected}"
            )

    @staticmethod
    def from_pil(img: Image.Image) -> "ImageBuffer":
        if img.mode != "RGBA":
            img = img.convert("RGBA")
        w, h = img.size
        return ImageBuffer(width=w, height=h, data=img.tobytes())

    @staticmethod
    def blank(width: int, height: int, rgba=(255, 255, 255, 255)) -> "ImageBuffer":
        return ImageBuffer.from_pil(Image.new("RGBA", (width, height), tuple(rgba)))

    def to_pil(self, mode: str = "RGB") -> Image.Image:
        img = Image.frombytes("RGBA", (self.width, self.height), self.data)
        return img if mode == "RGBA" else img.convert(mode)

    def to_array(self) -> np.ndarray:
        """Return an ``(H, W, 4)`` uint8 view of the pixels."""
        return np.frombuffer(self.data, dtype=np.uint8).reshape(
            (self.height, self.width, 4)
        )

    def to_bgr(self) -> np.ndarray:
        """Return a contiguous ``(H, W, 3)`` BGR copy for OpenCV."""
        return np.ascontiguousarray(self.to_array()[:, :, 2::-1])

    def to_data_url(self) -> str:
        """Encode as a ``data:image/png;base64`` URL."""
        buf = io.BytesIO()
        self.to_pil("RGBA").save(buf, format="PNG")
        encoded = base64.b64encode(buf.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"


__all__ = ["ImageBuffer"]
