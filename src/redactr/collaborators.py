"""Interfaces of the editing surface this core talks to.

The image store, the undo history and the pixel primitive all live outside the
package. They are described here as protocols so both engines can be wired to
the real editor or to in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

from .image import ImageBuffer


class RedactionStyle(str, Enum):
    SOLID = "solid"
    PIXELATE = "pixelate"
    BLUR = "blur"


@dataclass(frozen=True)
class Region:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class RedactionOptions:
    style: RedactionStyle = RedactionStyle.SOLID
    intensity: int = 50
    color: str = "#000000"


@dataclass(frozen=True)
class RedactionCommand:
    """Entry of the undo history: a rectangle or a brush stroke."""

    type: str  # "rect" | "brush"
    style: RedactionStyle
    region: Optional[Region]
    points: Optional[List[float]]
    intensity: int
    color: str = "#000000"


class ImageStore(Protocol):
    @property
    def current(self) -> Optional[ImageBuffer]: ...

    def update_current(self, buffer: ImageBuffer) -> None: ...


class HistoryStore(Protocol):
    def push(self, command: RedactionCommand) -> None: ...


class RectRedactor(Protocol):
    def __call__(
        self,
        image: ImageBuffer,
        x: int,
        y: int,
        width: int,
        height: int,
        options: RedactionOptions,
    ) -> ImageBuffer: ...


__all__ = [
    "RedactionStyle",
    "Region",
    "RedactionOptions",
    "RedactionCommand",
    "ImageStore",
    "HistoryStore",
    "RectRedactor",
]
