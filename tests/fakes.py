from typing import List, Optional

from redactr.collaborators import RedactionCommand, RedactionOptions
from redactr.detection.base import InContextDetector
from redactr.image import ImageBuffer


class FakeImageStore:
    def __init__(self, image: Optional[ImageBuffer]):
        self._current = image
        self.updates: List[ImageBuffer] = []

    @property
    def current(self) -> Optional[ImageBuffer]:
        return self._current

    def update_current(self, buffer: ImageBuffer) -> None:
        self._current = buffer
        self.updates.append(buffer)


class FakeHistory:
    def __init__(self):
        self.commands: List[RedactionCommand] = []

    def push(self, command: RedactionCommand) -> None:
        self.commands.append(command)


def black_box_redactor(image, x, y, width, height, options: RedactionOptions):
    arr = bytearray(image.data)
    for row in range(y, y + height):
        start = (row * image.width + x) * 4
        arr[start : start + width * 4] = bytes([0, 0, 0, 255]) * width
    return ImageBuffer(image.width, image.height, bytes(arr))


class FakeInContextDetector(InContextDetector):
    def __init__(self, detection_type, detections=None, error=None, ready=True):
        self.detection_type = detection_type
        self.detections = list(detections or [])
        self.error = error
        self.ready = ready
        self.calls = 0
        self.closed = False

    @property
    def is_ready(self) -> bool:
        return self.ready

    def detect(self, image, on_progress=None):
        self.calls += 1
        self._report(on_progress, 0.5, "Working...")
        if self.error is not None:
            raise self.error
        self.ready = True
        return [d.model_copy() for d in self.detections]

    def close(self) -> None:
        self.closed = True


class FakeModelLoader:
    """Model loader returning canned object-detection output per type."""

    def __init__(self, outputs=None, gate=None, fail=()):
        self.outputs = outputs or {}
        self.gate = gate
        self.fail = set(fail)
        self.calls = []

    def __call__(self, detection_type, model_id, on_progress):
        self.calls.append(detection_type)
        on_progress(0.5)
        if self.gate is not None:
            self.gate.wait(5)
        if detection_type in self.fail:
            raise OSError(f"cannot fetch {model_id}")
        on_progress(1.0)
        output = self.outputs.get(detection_type, [])
        return lambda image: list(output)
