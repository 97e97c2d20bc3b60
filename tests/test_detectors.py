import pandas as pd
import pytest
import pytesseract
from packaging.version import Version

from redactr.detection import downloads
from redactr.detection.executor import download_ranges, map_document_results, map_plate_results
from redactr.detection.face import FaceDetector, faces_to_detections
from redactr.detection.text import TesseractEngine, TextDetector, words_to_detections
from redactr.detection.types import BBox, Detection, DetectionType
from redactr.image import ImageBuffer
from redactr.model_cache import ModelCache
from redactr.settings import Settings


def test_download_ranges_are_disjoint_and_end_at_100():
    ranges = download_ranges([DetectionType.LICENSE_PLATE, DetectionType.DOCUMENT])
    plate_lo, plate_hi = ranges[DetectionType.LICENSE_PLATE]
    doc_lo, doc_hi = ranges[DetectionType.DOCUMENT]
    assert plate_lo == 0.0
    assert plate_hi == pytest.approx(100 * 25 / 67)
    assert doc_lo == plate_hi
    assert doc_hi == 100.0
    assert download_ranges([DetectionType.DOCUMENT]) == {DetectionType.DOCUMENT: (0.0, 100.0)}
    assert download_ranges([]) == {}


def test_plate_results_threshold_and_label():
    out = map_plate_results(
        [
            {"label": "x", "score": 0.87, "box": {"xmin": 1, "ymin": 2, "xmax": 11, "ymax": 12}},
            {"label": "x", "score": 0.3, "box": {"xmin": 1, "ymin": 2, "xmax": 11, "ymax": 12}},
            {"label": "x", "score": 0.9, "box": {}},
        ],
        50,
        50,
    )
    assert len(out) == 1
    assert out[0].label == "License Plate (87%)"
    assert out[0].bbox == BBox(x=1, y=2, width=10, height=10)


def test_document_results_filter_labels():
    out = map_document_results(
        [
            {"label": "Cell Phone", "score": 0.7, "box": {"xmin": 0, "ymin": 0, "xmax": 5, "ymax": 5}},
            {"label": "person", "score": 0.99, "box": {"xmin": 0, "ymin": 0, "xmax": 5, "ymax": 5}},
        ],
        50,
        50,
        ["book", "cell phone"],
    )
    assert [d.label for d in out] == ["Cell Phone"]


def test_bbox_is_clipped_or_dropped():
    assert BBox.from_corners(-5, -5, 10, 10, 8, 8) == BBox(x=0, y=0, width=8, height=8)
    assert BBox.from_corners(20, 20, 30, 30, 8, 8) is None


def test_detection_confidence_is_clamped():
    bbox = BBox(x=0, y=0, width=1, height=1)
    assert Detection(type="face", bbox=bbox, confidence=1.4).confidence == 1.0
    assert Detection(type="face", bbox=bbox, confidence=float("nan")).confidence == 0.0
    assert Detection(type="face", bbox=bbox, confidence=0.5).selected is True


def test_words_to_detections():
    tsv = pd.DataFrame(
        {
            "left": [1, 10, 20, 30],
            "top": [1, 10, 20, 30],
            "width": [5, 5, 5, 5],
            "height": [5, 5, 5, 5],
            "conf": [95.0, 60.0, 80.0, -1.0],
            "text": ["Jane", "Doe", "   ", ""],
        }
    )
    out = words_to_detections(tsv, 40, 40, min_confidence=60)
    assert [(d.label, d.confidence) for d in out] == [("Jane", 0.95)]
    assert out[0].type == DetectionType.TEXT


def test_faces_to_detections():
    out = faces_to_detections([(10, 10, 20, 30, 0.82), (200, 200, 10, 10, 0.9)], 100, 100)
    assert len(out) == 1
    assert out[0].label == "Face (82%)"
    assert out[0].bbox == BBox(x=10, y=10, width=20, height=30)


class _Engine:
    def __init__(self):
        self.closed = False

    def recognize(self, img, on_progress=None):
        on_progress(0.0)
        on_progress(1.0)
        return pd.DataFrame(
            {"left": [2], "top": [3], "width": [10], "height": [4], "conf": [91.0], "text": ["SECRET"]}
        )

    def close(self):
        self.closed = True


def test_text_detector_uses_cached_engine():
    cache = ModelCache()
    builds = []

    def factory():
        builds.append(1)
        return _Engine()

    detector = TextDetector(settings=Settings(), cache=cache, factory=factory)
    assert not detector.is_ready
    stages = []
    out = detector.detect(ImageBuffer.blank(20, 20), on_progress=lambda p, s: stages.append(p))
    detector.detect(ImageBuffer.blank(20, 20))
    assert [d.label for d in out] == ["SECRET"]
    assert builds == [1]
    assert detector.is_ready
    assert all(75.0 <= p <= 95.0 for p in stages)

    engine = cache.peek(detector.model_key)
    detector.close()
    assert engine.closed
    assert not detector.is_ready


class _FaceModel:
    def detect(self, bgr):
        assert bgr.shape == (40, 60, 3)
        return [(5.0, 5.0, 10.0, 10.0, 0.95)]


def test_face_detector_reports_into_its_range():
    detector = FaceDetector(settings=Settings(), cache=ModelCache(), factory=lambda on_dl: _FaceModel())
    stages = []
    out = detector.detect(ImageBuffer.blank(60, 40), on_progress=lambda p, s: stages.append(p))
    assert [d.type for d in out] == [DetectionType.FACE]
    assert stages == sorted(stages)
    assert all(5.0 <= p <= 30.0 for p in stages)


def test_progress_tqdm_reports_fraction():
    seen = []
    bar = downloads.progress_tqdm(seen.append)(total=10, name="ignored")
    bar.update(5)
    bar.update(5)
    bar.close()
    assert seen == [0.5, 1.0]


class _Streamed:
    headers = {"content-length": "6"}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        return None

    def iter_content(self, chunk_size):
        yield b"abc"
        yield b"def"


def test_download_file_streams_once(tmp_path, monkeypatch: pytest.MonkeyPatch):
    calls = []

    def fake_get(url, stream, timeout):
        calls.append(url)
        return _Streamed()

    monkeypatch.setattr(downloads.requests, "get", fake_get)
    seen = []
    dest = tmp_path / "models" / "face.onnx"
    assert downloads.download_file("https://models.test/face.onnx", dest, on_progress=seen.append) == dest
    assert dest.read_bytes() == b"abcdef"
    assert seen[-1] == 1.0
    assert not dest.with_suffix(".onnx.part").exists()

    downloads.download_file("https://models.test/face.onnx", dest)
    assert calls == ["https://models.test/face.onnx"]


def test_default_cache_dir(tmp_path):
    assert downloads.default_cache_dir(str(tmp_path)) == tmp_path
    assert downloads.default_cache_dir().name == "redactr"


TSV = (
    "level\tpage_num\tblock_num\tpar_num\tline_num\tword_num\tleft\ttop\twidth\theight\tconf\ttext\n"
    "1\t1\t0\t0\t0\t0\t0\t0\t40\t20\t-1\t\n"
    "5\t1\t1\t1\t1\t1\t4\t6\t30\t10\t96\t0071234\n"
)


@pytest.fixture
def tesseract_calls(monkeypatch: pytest.MonkeyPatch):
    calls = []

    def run_and_get_output(image, extension="", lang=None, config="", *args, **kwargs):
        calls.append({"image": image, "extension": extension, "lang": lang, "config": config})
        return TSV.encode("utf-8")

    monkeypatch.setattr(pytesseract, "get_tesseract_version", lambda *a, **k: Version("5.3.0"))
    monkeypatch.setattr(pytesseract.pytesseract, "get_tesseract_version", lambda *a, **k: Version("5.3.0"))
    monkeypatch.setattr(pytesseract.pytesseract, "run_and_get_output", run_and_get_output)
    return calls


def test_numeric_words_keep_their_text(tesseract_calls):
    tsv = TesseractEngine().recognize(ImageBuffer.blank(40, 20).to_pil("RGB"))
    out = words_to_detections(tsv, 40, 20)
    assert [d.label for d in out] == ["0071234"]
    assert out[0].confidence == pytest.approx(0.96)
    assert out[0].bbox == BBox(x=4, y=6, width=30, height=10)


def test_text_detector_applies_ocr_settings(tesseract_calls):
    detector = TextDetector(
        settings=Settings(ocr_psm=6, ocr_preprocess=True, ocr_lang="deu"), cache=ModelCache()
    )
    out = detector.detect(ImageBuffer.blank(40, 20))
    assert [d.label for d in out] == ["0071234"]
    call = tesseract_calls[0]
    assert call["image"].mode == "L"
    assert call["lang"] == "deu"
    assert "--psm 6" in call["config"]
    assert detector.model_key == "tesseract:deu:psm6:1"
