"""
test_frames.py
~~~~~~~~~~~~~~
Frame normalization (scale vs. letterbox), subtitle band extraction and
the stored assets produced per archive entry.
"""
from __future__ import annotations

import io

from PIL import Image

from conftest import make_png
from subocr.services.archive import ArchiveEntry
from subocr.services.frames import (
    FrameGeometry,
    FrameTransformer,
    crop_subtitle_band,
    decode_image,
    normalize_frame,
    remove_subtitle_band,
)

GEOMETRY = FrameGeometry(width=1280, height=720, aspect_tolerance=0.01, subtitle_band_ratio=0.32)


def _entry(filename, archived=True):
    return ArchiveEntry(entry_name=filename, filename=filename, base_name=filename.split(".")[0],
                        include_in_final_archive=archived)


def test_matching_aspect_is_scaled():
    frame = normalize_frame(Image.new("RGB", (640, 360), (255, 255, 255)), GEOMETRY)
    assert frame.size == (1280, 720)
    # No letterbox: corners keep the source colour
    assert frame.getpixel((0, 0)) == (255, 255, 255)


def test_other_aspect_is_letterboxed():
    frame = normalize_frame(Image.new("RGB", (400, 400), (255, 255, 255)), GEOMETRY)
    assert frame.size == (1280, 720)
    assert frame.getpixel((5, 360)) == (0, 0, 0)
    assert frame.getpixel((640, 360)) == (255, 255, 255)


def test_subtitle_band_is_bottom_share():
    frame = Image.new("RGB", (1280, 720))
    crop = crop_subtitle_band(frame, GEOMETRY)
    rest = remove_subtitle_band(frame, GEOMETRY)

    assert crop.size == (1280, int(720 * 0.32))
    assert rest.size[1] + crop.size[1] == 720


def test_decode_converts_to_rgb():
    buffer = io.BytesIO()
    Image.new("RGBA", (10, 10), (1, 2, 3, 128)).save(buffer, format="PNG")
    assert decode_image(buffer.getvalue()).mode == "RGB"


class TestFrameTransformer:

    def test_primary_frame_stores_crop_and_normalized(self, storage):
        transformer = FrameTransformer(storage, GEOMETRY)
        transformer.transform("job1", _entry("7.jpg"), make_png(), keep_crop=True)

        keys = [key for key, _ in storage.list_prefix("jobs/job1/")]
        assert keys == ["jobs/job1/crops/7.png", "jobs/job1/normalized/7.jpg"]

        crop = Image.open(io.BytesIO(storage.get_bytes("jobs/job1/crops/7.png")))
        assert crop.format == "PNG"
        assert crop.size == (1280, int(720 * 0.32))

    def test_variant_frame_only_stores_crop(self, storage):
        transformer = FrameTransformer(storage, GEOMETRY)
        transformer.transform("job1", _entry("7.1.png", archived=False), make_png(), keep_crop=True)

        keys = [key for key, _ in storage.list_prefix("jobs/job1/")]
        assert keys == ["jobs/job1/crops/7.1.png"]

    def test_subtitle_removal_stores_cropped_frame(self, storage):
        transformer = FrameTransformer(storage, GEOMETRY)
        transformer.transform("job2", _entry("3.png"), make_png(), keep_crop=False, keep_without_subtitles=True)

        keys = [key for key, _ in storage.list_prefix("jobs/job2/")]
        assert keys == ["jobs/job2/cropped/3.png", "jobs/job2/normalized/3.png"]
        cropped = Image.open(io.BytesIO(storage.get_bytes("jobs/job2/cropped/3.png")))
        assert cropped.size == (1280, 720 - int(720 * 0.32))

    def test_thumbnail_fits_inside_box(self, storage):
        transformer = FrameTransformer(storage, GEOMETRY)
        frame = normalize_frame(decode_image(make_png()), GEOMETRY)

        key = transformer.store_thumbnail("job3", frame)

        assert key == "jobs/job3/thumbnail.jpg"
        thumb = Image.open(io.BytesIO(storage.get_bytes(key)))
        assert thumb.format == "JPEG"
        assert max(thumb.size) <= 200

    def test_thumbnail_failure_is_swallowed(self, storage, monkeypatch):
        transformer = FrameTransformer(storage, GEOMETRY)

        def boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(storage, "put_bytes", boom)
        assert transformer.store_thumbnail("job4", Image.new("RGB", (10, 10))) is None
