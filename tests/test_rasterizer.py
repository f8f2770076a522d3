import base64
import io

import pytest
from PIL import Image

from pdf_to_text import (
    ImageEncodingError,
    PageIndexError,
    PageRasterizer,
    PdfToTextError,
    bgra_to_rgba,
    strip_row_padding,
)


def test_bgra_to_rgba_swaps_red_and_blue():
    bgra = bytes([1, 2, 3, 4, 10, 20, 30, 40])
    assert bgra_to_rgba(bgra) == bytes([3, 2, 1, 4, 30, 20, 10, 40])


def test_bgra_to_rgba_is_an_involution():
    bgra = bytes(range(256)) * 4
    assert bgra_to_rgba(bgra_to_rgba(bgra)) == bgra


def test_bgra_to_rgba_rejects_partial_pixels():
    with pytest.raises(ImageEncodingError):
        bgra_to_rgba(b"\x00\x01\x02")


def test_strip_row_padding():
    # 2x2 image, stride padded to 12 bytes per row
    raw = b"ABCDEFGH" + b"pppp" + b"IJKLMNOP" + b"pppp"
    assert strip_row_padding(raw, 2, 2, 12) == b"ABCDEFGHIJKLMNOP"
    assert strip_row_padding(b"ABCDEFGH", 2, 1, 8) == b"ABCDEFGH"


def test_strip_row_padding_rejects_narrow_stride():
    with pytest.raises(ImageEncodingError):
        strip_row_padding(b"\x00" * 8, 2, 1, 4)


class FakeRasterizer(PageRasterizer):
    """Serves a fixed BGRA buffer instead of rendering through PDFium."""

    def __init__(self, width, height, bgra, pages=1):
        self.scale = 1.0
        self._pdf = None
        self.frame = (width, height, bgra)
        self.pages = pages

    @property
    def page_count(self):
        return self.pages

    def render_bgra(self, page_index):
        self.check_index(page_index)
        return self.frame


def test_render_encodes_rgba_png():
    # one blue, one red pixel in BGRA order
    bgra = bytes([255, 0, 0, 255, 0, 0, 255, 128])
    raster = FakeRasterizer(2, 1, bgra).render(0)
    assert (raster.width, raster.height) == (2, 1)
    assert raster.pixels == bytes([0, 0, 255, 255, 255, 0, 0, 128])

    img = Image.open(io.BytesIO(raster.png))
    assert img.mode == "RGBA"
    assert img.getpixel((0, 0)) == (0, 0, 255, 255)
    assert img.getpixel((1, 0)) == (255, 0, 0, 128)


def test_render_data_url():
    url = FakeRasterizer(1, 1, bytes(4)).render_data_url(0)
    prefix = "data:image/png;base64,"
    assert url.startswith(prefix)
    assert base64.b64decode(url[len(prefix):]).startswith(b"\x89PNG")


def test_render_rejects_size_mismatch():
    with pytest.raises(ImageEncodingError):
        FakeRasterizer(2, 2, bytes(12)).render(0)


@pytest.mark.parametrize("index", [-1, 3])
def test_fake_out_of_range(index):
    with pytest.raises(PageIndexError):
        FakeRasterizer(1, 1, bytes(4), pages=3).render(index)


def test_renders_real_pdf_page(make_image_pdf):
    path = make_image_pdf([(60, 80), (40, 30)])
    with PageRasterizer(path, scale=1.0) as rasterizer:
        assert rasterizer.page_count == 2
        raster = rasterizer.render(1)
    assert (raster.width, raster.height) == (40, 30)
    assert len(raster.pixels) == 40 * 30 * 4
    img = Image.open(io.BytesIO(raster.png))
    img.load()
    assert img.size == (40, 30)
    assert img.tobytes() == raster.pixels


def test_render_scale_multiplies_size(make_image_pdf):
    path = make_image_pdf([(20, 10)])
    with PageRasterizer(path, scale=2.0) as rasterizer:
        raster = rasterizer.render(0)
    assert (raster.width, raster.height) == (40, 20)


@pytest.mark.parametrize("index", [-1, 1, 5])
def test_real_pdf_out_of_range(make_image_pdf, index):
    path = make_image_pdf([(20, 20)])
    with PageRasterizer(path, scale=1.0) as rasterizer:
        with pytest.raises(PageIndexError):
            rasterizer.render(index)
        # still usable after the failure
        assert rasterizer.render(0).width == 20


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        PageRasterizer(tmp_path / "missing.pdf")


def test_closed_rasterizer(make_image_pdf):
    rasterizer = PageRasterizer(make_image_pdf([(20, 20)]), scale=1.0)
    rasterizer.close()
    rasterizer.close()
    with pytest.raises(PdfToTextError, match="closed"):
        rasterizer.render(0)
