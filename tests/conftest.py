"""Shared fixtures: small on-disk PDFs and a stub random source."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List

import pytest
from PIL import Image

import pdf_to_text

LOREM_LINES = [
    "Lorem ipsum dolor sit amet, consectetur adipiscing elit.",
    "Sed do eiusmod tempor incididunt ut labore et dolore magna.",
    "Ut enim ad minim veniam, quis nostrud exercitation ullamco.",
    "Duis aute irure dolor in reprehenderit in voluptate velit.",
    "Excepteur sint occaecat cupidatat non proident, sunt in culpa.",
]


def _escape_pdf_string(text: str) -> str:
    return text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")


def build_text_pdf(page_texts: List[str]) -> bytes:
    """Build a minimal PDF whose pages draw *page_texts* in Helvetica.

    An empty string produces a page with an empty content stream.
    """
    count = len(page_texts)
    kids = " ".join(f"{4 + 2 * i} 0 R" for i in range(count))
    objects: List[bytes] = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        f"<< /Type /Pages /Kids [{kids}] /Count {count} >>".encode("ascii"),
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    ]
    for i, text in enumerate(page_texts):
        lines = text.splitlines()
        if lines:
            shows = " ".join(f"({_escape_pdf_string(line)}) Tj T*" for line in lines)
            stream = f"BT /F1 10 Tf 14 TL 36 750 Td {shows} ET".encode("latin-1")
        else:
            stream = b""
        objects.append(
            (
                "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                "/Resources << /Font << /F1 3 0 R >> >> "
                f"/Contents {5 + 2 * i} 0 R >>"
            ).encode("ascii")
        )
        objects.append(
            b"<< /Length " + str(len(stream)).encode("ascii") + b" >>\nstream\n"
            + stream
            + b"\nendstream"
        )

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode("ascii") + body + b"\nendobj\n"
    xref_offset = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode("ascii")
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode("ascii")
    out += (
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\n"
        f"startxref\n{xref_offset}\n"
    ).encode("ascii")
    out += b"%%EOF\n"
    return bytes(out)


@pytest.fixture
def make_text_pdf(tmp_path: Path) -> Callable[..., Path]:
    def _make(page_texts: List[str], name: str = "text.pdf") -> Path:
        path = tmp_path / name
        path.write_bytes(build_text_pdf(page_texts))
        return path

    return _make


@pytest.fixture
def make_image_pdf(tmp_path: Path) -> Callable[..., Path]:
    """Image-only PDF (no text layer), one page per entry in *sizes*."""

    def _make(sizes: List[tuple], name: str = "scan.pdf") -> Path:
        path = tmp_path / name
        images = [Image.new("RGB", size, (250, 250, 250)) for size in sizes]
        images[0].save(
            path, "PDF", resolution=72.0, save_all=True, append_images=images[1:]
        )
        return path

    return _make


@pytest.fixture
def lorem_page() -> str:
    return "\n".join(LOREM_LINES)


class MidpointRandom:
    """Random source whose jitter is always zero."""

    def uniform(self, a: float, b: float) -> float:
        return (a + b) / 2.0


@pytest.fixture
def no_jitter() -> MidpointRandom:
    return MidpointRandom()


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    for handler in list(pdf_to_text.logger.handlers):
        pdf_to_text.logger.removeHandler(handler)
