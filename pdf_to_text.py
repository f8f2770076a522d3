#!/usr/bin/env python3
"""
Convert a PDF to plain text using its text layer, or vision-model transcription
when the text layer is too thin.

Usage:
  python pdf_to_text.py input.pdf output.txt
  python pdf_to_text.py input.pdf output.txt --mode ocr --pages 1-3

Environment:
  OPENAI_API_KEY=...  (required only when pages need transcription)

Dependencies:
  pip install pdfplumber pypdfium2 requests
"""

from __future__ import annotations

import argparse
import base64
import json
import logging
import os
import random
import re
import signal
import sys
import threading
import time
import zlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, TextIO, Tuple, Union

import pdfplumber
import pypdfium2 as pdfium
import pypdfium2.raw as pdfium_c
import requests

API_URL = "https://api.openai.com/v1/responses"
DEFAULT_MODEL = "gpt-4.1-mini"
API_KEY_ENV = "OPENAI_API_KEY"
SCRIPT_VERSION = "1.0.0"

EFFECTIVE_CHAR_THRESHOLD = 200
PAGE_CHAR_THRESHOLD = 50

# 1.0 == 72 DPI; 4.0 renders at 288 DPI, close enough to the 300 DPI target.
RENDER_SCALE = 4.0

PAGE_MARKER = "=== Page {page} ==="
EMPTY_CONTENT_MARKER = "[No text returned]"
ERROR_MARKER = "[Error processing page {page}: {reason}]"

MAX_ATTEMPTS = 6
BASE_DELAY_MS = 1000
MAX_DELAY_MS = 60000
JITTER_RATIO = 0.25
REQUEST_TIMEOUT = 300
ERROR_BODY_LIMIT = 500
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})
# Failures on the wire; malformed URLs and headers stay terminal.
RETRYABLE_ERRORS = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
    requests.exceptions.ContentDecodingError,
)

TRANSCRIPTION_PROMPT = (
    "Transcribe every visible character in the image verbatim. "
    "Keep the original line breaks and punctuation. "
    "Do not explain, do not add or complete words, do not guess. "
    "Write [illegible] for any text you cannot read."
)

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

logger = logging.getLogger("pdf_to_text")


def configure_logging(quiet: bool, log_level: str) -> None:
    if logger.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.propagate = False
    if quiet:
        logger.setLevel(logging.WARNING)
    else:
        logger.setLevel(LOG_LEVELS.get(log_level.upper(), logging.INFO))


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PdfToTextError(Exception):
    """Base class for every failure raised by this tool."""


class PageIndexError(PdfToTextError, IndexError):
    pass


class ImageEncodingError(PdfToTextError, ValueError):
    pass


class MissingCredentialError(PdfToTextError):
    pass


class OperationCancelled(PdfToTextError):
    pass


class TranscriptionError(PdfToTextError):
    """Terminal failure of one page's transcription call.

    ``status_code`` is ``None`` for network-level failures; ``body`` holds the
    response body cut down to ``ERROR_BODY_LIMIT`` characters.
    """

    def __init__(
        self,
        message: str,
        page: int,
        attempts: int,
        status_code: Optional[int] = None,
        body: str = "",
    ) -> None:
        super().__init__(message)
        self.page = page
        self.attempts = attempts
        self.status_code = status_code
        self.body = body


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SufficiencyVerdict:
    requires_transcription: bool
    effective_chars: int
    threshold: int = EFFECTIVE_CHAR_THRESHOLD


@dataclass
class RasterImage:
    width: int
    height: int
    pixels: bytes
    png: bytes

    @property
    def data_url(self) -> str:
        return png_data_url(self.png)


@dataclass(frozen=True)
class InputText:
    text: str
    type: str = field(default="input_text", init=False)

    def to_json(self) -> dict:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class InputImage:
    image_url: str
    type: str = field(default="input_image", init=False)

    def to_json(self) -> dict:
        return {"type": self.type, "image_url": self.image_url}


ContentItem = Union[InputText, InputImage]


@dataclass(frozen=True)
class TranscriptionRequest:
    model: str
    instruction: str
    image_url: str

    def content(self) -> List[ContentItem]:
        return [InputText(self.instruction), InputImage(self.image_url)]

    def payload(self) -> dict:
        return {
            "model": self.model,
            "input": [
                {
                    "role": "user",
                    "content": [item.to_json() for item in self.content()],
                }
            ],
        }


@dataclass
class RetryState:
    attempt: int = 0
    last_delay_ms: int = 0


@dataclass
class PageStat:
    page: int
    method: str
    seconds: float
    chars: int
    attempts: int = 0
    error: Optional[str] = None


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Text sufficiency
# ---------------------------------------------------------------------------


def count_effective_chars(text: Optional[str]) -> int:
    if not text:
        return 0
    return sum(1 for ch in text if not ch.isspace())


def decide_sufficiency(
    page_texts: Iterable[Optional[str]], threshold: int = EFFECTIVE_CHAR_THRESHOLD
) -> SufficiencyVerdict:
    """Classify the whole document at once.

    Counts are summed over every page before comparing, so one dense page
    can carry a document full of blank scans past the threshold.
    """
    total = sum(count_effective_chars(text) for text in page_texts)
    return SufficiencyVerdict(
        requires_transcription=total < threshold,
        effective_chars=total,
        threshold=threshold,
    )


def sparse_pages(
    page_texts: Dict[int, str], threshold: int = PAGE_CHAR_THRESHOLD
) -> List[int]:
    """Page numbers whose own text layer falls below *threshold*."""
    return sorted(
        page for page, text in page_texts.items()
        if count_effective_chars(text) < threshold
    )


# ---------------------------------------------------------------------------
# PNG encoding
# ---------------------------------------------------------------------------

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
ZLIB_HEADER = b"\x78\x9c"
PNG_COLOR_TYPE_RGBA = 6
MAX_PNG_DIMENSION = 2**31 - 1


def _be32(value: int) -> bytes:
    return value.to_bytes(4, "big")


def png_chunk(tag: bytes, payload: bytes) -> bytes:
    # CRC covers tag + payload, not the length field.
    crc = zlib.crc32(payload, zlib.crc32(tag))
    return _be32(len(payload)) + tag + payload + _be32(crc & 0xFFFFFFFF)


def zlib_wrap(data: bytes, level: int = 6) -> bytes:
    compressor = zlib.compressobj(level, zlib.DEFLATED, -zlib.MAX_WBITS)
    deflated = compressor.compress(data) + compressor.flush()
    return ZLIB_HEADER + deflated + _be32(zlib.adler32(data) & 0xFFFFFFFF)


def filter_rows(rgba: bytes, width: int, height: int) -> bytes:
    """Prefix every scanline with filter type 0."""
    stride = width * 4
    out = bytearray(height * (stride + 1))
    for y in range(height):
        dst = y * (stride + 1)
        out[dst + 1 : dst + 1 + stride] = rgba[y * stride : (y + 1) * stride]
    return bytes(out)


def encode_png(rgba: bytes, width: int, height: int, level: int = 6) -> bytes:
    if not (0 < width <= MAX_PNG_DIMENSION and 0 < height <= MAX_PNG_DIMENSION):
        raise ImageEncodingError(
            f"Image dimensions must be between 1 and {MAX_PNG_DIMENSION}, "
            f"got {width}x{height}"
        )
    expected = width * height * 4
    if len(rgba) != expected:
        raise ImageEncodingError(
            f"RGBA buffer is {len(rgba)} bytes, expected {expected} "
            f"for {width}x{height}"
        )

    ihdr = (
        _be32(width)
        + _be32(height)
        + bytes([8, PNG_COLOR_TYPE_RGBA, 0, 0, 0])
    )
    idat = zlib_wrap(filter_rows(rgba, width, height), level=level)
    return (
        PNG_SIGNATURE
        + png_chunk(b"IHDR", ihdr)
        + png_chunk(b"IDAT", idat)
        + png_chunk(b"IEND", b"")
    )


def png_data_url(png: bytes) -> str:
    b64 = base64.b64encode(png).decode("ascii")
    return f"data:image/png;base64,{b64}"


# ---------------------------------------------------------------------------
# Rasterization
# ---------------------------------------------------------------------------


def bgra_to_rgba(bgra: bytes) -> bytes:
    if len(bgra) % 4:
        raise ImageEncodingError(
            f"BGRA buffer length {len(bgra)} is not a multiple of 4"
        )
    rgba = bytearray(bgra)
    rgba[0::4] = bgra[2::4]
    rgba[2::4] = bgra[0::4]
    return bytes(rgba)


def strip_row_padding(raw: bytes, width: int, height: int, stride: int) -> bytes:
    row = width * 4
    if stride == row:
        return bytes(raw[: row * height])
    if stride < row:
        raise ImageEncodingError(f"Bitmap stride {stride} is narrower than row {row}")
    return b"".join(raw[y * stride : y * stride + row] for y in range(height))


class PageRasterizer:
    """Renders pages of one PDF to in-memory PNG images."""

    def __init__(self, pdf_path: Path, scale: float = RENDER_SCALE) -> None:
        if not pdf_path.exists():
            raise FileNotFoundError(str(pdf_path))
        self.pdf_path = pdf_path
        self.scale = scale
        self._pdf: Optional[pdfium.PdfDocument] = pdfium.PdfDocument(str(pdf_path))

    def __enter__(self) -> "PageRasterizer":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._pdf is not None:
            self._pdf.close()
            self._pdf = None

    @property
    def page_count(self) -> int:
        if self._pdf is None:
            raise PdfToTextError("Rasterizer is closed")
        return len(self._pdf)

    def check_index(self, page_index: int) -> None:
        count = self.page_count
        if not 0 <= page_index < count:
            raise PageIndexError(
                f"Page index {page_index} out of range (document has {count} pages)"
            )

    def render_bgra(self, page_index: int) -> Tuple[int, int, bytes]:
        self.check_index(page_index)
        page = self._pdf[page_index]
        try:
            bitmap = page.render(
                scale=self.scale,
                force_bitmap_format=pdfium_c.FPDFBitmap_BGRA,
            )
            try:
                width, height, stride = bitmap.width, bitmap.height, bitmap.stride
                raw = bytes(bitmap.buffer)
            finally:
                bitmap.close()
        finally:
            page.close()
        return width, height, strip_row_padding(raw, width, height, stride)

    def render(self, page_index: int) -> RasterImage:
        width, height, bgra = self.render_bgra(page_index)
        rgba = bgra_to_rgba(bgra)
        return RasterImage(
            width=width,
            height=height,
            pixels=rgba,
            png=encode_png(rgba, width, height),
        )

    def render_data_url(self, page_index: int) -> str:
        return self.render(page_index).data_url


# ---------------------------------------------------------------------------
# Transcription client
# ---------------------------------------------------------------------------


def backoff_delay_ms(attempt: int, rng: Optional[random.Random] = None) -> int:
    """Delay to wait before *attempt* (2-based: the first retry is attempt 2)."""
    base = min(BASE_DELAY_MS * (2 ** max(attempt - 2, 0)), MAX_DELAY_MS)
    if rng is None:
        return base
    jitter = rng.uniform(-JITTER_RATIO, JITTER_RATIO)
    return int(base * (1.0 + jitter))


def _message_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        return "\n".join(part for part in parts if part)
    return ""


def parse_transcription_response(data: object) -> str:
    if not isinstance(data, dict):
        return EMPTY_CONTENT_MARKER

    parts: List[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if (
                isinstance(content, dict)
                and content.get("type") == "output_text"
                and isinstance(content.get("text"), str)
            ):
                parts.append(content["text"])

    if not parts:
        # Chat-completions shaped responses.
        for choice in data.get("choices") or []:
            if not isinstance(choice, dict):
                continue
            message = choice.get("message")
            if isinstance(message, dict):
                text = _message_text(message.get("content"))
                if text:
                    parts.append(text)

    text = "\n".join(parts)
    return text if text else EMPTY_CONTENT_MARKER


class TranscriptionClient:
    def __init__(
        self,
        api_key: str,
        api_url: str = API_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = REQUEST_TIMEOUT,
        max_attempts: int = MAX_ATTEMPTS,
        instruction: str = TRANSCRIPTION_PROMPT,
        rng: Optional[random.Random] = None,
        sleep: Optional[Callable[[float], None]] = None,
        cancel: Optional[threading.Event] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key or not api_key.strip():
            raise MissingCredentialError("API key cannot be empty")
        self.api_url = api_url
        self.model = model
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.instruction = instruction
        self.rng = rng if rng is not None else random.Random()
        self.sleep = sleep or time.sleep
        self.cancel = cancel
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {api_key.strip()}",
                "Content-Type": "application/json",
            }
        )

    def __enter__(self) -> "TranscriptionClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def _pause(self, seconds: float, page_number: int) -> None:
        if self.cancel is None:
            self.sleep(seconds)
            return
        if self.cancel.wait(seconds):
            raise OperationCancelled(
                f"Cancelled while waiting to retry page {page_number}"
            )

    def _retry_or_fail(
        self,
        state: RetryState,
        page_number: int,
        reason: str,
        status_code: Optional[int] = None,
        body: str = "",
    ) -> None:
        if state.attempt >= self.max_attempts:
            raise TranscriptionError(
                f"Transcription failed for page {page_number} after "
                f"{state.attempt} attempt(s): {reason}",
                page=page_number,
                attempts=state.attempt,
                status_code=status_code,
                body=body,
            )
        state.last_delay_ms = backoff_delay_ms(state.attempt + 1, self.rng)
        logger.warning(
            "Page %d: %s - retry %d/%d in %dms",
            page_number,
            reason,
            state.attempt,
            self.max_attempts,
            state.last_delay_ms,
        )
        self._pause(state.last_delay_ms / 1000.0, page_number)

    def transcribe(self, image_data_url: str, page_number: int) -> str:
        payload = TranscriptionRequest(
            model=self.model,
            instruction=self.instruction,
            image_url=image_data_url,
        ).payload()
        state = RetryState()

        while True:
            state.attempt += 1
            try:
                response = self.session.post(
                    self.api_url, json=payload, timeout=self.timeout
                )
            except RETRYABLE_ERRORS as exc:
                kind = "Timeout" if isinstance(exc, requests.Timeout) else "Network error"
                self._retry_or_fail(state, page_number, f"{kind}: {exc}")
                continue
            except requests.RequestException as exc:
                raise TranscriptionError(
                    f"Transcription request for page {page_number} failed: {exc}",
                    page=page_number,
                    attempts=state.attempt,
                ) from exc

            if 200 <= response.status_code < 300:
                try:
                    data = response.json()
                except ValueError as exc:
                    body = response.text[:ERROR_BODY_LIMIT]
                    raise TranscriptionError(
                        f"Invalid JSON in response for page {page_number}. Body: {body}",
                        page=page_number,
                        attempts=state.attempt,
                        status_code=response.status_code,
                        body=body,
                    ) from exc
                logger.debug(
                    "Page %d transcribed after %d attempt(s)", page_number, state.attempt
                )
                return parse_transcription_response(data)

            body = response.text[:ERROR_BODY_LIMIT]
            reason = f"HTTP {response.status_code}. Body: {body}"
            if response.status_code not in RETRYABLE_STATUS:
                raise TranscriptionError(
                    f"Transcription failed for page {page_number}: {reason}",
                    page=page_number,
                    attempts=state.attempt,
                    status_code=response.status_code,
                    body=body,
                )
            self._retry_or_fail(
                state, page_number, reason, status_code=response.status_code, body=body
            )


# ---------------------------------------------------------------------------
# Page selection and text extraction
# ---------------------------------------------------------------------------


def parse_pages_arg(pages_arg: str) -> List[int]:
    """
    Parse page list like: "20" or "2,20-21,34".
    Returns 1-based page numbers.
    """
    pages: List[int] = []
    if not pages_arg:
        return pages
    for part in re.split(r"[,\s]+", pages_arg.strip()):
        if not part:
            continue
        if "-" in part:
            start_str, end_str = part.split("-", 1)
            start = int(start_str)
            end = int(end_str)
            if start > end:
                start, end = end, start
            pages.extend(range(start, end + 1))
        else:
            pages.append(int(part))
    return sorted(set(p for p in pages if p > 0))


def resolve_pages(total_pages: int, include_pages: str, skip_pages: str) -> List[int]:
    include = parse_pages_arg(include_pages)
    skip = set(parse_pages_arg(skip_pages))

    if include:
        selected = [p for p in include if 1 <= p <= total_pages and p not in skip]
    else:
        selected = [p for p in range(1, total_pages + 1) if p not in skip]

    return sorted(set(selected))


def page_list(value: str) -> str:
    """argparse type for --pages/--skip-pages; keeps the raw string."""
    try:
        parse_pages_arg(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid page list {value!r} (expected e.g. 1,3-5)"
        ) from None
    return value


def extract_page_texts(pdf_path: Path) -> List[str]:
    with pdfplumber.open(str(pdf_path)) as pdf:
        return [
            page.extract_text(x_tolerance=2, y_tolerance=2) or "" for page in pdf.pages
        ]


# ---------------------------------------------------------------------------
# Output assembly
# ---------------------------------------------------------------------------


def write_page(out_file: TextIO, page_number: int, content: str) -> None:
    out_file.write(f"{PAGE_MARKER.format(page=page_number)}\n{content}\n\n")
    out_file.flush()


def plan_transcription(
    mode: str,
    granularity: str,
    texts_by_page: Dict[int, str],
    verdict: SufficiencyVerdict,
    page_threshold: int,
) -> List[int]:
    if mode == "text":
        return []
    if mode == "ocr":
        return sorted(texts_by_page)
    if granularity == "page":
        return sparse_pages(texts_by_page, page_threshold)
    return sorted(texts_by_page) if verdict.requires_transcription else []


def convert_pdf_to_text(
    pdf_path: Path,
    out_path: Path,
    mode: str = "auto",
    granularity: str = "document",
    threshold: int = EFFECTIVE_CHAR_THRESHOLD,
    page_threshold: int = PAGE_CHAR_THRESHOLD,
    include_pages: str = "",
    skip_pages: str = "",
    api_key: Optional[str] = None,
    api_url: str = API_URL,
    model: str = DEFAULT_MODEL,
    timeout: float = REQUEST_TIMEOUT,
    max_attempts: int = MAX_ATTEMPTS,
    scale: float = RENDER_SCALE,
    client: Optional[TranscriptionClient] = None,
    cancel: Optional[threading.Event] = None,
    stats_out: Optional[Path] = None,
    config_snapshot: Optional[dict] = None,
) -> dict:
    if not pdf_path.exists():
        raise FileNotFoundError(str(pdf_path))

    start_time = time.monotonic()
    start_iso = now_iso()

    logger.info("Extracting text layer from %s", pdf_path)
    page_texts = extract_page_texts(pdf_path)
    total_pages = len(page_texts)
    selected_pages = resolve_pages(total_pages, include_pages, skip_pages)
    if total_pages and not selected_pages:
        raise PdfToTextError("No pages selected. Check --pages/--skip-pages options.")
    texts_by_page = {page: page_texts[page - 1] for page in selected_pages}
    logger.info("Selected %d/%d pages", len(selected_pages), total_pages)

    verdict = decide_sufficiency(texts_by_page.values(), threshold)
    logger.info(
        "Effective characters: %d (threshold: %d)",
        verdict.effective_chars,
        verdict.threshold,
    )
    ocr_pages = set(
        plan_transcription(mode, granularity, texts_by_page, verdict, page_threshold)
    )
    if ocr_pages:
        logger.info(
            "Transcribing %d page(s) (mode=%s, granularity=%s)",
            len(ocr_pages),
            mode,
            granularity,
        )
    else:
        logger.info("Using text layer for all pages")

    owns_client = False
    if ocr_pages and client is None:
        if not api_key:
            raise MissingCredentialError(
                "Transcription required but no API key configured. "
                f"Set {API_KEY_ENV} or pass --api-key."
            )
        client = TranscriptionClient(
            api_key,
            api_url=api_url,
            model=model,
            timeout=timeout,
            max_attempts=max_attempts,
            cancel=cancel,
        )
        owns_client = True

    stats: List[PageStat] = []
    rasterizer: Optional[PageRasterizer] = None
    out_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        if ocr_pages:
            rasterizer = PageRasterizer(pdf_path, scale=scale)
        with out_path.open("w", encoding="utf-8", newline="\n") as out_file:
            for page_number in selected_pages:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled(
                        f"Cancelled before page {page_number}/{total_pages}"
                    )
                page_start = time.monotonic()
                if page_number not in ocr_pages:
                    content = texts_by_page[page_number]
                    stat = PageStat(page_number, "text", 0.0, len(content))
                else:
                    content, stat = _transcribe_page(
                        rasterizer, client, page_number, total_pages
                    )
                write_page(out_file, page_number, content)
                stat.seconds = round(time.monotonic() - page_start, 3)
                stats.append(stat)
    finally:
        if rasterizer is not None:
            rasterizer.close()
        if owns_client and client is not None:
            client.close()

    error_pages = [stat.page for stat in stats if stat.error]
    summary = {
        "total_pages": total_pages,
        "selected_pages": len(selected_pages),
        "effective_chars": verdict.effective_chars,
        "requires_transcription": verdict.requires_transcription,
        "text_pages": sum(1 for stat in stats if stat.method == "text"),
        "ocr_pages": sum(1 for stat in stats if stat.method == "ocr"),
        "error_pages": error_pages,
        "elapsed_seconds": round(time.monotonic() - start_time, 3),
    }
    logger.info(
        "Completed conversion in %.1fs (pages=%d, errors=%d)",
        summary["elapsed_seconds"],
        len(selected_pages),
        len(error_pages),
    )

    if stats_out:
        write_stats(
            stats_out,
            pdf_path=pdf_path,
            out_path=out_path,
            config=config_snapshot or {},
            start_iso=start_iso,
            summary=summary,
            stats=stats,
        )
    return summary


def _transcribe_page(
    rasterizer: PageRasterizer,
    client: TranscriptionClient,
    page_number: int,
    total_pages: int,
) -> Tuple[str, PageStat]:
    logger.info("Processing page %d/%d", page_number, total_pages)
    image = rasterizer.render(page_number - 1)
    logger.debug(
        "Page %d rendered %dx%d (%d KB)",
        page_number,
        image.width,
        image.height,
        len(image.png) // 1024,
    )
    try:
        content = client.transcribe(image.data_url, page_number)
    except TranscriptionError as exc:
        logger.error("Page %d failed: %s", page_number, exc)
        content = ERROR_MARKER.format(page=page_number, reason=exc)
        return content, PageStat(
            page_number, "error", 0.0, len(content), exc.attempts, str(exc)
        )
    logger.info("Page %d: received %d characters", page_number, len(content))
    return content, PageStat(page_number, "ocr", 0.0, len(content))


def write_stats(
    stats_out: Path,
    pdf_path: Path,
    out_path: Path,
    config: dict,
    start_iso: str,
    summary: dict,
    stats: Sequence[PageStat],
) -> None:
    stats_out.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "config": config,
        "pdf": str(pdf_path),
        "output": str(out_path),
        "start_time": start_iso,
        "end_time": now_iso(),
        "summary": summary,
        "pages": [asdict(stat) for stat in stats],
    }
    stats_out.write_text(
        json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8"
    )


def build_config_snapshot(args: argparse.Namespace, api_key: Optional[str]) -> dict:
    return {
        "version": SCRIPT_VERSION,
        "mode": args.mode,
        "granularity": args.granularity,
        "threshold": args.threshold,
        "page_threshold": args.page_threshold,
        "pages": args.pages,
        "skip_pages": args.skip_pages,
        "api_url": args.api_url,
        "model": args.model,
        "timeout": args.timeout,
        "max_attempts": args.max_attempts,
        "scale": args.scale,
        "api_key_set": bool(api_key),
    }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="pdf-to-text",
        description="Convert PDF to plain text using the text layer, or vision-model transcription when it is missing.",
    )
    parser.add_argument("pdf", help="Input PDF path")
    parser.add_argument("out", help="Output text path")
    parser.add_argument(
        "--mode",
        default="auto",
        choices=["auto", "text", "ocr"],
        help="auto=decide from the text layer, text=never transcribe, ocr=always transcribe",
    )
    parser.add_argument(
        "--granularity",
        default="document",
        choices=["document", "page"],
        help="Decide once for the whole document, or transcribe only sparse pages",
    )
    parser.add_argument(
        "--threshold",
        type=int,
        default=EFFECTIVE_CHAR_THRESHOLD,
        help="Min non-whitespace chars for the document text layer to be used",
    )
    parser.add_argument(
        "--page-threshold",
        type=int,
        default=PAGE_CHAR_THRESHOLD,
        help="Min non-whitespace chars per page with --granularity page",
    )
    parser.add_argument(
        "--pages",
        type=page_list,
        default="",
        help="Process only these pages, e.g. 1,3-5",
    )
    parser.add_argument(
        "--skip-pages", type=page_list, default="", help="Skip pages, e.g. 2,10-12"
    )
    parser.add_argument(
        "--api-key", default=None, help=f"API key (default: ${API_KEY_ENV})"
    )
    parser.add_argument(
        "--api-url", default=API_URL, help=f"Transcription API URL (default: {API_URL})"
    )
    parser.add_argument("--model", default=DEFAULT_MODEL, help="Vision model name")
    parser.add_argument(
        "--timeout",
        type=float,
        default=REQUEST_TIMEOUT,
        help="Per-attempt request timeout in seconds",
    )
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=MAX_ATTEMPTS,
        help="Max transcription attempts per page",
    )
    parser.add_argument(
        "--scale",
        type=float,
        default=RENDER_SCALE,
        help="Render scale for transcription (1.0 = 72 DPI)",
    )
    parser.add_argument(
        "--stats-out", default=None, help="Write per-page stats JSON to this path"
    )
    parser.add_argument("--quiet", action="store_true", help="Suppress progress output")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=sorted(LOG_LEVELS.keys()),
        help="Log verbosity for progress output",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.quiet, args.log_level)

    pdf_path = Path(args.pdf)
    out_path = Path(args.out)
    if not pdf_path.is_file():
        print(f"Error: Input file not found: {pdf_path}", file=sys.stderr)
        return 1

    api_key = (args.api_key or os.getenv(API_KEY_ENV, "")).strip() or None

    cancel = threading.Event()
    previous_handler = None
    if threading.current_thread() is threading.main_thread():
        previous_handler = signal.signal(
            signal.SIGTERM, lambda signum, frame: cancel.set()
        )

    try:
        summary = convert_pdf_to_text(
            pdf_path=pdf_path,
            out_path=out_path,
            mode=args.mode,
            granularity=args.granularity,
            threshold=args.threshold,
            page_threshold=args.page_threshold,
            include_pages=args.pages,
            skip_pages=args.skip_pages,
            api_key=api_key,
            api_url=args.api_url,
            model=args.model,
            timeout=args.timeout,
            max_attempts=args.max_attempts,
            scale=args.scale,
            cancel=cancel,
            stats_out=Path(args.stats_out) if args.stats_out else None,
            config_snapshot=build_config_snapshot(args, api_key),
        )
    except Exception as exc:
        logger.debug("Conversion failed", exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)

    if not args.quiet:
        print(
            "Summary: "
            f"pages={summary['selected_pages']}, text={summary['text_pages']}, "
            f"ocr={summary['ocr_pages']}, errors={len(summary['error_pages'])}"
        )
        if summary["error_pages"]:
            print(f"Failed pages: {summary['error_pages']}")
        print(f"Output: {out_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
