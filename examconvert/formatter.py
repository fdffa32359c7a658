"""
Document Formatter
==================
Reformats one classified file to its slot constraint.

Image slots:
    decode → upright RGB → cover-fit & centre-crop to width×height →
    encode with a size search until the byte ceiling is met.

Document slots (PDF):
    PDF input is first rewritten losslessly; if still too large its pages
    are rasterized at decreasing DPI and rebuilt from JPEG pages.
    Image input becomes a single A4 page.

Size search (JPEG):
    quality MAX_QUALITY first; if over the ceiling, the floor MIN_QUALITY is
    tried; if the floor fits, a binary search finds the highest integer
    quality whose output fits. No randomness: identical input and constraint
    always select the same output.

Size search (PNG):
    optimized full colour, then palettes of 256 → 16 colours.
"""

from __future__ import annotations

import io
import logging
from typing import Callable, Optional, Sequence

import fitz  # PyMuPDF
from PIL import Image, ImageOps

from .codecs import open_image, open_pdf, render_first_page, render_page, sniff_format
from .exceptions import (
    ConstraintUnsatisfiableError,
    DecodeFailureError,
    UnsupportedCombinationError,
)
from .models import FormattedResult, OutputFormat, RawFile, Slot, SlotConstraint

logger = logging.getLogger(__name__)

MAX_QUALITY = 95
MIN_QUALITY = 20
PALETTE_STEPS = (256, 128, 64, 32, 16)
PDF_RENDER_DPI = (150, 110, 72)
PDF_INPUT_RENDER_DPI = 150

# A4 in PDF points
A4_PORTRAIT = (595, 842)

ProgressCallback = Callable[[float], None]


class _ProgressReporter:
    """Clamps reports to [0, 100] and drops values that would go backwards."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self._callback = callback
        self._last = 0.0

    def report(self, value: float):
        value = max(0.0, min(100.0, float(value)))
        if value < self._last:
            return
        self._last = value
        if self._callback:
            self._callback(value)


class DocumentFormatter:
    """
    Deterministic resize / re-encode / compress stage.

    Usage:
        formatter = DocumentFormatter()
        result = formatter.format(raw_file, exam.constraint_for(Slot.PHOTO))
    """

    def __init__(
        self,
        max_quality: int = MAX_QUALITY,
        min_quality: int = MIN_QUALITY,
        pdf_render_dpi: Sequence[int] = PDF_RENDER_DPI,
    ):
        if not 1 <= min_quality <= max_quality <= 100:
            raise ValueError(
                f"Invalid quality range: {min_quality}..{max_quality}"
            )
        self.max_quality = max_quality
        self.min_quality = min_quality
        self.pdf_render_dpi = tuple(pdf_render_dpi)

    def format(
        self,
        raw: RawFile,
        constraint: SlotConstraint,
        on_progress: Optional[ProgressCallback] = None,
    ) -> FormattedResult:
        """
        Produce output satisfying the constraint's size, dimensions and format.

        Args:
            raw: Source file.
            constraint: Target slot constraint.
            on_progress: Optional callable(value) with non-decreasing values.

        Raises:
            DecodeFailureError: Source unreadable.
            ConstraintUnsatisfiableError: Ceiling not met at the quality floor.
            UnsupportedCombinationError: Slot/format cannot be produced.
        """
        reporter = _ProgressReporter(on_progress)
        self._check_supported(constraint)

        source_format = sniff_format(raw.content) if raw.content else None
        if source_format is None:
            raise DecodeFailureError(f"{raw.name}: unrecognized or empty input")

        reporter.report(5)
        if constraint.format is OutputFormat.PDF:
            result = self._format_pdf(raw, source_format, constraint, reporter)
        else:
            image = self._decode_image(raw, source_format)
            reporter.report(20)
            fitted = ImageOps.fit(
                image,
                (constraint.width, constraint.height),
                method=Image.Resampling.LANCZOS,
                centering=(0.5, 0.5),
            )
            reporter.report(35)
            result = self._encode_image(fitted, constraint, reporter)

        logger.info(
            f"{raw.name}: formatted to {result.format.value} "
            f"{result.size_bytes} bytes (ceiling {constraint.max_size_bytes}, "
            f"quality {result.quality})"
        )
        reporter.report(100)
        return result

    # ─── Validation ───────────────────────────────────────────────────────

    def _check_supported(self, constraint: SlotConstraint):
        if constraint.slot is Slot.UNKNOWN:
            raise UnsupportedCombinationError(
                "Files classified as unknown cannot be formatted"
            )
        if constraint.slot in (Slot.PHOTO, Slot.SIGNATURE):
            if not constraint.format.is_raster:
                raise UnsupportedCombinationError(
                    f"{constraint.slot.value} slot cannot be produced as "
                    f"{constraint.format.value}"
                )
        if constraint.format.is_raster and constraint.dimensions is None:
            raise UnsupportedCombinationError(
                f"{constraint.slot.value} slot requires width and height "
                f"for {constraint.format.value} output"
            )

    def _decode_image(self, raw: RawFile, source_format: str) -> Image.Image:
        try:
            if source_format == "pdf":
                return render_first_page(raw.content, PDF_INPUT_RENDER_DPI)
            return open_image(raw.content)
        except ValueError as e:
            raise DecodeFailureError(f"{raw.name}: {e}") from e

    # ─── Raster Encoding ──────────────────────────────────────────────────

    def _encode_image(
        self,
        image: Image.Image,
        constraint: SlotConstraint,
        reporter: _ProgressReporter,
    ) -> FormattedResult:
        if constraint.format is OutputFormat.JPEG:
            data, quality = self._search_quality(
                lambda q: encode_jpeg(image, q),
                constraint.max_size_bytes,
                reporter,
                start=35,
                end=95,
            )
        else:
            data, quality = self._search_palette(
                image, constraint.max_size_bytes, reporter
            )

        return FormattedResult(
            content=data,
            format=constraint.format,
            width=image.width,
            height=image.height,
            quality=quality,
        )

    def _search_quality(
        self,
        encode: Callable[[int], bytes],
        ceiling: int,
        reporter: _ProgressReporter,
        start: float,
        end: float,
    ) -> tuple[bytes, int]:
        """Highest quality in [min_quality, max_quality] whose output fits."""
        # 2 probes plus at most log2(range) bisection steps
        span = self.max_quality - self.min_quality
        total_steps = 2 + max(1, span).bit_length()
        step = 0

        def advance():
            nonlocal step
            step += 1
            reporter.report(start + (end - start) * min(step / total_steps, 1.0))

        best = encode(self.max_quality)
        advance()
        if len(best) <= ceiling:
            return best, self.max_quality

        floor = encode(self.min_quality)
        advance()
        if len(floor) > ceiling:
            raise ConstraintUnsatisfiableError(
                f"Cannot reach {ceiling} bytes: {len(floor)} bytes at "
                f"minimum quality {self.min_quality}"
            )

        # Invariant: `lo` fits, everything above `hi` does not
        lo, hi = self.min_quality, self.max_quality - 1
        best, best_quality = floor, self.min_quality
        while lo < hi:
            mid = (lo + hi + 1) // 2
            data = encode(mid)
            advance()
            if len(data) <= ceiling:
                lo = mid
                best, best_quality = data, mid
            else:
                hi = mid - 1

        return best, best_quality

    def _search_palette(
        self,
        image: Image.Image,
        ceiling: int,
        reporter: _ProgressReporter,
    ) -> tuple[bytes, Optional[int]]:
        candidates: list[Optional[int]] = [None, *PALETTE_STEPS]
        last_size = 0
        for idx, colors in enumerate(candidates):
            source = image if colors is None else image.quantize(colors=colors)
            data = encode_png(source)
            reporter.report(35 + 60 * (idx + 1) / len(candidates))
            if len(data) <= ceiling:
                return data, colors
            last_size = len(data)

        raise ConstraintUnsatisfiableError(
            f"Cannot reach {ceiling} bytes: {last_size} bytes with a "
            f"{PALETTE_STEPS[-1]}-colour palette"
        )

    # ─── PDF Output ───────────────────────────────────────────────────────

    def _format_pdf(
        self,
        raw: RawFile,
        source_format: str,
        constraint: SlotConstraint,
        reporter: _ProgressReporter,
    ) -> FormattedResult:
        ceiling = constraint.max_size_bytes

        if source_format == "pdf":
            try:
                doc = open_pdf(raw.content)
            except ValueError as e:
                raise DecodeFailureError(f"{raw.name}: {e}") from e
            try:
                page_count = doc.page_count
                data = doc.tobytes(
                    garbage=4, deflate=True, clean=True, no_new_id=True
                )
                reporter.report(20)
                if len(data) <= ceiling:
                    return FormattedResult(
                        content=data,
                        format=OutputFormat.PDF,
                        page_count=page_count,
                    )
                logger.debug(
                    f"{raw.name}: lossless rewrite is {len(data)} bytes, "
                    f"rasterizing"
                )
                page_sizes = [(p.rect.width, p.rect.height) for p in doc]

                def render(dpi: int) -> list[Image.Image]:
                    return [render_page(p, dpi) for p in doc]

                return self._rasterized_pdf(
                    render, page_sizes, ceiling, reporter
                )
            finally:
                doc.close()

        image = self._decode_image(raw, source_format)
        reporter.report(20)
        page_size = A4_PORTRAIT
        if image.width > image.height:
            page_size = (A4_PORTRAIT[1], A4_PORTRAIT[0])

        def render(dpi: int) -> list[Image.Image]:
            box = (
                round(page_size[0] * dpi / 72),
                round(page_size[1] * dpi / 72),
            )
            if image.width <= box[0] and image.height <= box[1]:
                return [image]
            return [ImageOps.contain(image, box, Image.Resampling.LANCZOS)]

        return self._rasterized_pdf(render, [page_size], ceiling, reporter)

    def _rasterized_pdf(
        self,
        render: Callable[[int], list[Image.Image]],
        page_sizes: list[tuple[float, float]],
        ceiling: int,
        reporter: _ProgressReporter,
    ) -> FormattedResult:
        steps = len(self.pdf_render_dpi)
        last_error: Optional[ConstraintUnsatisfiableError] = None

        for idx, dpi in enumerate(self.pdf_render_dpi):
            pages = render(dpi)
            start = 20 + 75 * idx / steps
            end = 20 + 75 * (idx + 1) / steps
            try:
                data, quality = self._search_quality(
                    lambda q: build_pdf(pages, page_sizes, q),
                    ceiling,
                    reporter,
                    start=start,
                    end=end,
                )
            except ConstraintUnsatisfiableError as e:
                logger.debug(f"PDF at {dpi} dpi does not fit: {e}")
                last_error = e
                continue
            return FormattedResult(
                content=data,
                format=OutputFormat.PDF,
                page_count=len(pages),
                quality=quality,
            )

        raise ConstraintUnsatisfiableError(
            f"Cannot reach {ceiling} bytes even at "
            f"{self.pdf_render_dpi[-1]} dpi: {last_error}"
        )


# ─── Encoders ─────────────────────────────────────────────────────────────────


def encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=quality, optimize=True)
    return buf.getvalue()


def encode_png(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG", optimize=True)
    return buf.getvalue()


def build_pdf(
    pages: list[Image.Image],
    page_sizes: list[tuple[float, float]],
    quality: int,
) -> bytes:
    """Assemble a PDF with one JPEG image per page."""
    out = fitz.open()
    try:
        for image, (width, height) in zip(pages, page_sizes):
            page = out.new_page(width=width, height=height)
            page.insert_image(
                page.rect,
                stream=encode_jpeg(image, quality),
                keep_proportion=True,
            )
        return out.tobytes(garbage=4, deflate=True, no_new_id=True)
    finally:
        out.close()
