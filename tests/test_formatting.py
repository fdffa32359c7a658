"""
Test Suite for the Processing Stages
====================================
Codec helpers, classifier, formatter, output validation and packaging.
"""

from __future__ import annotations

import io
import json
import zipfile
from datetime import date

import fitz
import pytest
from PIL import Image, ImageDraw, ImageOps

from examconvert.classifier import (
    DocumentClassifier,
    filename_hint,
    image_features,
    score_slots,
)
from examconvert.codecs import is_accepted, open_image, pdf_page_count, sniff_format
from examconvert.exam_configs import get_config
from examconvert.exceptions import (
    ClassificationError,
    ConstraintUnsatisfiableError,
    DecodeFailureError,
    FormattingErrorKind,
    PackagingError,
    UnknownExamError,
    UnsupportedCombinationError,
)
from examconvert.formatter import DocumentFormatter, encode_jpeg
from examconvert.models import (
    ArchiveEntry,
    BatchSnapshot,
    FileStatus,
    FormattedResult,
    OutputFormat,
    ProcessedFile,
    RawFile,
    Slot,
    SlotConstraint,
)
from examconvert.packager import ZipPackager, archive_name, plan_entries
from examconvert.state_machine import advance, fail
from examconvert.validator import ValidationEngine


# ─── Builders ─────────────────────────────────────────────────────────────────


def encode(image: Image.Image, fmt: str = "PNG", **params) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format=fmt, **params)
    return buf.getvalue()


def make_photo(width: int = 1000, height: int = 1150) -> Image.Image:
    red = Image.linear_gradient("L").resize((width, height))
    green = red.transpose(Image.Transpose.ROTATE_90).resize((width, height))
    blue = Image.new("L", (width, height), 60)
    return Image.merge("RGB", (red, green, blue))


def make_portrait(width: int = 1000, height: int = 1150) -> Image.Image:
    """Passport-style head and shoulders on a light studio background."""
    image = Image.new("RGB", (width, height), (235, 235, 235))
    draw = ImageDraw.Draw(image)
    draw.ellipse(
        [width * 0.05, height * 0.59, width * 0.95, height * 1.48],
        fill=(40, 45, 60),
    )
    draw.ellipse(
        [width * 0.32, height * 0.16, width * 0.68, height * 0.57],
        fill=(224, 172, 140),
    )
    return image


def make_noise(width: int, height: int) -> Image.Image:
    channels = [Image.effect_noise((width, height), 120) for _ in range(3)]
    return Image.merge("RGB", channels)


def make_signature(width: int = 600, height: int = 200) -> Image.Image:
    image = Image.new("RGB", (width, height), "white")
    draw = ImageDraw.Draw(image)
    draw.line([(20, 150), (150, 40), (300, 160), (580, 30)], fill="black", width=4)
    return image


def make_page(width: int = 1240, height: int = 1754) -> Image.Image:
    """A4-shaped white page with a few lines of 'text'."""
    image = Image.new("RGB", (width, height), "white")
    draw = ImageDraw.Draw(image)
    for y in range(150, 900, 60):
        draw.rectangle([100, y, width - 100, y + 12], fill=(40, 40, 40))
    return image


def make_pdf(pages: int = 1) -> bytes:
    doc = fitz.open()
    for n in range(pages):
        page = doc.new_page()
        page.insert_text((72, 72), f"Marksheet page {n + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def make_image_pdf(image: Image.Image) -> bytes:
    """PDF with one large losslessly embedded image."""
    doc = fitz.open()
    page = doc.new_page()
    page.insert_image(page.rect, stream=encode(image, "PNG"))
    data = doc.tobytes()
    doc.close()
    return data


def constraint(slot=Slot.PHOTO, fmt=OutputFormat.JPEG, width=200, height=230, kb=40):
    return SlotConstraint(
        slot=slot,
        format=fmt,
        width=width,
        height=height,
        max_size_bytes=kb * 1024,
    )


def completed(name: str, slot: Slot, index: int, fmt=OutputFormat.JPEG) -> ProcessedFile:
    record = ProcessedFile.from_raw(RawFile(name=name, content=name.encode()), index)
    record = advance(record, FileStatus.CLASSIFYING)
    record = advance(record, FileStatus.CLASSIFIED, slot=slot, confidence=0.9)
    record = advance(record, FileStatus.FORMATTING)
    return advance(
        record,
        FileStatus.COMPLETED,
        output=FormattedResult(content=f"out-{name}".encode(), format=fmt),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# CODEC TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestCodecs:
    """Test container sniffing and decoding."""

    def test_sniff_formats(self):
        assert sniff_format(encode(make_signature(), "JPEG")) == "jpeg"
        assert sniff_format(encode(make_signature(), "PNG")) == "png"
        assert sniff_format(make_pdf()) == "pdf"
        assert sniff_format(encode(make_signature(), "GIF")) == "gif"
        assert sniff_format(b"hello world") is None
        assert sniff_format(b"") is None

    def test_accepted_aliases(self):
        assert is_accepted("jpeg", ("jpg", "png"))
        assert not is_accepted("gif", ("jpg", "png", "pdf"))

    def test_open_image_flattens_transparency(self):
        rgba = Image.new("RGBA", (10, 10), (0, 0, 0, 0))
        image = open_image(encode(rgba, "PNG"))
        assert image.mode == "RGB"
        assert image.getpixel((5, 5)) == (255, 255, 255)

    def test_open_image_corrupt(self):
        data = encode(make_signature(), "JPEG")[:40]
        with pytest.raises(ValueError):
            open_image(data)

    def test_pdf_page_count(self):
        assert pdf_page_count(make_pdf(3)) == 3
        with pytest.raises(ValueError):
            pdf_page_count(b"%PDF-1.4 garbage")


# ═══════════════════════════════════════════════════════════════════════════════
# CLASSIFIER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestFilenameHints:
    """Test keyword hints taken from file names."""

    def test_keywords(self):
        assert filename_hint("my_photo.jpg") == {Slot.PHOTO}
        assert filename_hint("Signature-final.png") == {Slot.SIGNATURE}
        assert filename_hint("10th_marksheet.pdf") == {Slot.DOCUMENT}
        assert filename_hint("scan_001.png") == set()

    def test_short_keywords_need_exact_token(self):
        assert filename_hint("design.png") == set()
        assert filename_hint("pic.png") == {Slot.PHOTO}


class TestFeatureScoring:
    """Test the image feature heuristics."""

    def test_photo_features(self):
        scores = score_slots(image_features(make_photo()))
        assert scores[Slot.PHOTO] > scores[Slot.SIGNATURE]
        assert scores[Slot.PHOTO] > scores[Slot.DOCUMENT]

    def test_passport_portrait_features(self):
        features = image_features(make_portrait())
        assert features["center_white"] < 0.5
        assert features["center_saturation"] >= 0.1
        scores = score_slots(features)
        assert max(scores, key=scores.get) == Slot.PHOTO
        assert scores[Slot.PHOTO] >= 0.5

    def test_greyscale_portrait_features(self):
        grey = ImageOps.grayscale(make_portrait()).convert("RGB")
        scores = score_slots(image_features(grey))
        assert scores[Slot.PHOTO] >= 0.5
        assert scores[Slot.PHOTO] > scores[Slot.DOCUMENT]

    def test_signature_features(self):
        scores = score_slots(image_features(make_signature()))
        assert max(scores, key=scores.get) == Slot.SIGNATURE

    def test_document_features(self):
        scores = score_slots(image_features(make_page()))
        assert max(scores, key=scores.get) == Slot.DOCUMENT


class TestDocumentClassifier:
    """Test slot classification."""

    def setup_method(self):
        self.classifier = DocumentClassifier()

    def test_photo(self):
        raw = RawFile(name="candidate.png", content=encode(make_photo()))
        result = self.classifier.classify(raw, "upsc")
        assert result.slot == Slot.PHOTO
        assert result.detected_format == "png"
        assert (result.width, result.height) == (1000, 1150)
        assert 0.5 <= result.confidence <= 1.0

    def test_passport_portrait_without_filename_hint(self):
        raw = RawFile(name="IMG_0042.png", content=encode(make_portrait()))
        result = self.classifier.classify(raw, "upsc")
        assert result.slot == Slot.PHOTO
        assert result.confidence >= 0.5
        assert not any(r.startswith("filename") for r in result.reasons)

    def test_greyscale_portrait_is_photo(self):
        grey = ImageOps.grayscale(make_portrait()).convert("RGB")
        raw = RawFile(name="IMG_0042.png", content=encode(grey))
        assert self.classifier.classify(raw, "upsc").slot == Slot.PHOTO

    def test_filename_hints_listed_in_slot_order(self):
        raw = RawFile(name="photo_sign.jpg", content=encode(make_photo(), "JPEG"))
        reasons = self.classifier.classify(raw, "upsc").reasons
        hinted = [r for r in reasons if r.startswith("filename suggests")]
        assert hinted == [
            "filename suggests photo",
            "filename suggests signature",
        ]

    def test_signature_with_filename_hint(self):
        raw = RawFile(name="signature.jpg", content=encode(make_signature(), "JPEG"))
        result = self.classifier.classify(raw, "upsc")
        assert result.slot == Slot.SIGNATURE
        assert result.confidence == 1.0
        assert "filename suggests signature" in result.reasons

    def test_pdf_is_document(self):
        result = self.classifier.classify(
            RawFile(name="file.pdf", content=make_pdf(2)), "neet"
        )
        assert result.slot == Slot.DOCUMENT
        assert result.confidence == 0.95
        assert result.page_count == 2

    def test_ambiguous_image_is_unknown(self):
        grey = encode(Image.new("RGB", (400, 400), (128, 128, 128)))
        result = self.classifier.classify(
            RawFile(name="scan_001.png", content=grey), "upsc"
        )
        assert result.slot == Slot.UNKNOWN
        assert result.confidence < 0.5

    def test_idempotent(self):
        raw = RawFile(name="photo.png", content=encode(make_photo()))
        assert self.classifier.classify(raw, "jee") == self.classifier.classify(raw, "jee")

    def test_empty_file(self):
        with pytest.raises(ClassificationError, match="empty"):
            self.classifier.classify(RawFile(name="x.jpg", content=b""), "upsc")

    def test_unrecognized_container(self):
        with pytest.raises(ClassificationError):
            self.classifier.classify(
                RawFile(name="notes.txt", content=b"just text"), "upsc"
            )

    def test_format_not_accepted(self):
        gif = encode(make_signature(), "GIF")
        with pytest.raises(ClassificationError, match="not accepted"):
            self.classifier.classify(RawFile(name="sig.gif", content=gif), "upsc")

    def test_corrupt_image(self):
        data = encode(make_photo(), "PNG")[:100]
        with pytest.raises(ClassificationError):
            self.classifier.classify(RawFile(name="photo.png", content=data), "upsc")

    def test_unknown_exam(self):
        raw = RawFile(name="photo.png", content=encode(make_photo(200, 230)))
        with pytest.raises(UnknownExamError):
            self.classifier.classify(raw, "ssc")


# ═══════════════════════════════════════════════════════════════════════════════
# FORMATTER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestImageFormatting:
    """Test raster slot output."""

    def setup_method(self):
        self.formatter = DocumentFormatter()

    def test_upsc_photo(self):
        raw = RawFile(name="photo.png", content=encode(make_photo()))
        result = self.formatter.format(raw, get_config("upsc").constraint_for(Slot.PHOTO))

        assert result.format == OutputFormat.JPEG
        assert (result.width, result.height) == (200, 230)
        assert result.size_bytes <= 40 * 1024
        with Image.open(io.BytesIO(result.content)) as img:
            assert img.format == "JPEG"
            assert img.size == (200, 230)

    def test_quality_search_reaches_tight_ceiling(self):
        raw = RawFile(name="noise.png", content=encode(make_noise(600, 690)))
        target = constraint(width=400, height=460, kb=80)
        result = self.formatter.format(raw, target)

        assert result.size_bytes <= target.max_size_bytes
        assert 20 <= result.quality < 95

    def test_highest_fitting_quality_selected(self):
        raw = RawFile(name="noise.png", content=encode(make_noise(600, 690)))
        target = constraint(width=400, height=460, kb=80)
        result = self.formatter.format(raw, target)

        fitted = ImageOps.fit(
            open_image(raw.content), (400, 460), method=Image.Resampling.LANCZOS
        )
        assert encode_jpeg(fitted, result.quality) == result.content
        # One step higher breaks the ceiling
        assert len(encode_jpeg(fitted, result.quality + 1)) > target.max_size_bytes

    def test_unsatisfiable_ceiling(self):
        raw = RawFile(name="photo.png", content=encode(make_noise(400, 460)))
        target = SlotConstraint(
            slot=Slot.PHOTO,
            format=OutputFormat.JPEG,
            width=200,
            height=230,
            max_size_bytes=300,
        )
        with pytest.raises(ConstraintUnsatisfiableError) as exc:
            self.formatter.format(raw, target)
        assert exc.value.kind == FormattingErrorKind.CONSTRAINT_UNSATISFIABLE

    def test_landscape_input_is_cropped_not_stretched(self):
        raw = RawFile(name="wide.png", content=encode(make_signature(900, 200)))
        result = self.formatter.format(
            raw, constraint(Slot.SIGNATURE, width=140, height=60)
        )
        assert (result.width, result.height) == (140, 60)

    def test_png_signature(self):
        raw = RawFile(name="signature.png", content=encode(make_signature()))
        result = self.formatter.format(
            raw, get_config("gate").constraint_for(Slot.SIGNATURE)
        )
        assert result.format == OutputFormat.PNG
        with Image.open(io.BytesIO(result.content)) as img:
            assert img.format == "PNG"
            assert img.size == (480, 160)

    def test_deterministic(self):
        raw = RawFile(name="photo.png", content=encode(make_photo()))
        target = get_config("neet").constraint_for(Slot.PHOTO)
        assert self.formatter.format(raw, target) == self.formatter.format(raw, target)

    def test_progress_is_monotonic(self):
        raw = RawFile(name="noise.png", content=encode(make_noise(600, 690)))
        values: list[float] = []
        self.formatter.format(
            raw, constraint(width=400, height=460, kb=80), on_progress=values.append
        )

        assert values == sorted(values)
        assert values[-1] == 100
        assert all(0 <= v <= 100 for v in values)

    def test_pdf_source_for_photo_slot(self):
        raw = RawFile(name="photo.pdf", content=make_pdf())
        result = self.formatter.format(raw, constraint())
        assert (result.width, result.height) == (200, 230)

    def test_corrupt_source(self):
        raw = RawFile(name="photo.png", content=encode(make_photo())[:200])
        with pytest.raises(DecodeFailureError):
            self.formatter.format(raw, constraint())

    def test_empty_source(self):
        with pytest.raises(DecodeFailureError):
            self.formatter.format(RawFile(name="a.jpg", content=b""), constraint())

    def test_unsupported_combinations(self):
        raw = RawFile(name="photo.png", content=encode(make_photo(200, 230)))
        with pytest.raises(UnsupportedCombinationError):
            self.formatter.format(raw, constraint(Slot.UNKNOWN))
        with pytest.raises(UnsupportedCombinationError):
            self.formatter.format(
                raw, constraint(fmt=OutputFormat.PDF, width=None, height=None)
            )
        with pytest.raises(UnsupportedCombinationError):
            self.formatter.format(raw, constraint(width=None, height=None))

    def test_invalid_quality_range(self):
        with pytest.raises(ValueError):
            DocumentFormatter(max_quality=30, min_quality=50)


class TestPdfFormatting:
    """Test document slot output."""

    def setup_method(self):
        self.formatter = DocumentFormatter()

    def _document(self, kb: int) -> SlotConstraint:
        return SlotConstraint(
            slot=Slot.DOCUMENT, format=OutputFormat.PDF, max_size_bytes=kb * 1024
        )

    def test_small_pdf_rewritten_losslessly(self):
        raw = RawFile(name="marksheet.pdf", content=make_pdf(3))
        result = self.formatter.format(raw, self._document(300))

        assert result.format == OutputFormat.PDF
        assert result.page_count == 3
        assert result.quality is None
        assert pdf_page_count(result.content) == 3

    def test_large_pdf_rasterized_to_fit(self):
        raw = RawFile(name="scan.pdf", content=make_image_pdf(make_noise(1200, 1700)))
        assert len(raw.content) > 300 * 1024

        result = self.formatter.format(raw, self._document(300))
        assert result.size_bytes <= 300 * 1024
        assert result.quality is not None
        assert pdf_page_count(result.content) == 1

    def test_image_becomes_single_page_pdf(self):
        raw = RawFile(name="certificate.jpg", content=encode(make_page(), "JPEG"))
        result = self.formatter.format(raw, self._document(500))

        assert result.format == OutputFormat.PDF
        assert result.page_count == 1
        doc = fitz.open(stream=result.content, filetype="pdf")
        try:
            assert round(doc[0].rect.width) == 595
            assert round(doc[0].rect.height) == 842
        finally:
            doc.close()


# ═══════════════════════════════════════════════════════════════════════════════
# VALIDATION TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestValidationEngine:
    """Test output verification and batch reports."""

    def setup_method(self):
        self.validator = ValidationEngine()

    def test_valid_output(self):
        data = encode(Image.new("RGB", (200, 230), "white"), "JPEG")
        result = FormattedResult(
            content=data, format=OutputFormat.JPEG, width=200, height=230
        )
        assert self.validator.verify_output(result, constraint()) == []

    def test_wrong_dimensions_and_size(self):
        data = encode(make_noise(300, 300), "JPEG", quality=95)
        result = FormattedResult(content=data, format=OutputFormat.JPEG)
        problems = self.validator.verify_output(result, constraint(kb=1))

        assert any("exceeds" in p for p in problems)
        assert any("dimensions" in p for p in problems)

    def test_wrong_encoding(self):
        data = encode(Image.new("RGB", (200, 230), "white"), "PNG")
        result = FormattedResult(content=data, format=OutputFormat.JPEG)
        problems = self.validator.verify_output(result, constraint())
        assert any("PNG" in p for p in problems)

    def test_unreadable_pdf(self):
        result = FormattedResult(content=b"%PDF-broken", format=OutputFormat.PDF)
        target = SlotConstraint(
            slot=Slot.DOCUMENT, format=OutputFormat.PDF, max_size_bytes=1024
        )
        assert self.validator.verify_output(result, target)

    def test_batch_report(self):
        errored = fail(
            ProcessedFile.from_raw(RawFile(name="bad.jpg", content=b"x"), 1), "corrupt"
        )
        snapshot = BatchSnapshot(
            exam_id="upsc",
            files=(completed("photo.jpg", Slot.PHOTO, 0), errored),
        )
        report = self.validator.validate(snapshot)

        assert report.total_files == 2
        assert report.completed == 1
        assert report.errors == 1
        assert report.failed_files == ["bad.jpg"]
        assert report.success_rate == 50.0
        assert report.slot_breakdown == {"photo": 1}

    def test_empty_report(self):
        report = self.validator.validate(BatchSnapshot(exam_id="upsc"))
        assert report.total_files == 0
        assert report.success_rate == 0.0


# ═══════════════════════════════════════════════════════════════════════════════
# PACKAGER TESTS
# ═══════════════════════════════════════════════════════════════════════════════


class TestPackaging:
    """Test archive naming and ZIP output."""

    def test_archive_name(self):
        assert archive_name("upsc", date(2024, 5, 1)) == "UPSC_documents_2024-05-01.zip"

    def test_entry_names(self):
        files = [
            completed("B-marks.pdf", Slot.DOCUMENT, 0, OutputFormat.PDF),
            completed("me.png", Slot.PHOTO, 1),
            completed("a-cert.pdf", Slot.DOCUMENT, 2, OutputFormat.PDF),
            completed("sign.png", Slot.SIGNATURE, 3),
        ]
        entries = plan_entries(files)

        assert [(e.name, e.source_name) for e in entries] == [
            ("photo.jpg", "me.png"),
            ("signature.jpg", "sign.png"),
            ("document_1.pdf", "a-cert.pdf"),
            ("document_2.pdf", "B-marks.pdf"),
        ]

    def test_only_completed_files_packaged(self):
        pending = ProcessedFile.from_raw(RawFile(name="x.png", content=b"x"), 9)
        entries = plan_entries([completed("photo.png", Slot.PHOTO, 0), pending])
        assert [e.name for e in entries] == ["photo.jpg"]

    def test_entry_order_independent_of_input_order(self):
        files = [
            completed("one.pdf", Slot.DOCUMENT, 0, OutputFormat.PDF),
            completed("two.pdf", Slot.DOCUMENT, 1, OutputFormat.PDF),
        ]
        assert plan_entries(files) == plan_entries(list(reversed(files)))

    def test_zip_contents(self):
        entries = plan_entries([
            completed("photo.png", Slot.PHOTO, 0),
            completed("cert.pdf", Slot.DOCUMENT, 1, OutputFormat.PDF),
        ])
        data = ZipPackager().package(entries, "upsc")

        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            assert archive.namelist() == ["photo.jpg", "document.pdf", "manifest.json"]
            assert archive.read("photo.jpg") == b"out-photo.png"
            manifest = json.loads(archive.read("manifest.json"))
        assert manifest["exam"] == "upsc"
        assert [f["source"] for f in manifest["files"]] == ["photo.png", "cert.pdf"]

    def test_archive_is_reproducible(self):
        entries = plan_entries([completed("photo.png", Slot.PHOTO, 0)])
        packager = ZipPackager()
        assert packager.package(entries, "upsc") == packager.package(entries, "upsc")

    def test_without_manifest(self):
        entries = plan_entries([completed("photo.png", Slot.PHOTO, 0)])
        data = ZipPackager(include_manifest=False).package(entries)
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            assert archive.namelist() == ["photo.jpg"]

    def test_nothing_to_package(self):
        with pytest.raises(PackagingError):
            ZipPackager().package([])

    def test_duplicate_names(self):
        entry = ArchiveEntry(name="photo.jpg", content=b"x", slot=Slot.PHOTO)
        with pytest.raises(PackagingError):
            ZipPackager().package([entry, entry])
