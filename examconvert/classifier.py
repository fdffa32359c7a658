"""
Document Classifier
===================
Assigns each input file to one of the exam's document slots.

Scoring is a pure function of the file bytes, its name and the exam's slot
vocabulary, so the same input always yields the same slot and confidence:

    PDF container                 → document
    Image, portrait-shaped        → photo (face colour at the centre helps)
    Image, wide & mostly blank    → signature
    Image, page-shaped & white    → document
    Filename keywords add a strong hint for any slot.

A best score below CONFIDENCE_THRESHOLD yields `unknown`, which the
coordinator parks in `needs-review`.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePath
from typing import Union

from PIL import Image, ImageStat

from .codecs import is_accepted, open_image, pdf_page_count, sniff_format
from .exam_configs import resolve_exam
from .exceptions import ClassificationError
from .models import ClassificationResult, ExamConfig, RawFile, Slot

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 0.5
PDF_CONFIDENCE = 0.95

# Pixel value at or above which a grey level counts as "white paper"
WHITE_LEVEL = 220
FEATURE_SAMPLE_SIZE = (64, 64)
# Share of width/height trimmed from each edge for the centre features
CENTER_MARGIN = 0.2
# Wider than A4 (0.71) and Letter (0.77), narrower than a square
PORTRAIT_ASPECT = (0.78, 0.95)

FILENAME_HINT_WEIGHT = 0.5

FILENAME_KEYWORDS: dict[Slot, tuple[str, ...]] = {
    Slot.PHOTO: (
        "photo", "photograph", "pic", "picture", "passport",
        "selfie", "face", "portrait",
    ),
    Slot.SIGNATURE: ("sign", "signature", "sig", "autograph"),
    Slot.DOCUMENT: (
        "certificate", "cert", "marksheet", "document", "doc", "id",
        "aadhaar", "aadhar", "pan", "proof", "caste", "domicile",
    ),
}

# Tie-break order
_SLOT_ORDER = (Slot.PHOTO, Slot.SIGNATURE, Slot.DOCUMENT)

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


def filename_hint(name: str) -> set[Slot]:
    """Slots whose keywords appear in the file name."""
    stem = PurePath(name).stem.lower()
    tokens = [t for t in _TOKEN_SPLIT.split(stem) if t]
    hits: set[Slot] = set()
    for slot, keywords in FILENAME_KEYWORDS.items():
        for token in tokens:
            if any(
                token == kw or (len(kw) >= 4 and token.startswith(kw))
                for kw in keywords
            ):
                hits.add(slot)
                break
    return hits


def _white_and_saturation(sample: Image.Image) -> tuple[float, float]:
    histogram = sample.convert("L").histogram()
    total = sum(histogram) or 1
    white_fraction = sum(histogram[WHITE_LEVEL:]) / total
    saturation = ImageStat.Stat(sample.convert("HSV")).mean[1] / 255.0
    return white_fraction, saturation


def image_features(image: Image.Image) -> dict[str, float]:
    """
    Size-independent features computed on a small fixed-size sample.

    The `center_*` values come from the middle of the frame, where a
    portrait's face and shoulders sit, so a plain studio background does
    not dominate them.
    """
    width, height = image.size
    sample = image.resize(FEATURE_SAMPLE_SIZE, Image.Resampling.BILINEAR)
    white_fraction, saturation = _white_and_saturation(sample)

    margin_x = int(width * CENTER_MARGIN)
    margin_y = int(height * CENTER_MARGIN)
    center = image.crop(
        (margin_x, margin_y, width - margin_x, height - margin_y)
    ).resize(FEATURE_SAMPLE_SIZE, Image.Resampling.BILINEAR)
    center_white, center_saturation = _white_and_saturation(center)

    return {
        "aspect": width / height,
        "white_fraction": white_fraction,
        "saturation": saturation,
        "center_white": center_white,
        "center_saturation": center_saturation,
        "pixels": float(width * height),
    }


def score_slots(features: dict[str, float]) -> dict[Slot, float]:
    """Feature-only score per slot, before filename hints."""
    aspect = features["aspect"]
    white = features["white_fraction"]
    saturation = features["saturation"]

    # Portrait frames squarer than a page are photos on shape alone
    photo = 0.0
    if PORTRAIT_ASPECT[0] <= aspect <= PORTRAIT_ASPECT[1]:
        photo += 0.5
    elif 0.65 <= aspect < PORTRAIT_ASPECT[0]:
        photo += 0.35
    if features["center_saturation"] >= 0.1:
        photo += 0.15
    if features["center_white"] < 0.5:
        photo += 0.1

    signature = 0.0
    if aspect >= 1.8:
        signature += 0.35
    if white >= 0.6:
        signature += 0.15
    if saturation < 0.1:
        signature += 0.1

    document = 0.0
    if 0.65 <= aspect <= 0.8 or 1.25 <= aspect <= 1.6:
        document += 0.2
    if white >= 0.6:
        document += 0.2
    if saturation < 0.1:
        document += 0.1
    if features["pixels"] >= 1_000_000:
        document += 0.1

    return {Slot.PHOTO: photo, Slot.SIGNATURE: signature, Slot.DOCUMENT: document}


class DocumentClassifier:
    """
    Pure, idempotent slot classifier.

    Usage:
        classifier = DocumentClassifier()
        result = classifier.classify(raw_file, "upsc")
    """

    def __init__(self, threshold: float = CONFIDENCE_THRESHOLD):
        self.threshold = threshold

    def classify(
        self,
        raw: RawFile,
        exam: Union[str, ExamConfig],
    ) -> ClassificationResult:
        """
        Classify a file against an exam's slot vocabulary.

        Raises:
            ClassificationError: Empty, corrupt, unsupported or
                not-accepted input.
            UnknownExamError: If `exam` is an unknown identifier.
        """
        config = resolve_exam(exam)

        if not raw.content:
            raise ClassificationError("File is empty", raw.name)

        detected = sniff_format(raw.content)
        if detected is None:
            raise ClassificationError(
                "Unsupported or unrecognized file container", raw.name
            )
        if not is_accepted(detected, config.allowed_formats):
            raise ClassificationError(
                f"{detected.upper()} files are not accepted for {config.name} "
                f"(accepted: {', '.join(config.allowed_formats)})",
                raw.name,
            )

        if detected == "pdf":
            return self._classify_pdf(raw, config)
        return self._classify_image(raw, config, detected)

    def _classify_pdf(
        self, raw: RawFile, config: ExamConfig
    ) -> ClassificationResult:
        try:
            pages = pdf_page_count(raw.content)
        except ValueError as e:
            raise ClassificationError(str(e), raw.name) from e

        if Slot.DOCUMENT not in config.slots:
            return ClassificationResult(
                slot=Slot.UNKNOWN,
                confidence=0.0,
                detected_format="pdf",
                page_count=pages,
                reasons=(f"{config.name} has no document slot",),
            )

        logger.debug(f"{raw.name}: PDF with {pages} page(s) -> document")
        return ClassificationResult(
            slot=Slot.DOCUMENT,
            confidence=PDF_CONFIDENCE,
            detected_format="pdf",
            page_count=pages,
            reasons=("PDF container",),
        )

    def _classify_image(
        self, raw: RawFile, config: ExamConfig, detected: str
    ) -> ClassificationResult:
        try:
            image = open_image(raw.content)
        except ValueError as e:
            raise ClassificationError(str(e), raw.name) from e

        features = image_features(image)
        scores = score_slots(features)
        reasons = [
            f"aspect={features['aspect']:.2f}",
            f"white={features['white_fraction']:.2f}",
            f"saturation={features['saturation']:.2f}",
        ]

        hints = filename_hint(raw.name)
        for slot in _SLOT_ORDER:
            if slot not in hints:
                continue
            scores[slot] += FILENAME_HINT_WEIGHT
            reasons.append(f"filename suggests {slot.value}")

        candidates = [s for s in _SLOT_ORDER if s in config.slots]
        best_slot = Slot.UNKNOWN
        best_score = 0.0
        for slot in candidates:
            if scores[slot] > best_score:
                best_slot, best_score = slot, scores[slot]

        confidence = round(min(best_score, 1.0), 2)
        if best_score < self.threshold:
            reasons.append("no slot reached the confidence threshold")
            best_slot = Slot.UNKNOWN

        logger.debug(
            f"{raw.name}: {image.width}x{image.height} -> "
            f"{best_slot.value} ({confidence})"
        )
        return ClassificationResult(
            slot=best_slot,
            confidence=confidence,
            detected_format=detected,
            width=image.width,
            height=image.height,
            reasons=tuple(reasons),
        )
