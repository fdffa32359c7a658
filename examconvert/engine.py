"""
Conversion Engine
=================
Explicit, awaitable setup of the processing services.

Usage:
    engine = ConversionEngine(config)
    handle = await engine.initialize()
    # handle.classifier / handle.formatter / handle.packager are ready

Initialization probes the codecs the stages depend on (Pillow's JPEG and
zlib support, PyMuPDF's PDF writer). Any failure surfaces as an
InfrastructureError, which is fatal to the batch but can be retried.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

import fitz  # PyMuPDF
from PIL import features

from . import __version__
from .classifier import DocumentClassifier
from .exceptions import InfrastructureError
from .formatter import MAX_QUALITY, MIN_QUALITY, PDF_RENDER_DPI, DocumentFormatter
from .models import (
    ArchiveEntry,
    ClassificationResult,
    ExamConfig,
    FormattedResult,
    RawFile,
    SlotConstraint,
)
from .packager import ZipPackager

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


# ─── Stage Interfaces ─────────────────────────────────────────────────────────


class Classifier(Protocol):
    def classify(
        self, raw: RawFile, exam: Union[str, ExamConfig]
    ) -> ClassificationResult: ...


class Formatter(Protocol):
    def format(
        self,
        raw: RawFile,
        constraint: SlotConstraint,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> FormattedResult: ...


class Packager(Protocol):
    def package(self, entries: list[ArchiveEntry], exam_id: str = "") -> bytes: ...


# ─── Configuration ────────────────────────────────────────────────────────────


@dataclass
class EngineConfig:
    """Configuration for the conversion engine."""

    # Concurrency
    max_concurrent_formats: int = 2

    # Encoder search
    max_quality: int = MAX_QUALITY
    min_quality: int = MIN_QUALITY
    pdf_render_dpi: tuple[int, ...] = field(
        default_factory=lambda: tuple(PDF_RENDER_DPI)
    )

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Defaults with EXAMCONVERT_* environment overrides."""
        config = cls()

        workers = os.environ.get("EXAMCONVERT_MAX_WORKERS")
        if workers:
            config.max_concurrent_formats = max(1, int(workers))

        min_quality = os.environ.get("EXAMCONVERT_MIN_QUALITY")
        if min_quality:
            config.min_quality = int(min_quality)

        config.log_level = os.environ.get(
            "EXAMCONVERT_LOG_LEVEL", config.log_level
        )
        config.log_file = os.environ.get("EXAMCONVERT_LOG_FILE") or None
        return config


@dataclass
class EngineHandle:
    """Ready-to-use stage services, held by the coordinator for a run."""
    classifier: Classifier
    formatter: Formatter
    packager: Packager


# ─── Engine ───────────────────────────────────────────────────────────────────


class ConversionEngine:
    """
    Owns service construction and the one-time readiness probe.

    Stage implementations can be substituted (e.g. test doubles); the
    defaults are DocumentClassifier, DocumentFormatter and ZipPackager.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        classifier: Optional[Classifier] = None,
        formatter: Optional[Formatter] = None,
        packager: Optional[Packager] = None,
    ):
        self.config = config or EngineConfig()
        self._classifier = classifier
        self._formatter = formatter
        self._packager = packager
        self._handle: Optional[EngineHandle] = None
        self._setup_logging()

    @property
    def ready(self) -> bool:
        return self._handle is not None

    def invalidate(self):
        """Drop the cached handle so the next initialize() probes again."""
        if self._handle is not None:
            logger.warning("Conversion engine handle invalidated")
        self._handle = None

    def _setup_logging(self):
        """Configure logging based on config."""
        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        # Configure root logger for the package
        pkg_logger = logging.getLogger("examconvert")
        pkg_logger.setLevel(log_level)

        # Console handler
        if not pkg_logger.handlers:
            console = logging.StreamHandler()
            console.setLevel(log_level)
            console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
            pkg_logger.addHandler(console)

        # File handler
        if self.config.log_file:
            log_path = Path(self.config.log_file).resolve()
            already = any(
                isinstance(h, logging.FileHandler)
                and Path(h.baseFilename) == log_path
                for h in pkg_logger.handlers
            )
            if not already:
                log_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(log_path, encoding="utf-8")
                file_handler.setLevel(log_level)
                file_handler.setFormatter(
                    logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
                )
                pkg_logger.addHandler(file_handler)

    async def initialize(self) -> EngineHandle:
        """
        Probe the codecs and build the stage services.

        Returns:
            EngineHandle, cached after the first success.

        Raises:
            InfrastructureError: If any dependency is not usable.
        """
        if self._handle is not None:
            return self._handle

        logger.info(f"Initializing conversion engine v{__version__}")
        try:
            await asyncio.to_thread(self._probe)
            handle = EngineHandle(
                classifier=self._classifier or DocumentClassifier(),
                formatter=self._formatter or DocumentFormatter(
                    max_quality=self.config.max_quality,
                    min_quality=self.config.min_quality,
                    pdf_render_dpi=self.config.pdf_render_dpi,
                ),
                packager=self._packager or ZipPackager(),
            )
        except InfrastructureError:
            raise
        except Exception as e:
            logger.error(f"Engine initialization failed: {e}")
            raise InfrastructureError(
                f"Processing engine failed to initialize: {e}"
            ) from e

        self._handle = handle
        logger.info("Conversion engine ready")
        return handle

    def _probe(self):
        """Fail fast if an encoder the formatter relies on is missing."""
        for codec in ("jpg", "zlib"):
            if not features.check(codec):
                raise InfrastructureError(
                    f"Pillow was built without '{codec}' support"
                )

        doc = fitz.open()
        try:
            doc.new_page()
            doc.tobytes()
        finally:
            doc.close()
        logger.debug(f"PyMuPDF {fitz.VersionBind} available")
