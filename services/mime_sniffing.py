"""
MIME Sniffing Service - content-based type detection for uploads

Detection never looks at the client filename or the declared content type.
Layers, first specific answer wins:
- filetype: pure-Python magic-number matcher over the first 8KB
- ISOBMFF ftyp brands for HEIF/HEIC images
- python-magic (libmagic): lazily initialized, thread-safe, optional at runtime
- text heuristics for markup/JSON that both libraries report as text/plain
- application/octet-stream as the last resort
"""

import json
import threading
from dataclasses import dataclass
from typing import Any, Optional, cast

try:
    import magic
    MAGIC_AVAILABLE = True
except ImportError:
    MAGIC_AVAILABLE = False
    magic = None

import filetype

from config.policies import CategoryPolicy, normalize_mime
from models.schemas import Rejected, RejectionKind
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MimeCheck:
    detected_mime: str
    rejection: Optional[Rejected] = None


class MimeSniffingService:
    """Determines the real MIME type of an upload and checks it against policy."""

    FILETYPE_SAMPLE_SIZE = 8192
    MAGIC_SAMPLE_SIZE = 16384
    TEXT_SAMPLE_SIZE = 1024
    FALLBACK_MIME = "application/octet-stream"

    # Results too vague to stop at
    GENERIC_MIME_TYPES = {
        "application/octet-stream",
        "text/plain",
        "unknown",
        "",
    }

    # ISOBMFF major brands of still images and image sequences
    HEIF_BRANDS = {
        b"heic": "image/heic",
        b"heif": "image/heif",
        b"mif1": "image/heif",
        b"msf1": "image/heif",
    }

    def __init__(self, use_magic: bool = True):
        self._magic_lock = threading.Lock()
        self._magic: Optional[Any] = None
        self._magic_available = MAGIC_AVAILABLE and use_magic
        self._magic_init_attempted = not self._magic_available
        self._magic_init_error: Optional[str] = None if self._magic_available else "disabled or not installed"

    def sniff(
        self,
        file_data: bytes,
        policy: CategoryPolicy,
        declared_mime: Optional[str] = None,
    ) -> MimeCheck:
        detected = self.detect(file_data)
        declared = normalize_mime(declared_mime)

        if declared and declared != detected:
            logger.info("Declared MIME differs from content | Declared: %s | Detected: %s", declared, detected)

        if not policy.allows_mime(detected):
            return MimeCheck(
                detected,
                Rejected(
                    kind=RejectionKind.MIME_MISMATCH,
                    message=f"Detected content type '{detected}' is not allowed for this category",
                ),
            )

        return MimeCheck(detected)

    def detect(self, file_data: bytes) -> str:
        """Best normalized MIME type for ``file_data``."""
        filetype_mime = self._detect_with_filetype(file_data[: self.FILETYPE_SAMPLE_SIZE])
        if filetype_mime and filetype_mime not in self.GENERIC_MIME_TYPES:
            return filetype_mime

        heif_mime = self._detect_heif_brand(file_data)
        if heif_mime:
            return heif_mime

        magic_mime = self._detect_with_magic(file_data[: self.MAGIC_SAMPLE_SIZE])
        if magic_mime and magic_mime not in self.GENERIC_MIME_TYPES:
            return magic_mime

        text_mime = self._detect_text_format(file_data[: self.TEXT_SAMPLE_SIZE])
        if text_mime:
            logger.debug("Text format detection improved result: %s", text_mime)
            return text_mime

        return magic_mime or self.FALLBACK_MIME

    def _detect_with_filetype(self, sample: bytes) -> Optional[str]:
        try:
            kind = filetype.guess(sample)
        except TypeError as e:
            logger.debug("Filetype detection failed: %s", e)
            return None
        if kind is None:
            return None
        return normalize_mime(kind.mime)

    def _detect_heif_brand(self, file_data: bytes) -> Optional[str]:
        # filetype only knows heic-branded files; libmagic misses the plain heif brand
        if len(file_data) >= 12 and file_data[4:8] == b"ftyp":
            return self.HEIF_BRANDS.get(file_data[8:12])
        return None

    def _ensure_magic_initialized(self) -> bool:
        """Lazily create the libmagic handle (double-checked under the lock)."""
        if self._magic_init_attempted:
            return self._magic_available

        with self._magic_lock:
            if self._magic_init_attempted:
                return self._magic_available

            self._magic_init_attempted = True
            try:
                self._magic = cast(Any, magic).Magic(mime=True)
                self._magic_available = True
                logger.info("python-magic initialized successfully")
            except Exception as e:
                # libmagic missing or broken at runtime; filetype still works
                self._magic_available = False
                self._magic_init_error = str(e)
                logger.warning("Failed to initialize python-magic: %s. Continuing with filetype only.", e)

        return self._magic_available

    def _detect_with_magic(self, sample: bytes) -> Optional[str]:
        if not sample or not self._ensure_magic_initialized():
            return None

        try:
            with self._magic_lock:
                detected = cast(Any, self._magic).from_buffer(sample)
        except Exception as e:
            logger.error("Magic detection failed: %s", e, exc_info=True)
            return None

        return normalize_mime(detected)

    def _detect_text_format(self, sample: bytes) -> Optional[str]:
        """Markup and JSON that magic libraries tend to call text/plain."""
        text = sample.decode("utf-8", errors="ignore").strip().lower()
        if not text:
            return None

        if "<!doctype html" in text or "<html" in text:
            return "text/html"

        if text.startswith("<?xml"):
            if "<svg" in text:
                return "image/svg+xml"
            return "text/xml"

        if "<svg" in text:
            return "image/svg+xml"

        if (text.startswith("{") and text.endswith("}")) or (text.startswith("[") and text.endswith("]")):
            try:
                json.loads(sample.decode("utf-8"))
                return "application/json"
            except ValueError:
                pass

        return None
