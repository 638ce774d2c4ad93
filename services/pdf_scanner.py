from typing import Optional, Sequence, Tuple

from models.schemas import Rejected, RejectionKind
from utils.logger import get_logger

logger = get_logger(__name__)

PDF_MIME = "application/pdf"

# (marker, threat description), checked in order; first hit wins
ACTIVE_CONTENT_MARKERS: Tuple[Tuple[bytes, str], ...] = (
    (b"/JavaScript", "embedded JavaScript"),
    (b"/JS", "embedded JavaScript"),
    (b"/Launch", "launch action"),
    (b"/EmbeddedFile", "embedded file"),
    (b"/OpenAction", "automatic open action"),
    (b"/AA", "additional actions"),
    (b"/RichMedia", "rich media"),
    (b"/XFA", "XFA form"),
    (b"/AcroForm", "AcroForm"),
)


class PdfActiveContentScanner:
    """
    Byte-level search for PDF active-content markers.

    Not a PDF parser: a marker inside a comment is still a hit, and markers
    hidden in compressed or obfuscated streams are missed.
    """

    def __init__(self, markers: Sequence[Tuple[bytes, str]] = ACTIVE_CONTENT_MARKERS):
        self.markers = tuple((marker.lower(), description) for marker, description in markers)

    @staticmethod
    def applies_to(detected_mime: str, extension: str) -> bool:
        return detected_mime == PDF_MIME or extension == "pdf"

    def find_threat(self, file_data: bytes) -> Optional[str]:
        content = file_data.lower()
        for marker, description in self.markers:
            if marker in content:
                logger.debug("PDF marker hit | Marker: %s", marker.decode("latin-1"))
                return description
        return None

    def scan(self, file_data: bytes) -> Optional[Rejected]:
        threat = self.find_threat(file_data)
        if threat is None:
            return None
        return Rejected(
            kind=RejectionKind.ACTIVE_CONTENT_DETECTED,
            message=f"PDF contains potentially dangerous content: {threat}",
            detail=threat,
        )
