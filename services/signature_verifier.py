"""
Magic-byte verification of the file header against its extension.

Each extension maps to one strategy:
- PrefixRule: header starts with one of the registered byte sequences
- RiffRule: RIFF container with a given form type at offset 8
- IsoBmffRule: ``ftyp`` box at offset 4, optionally restricted to brands

Extensions without a rule pass unverified.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Mapping, Optional, Tuple, Union

from models.schemas import Rejected, RejectionKind
from utils.logger import get_logger

logger = get_logger(__name__)

HEADER_SIZE = 16
MIN_HEADER_SIZE = 4


@dataclass(frozen=True)
class PrefixRule:
    prefixes: Tuple[bytes, ...]

    def matches(self, header: bytes) -> bool:
        return any(header.startswith(prefix) for prefix in self.prefixes)


@dataclass(frozen=True)
class RiffRule:
    form_type: bytes

    def matches(self, header: bytes) -> bool:
        return header[0:4] == b"RIFF" and header[8:12] == self.form_type


@dataclass(frozen=True)
class IsoBmffRule:
    brands: Optional[FrozenSet[bytes]] = None

    def matches(self, header: bytes) -> bool:
        if header[4:8] != b"ftyp":
            return False
        if self.brands is None:
            return True
        return header[8:12] in self.brands


SignatureRule = Union[PrefixRule, RiffRule, IsoBmffRule]

_JPEG = PrefixRule((b"\xff\xd8\xff",))
_HEIF_BRANDS = frozenset({b"heic", b"mif1", b"msf1", b"heif"})

DEFAULT_SIGNATURE_RULES: Dict[str, SignatureRule] = {
    # Images
    "jpg": _JPEG,
    "jpeg": _JPEG,
    "png": PrefixRule((b"\x89PNG\r\n\x1a\n",)),
    "gif": PrefixRule((b"GIF8",)),
    "bmp": PrefixRule((b"BM",)),
    "webp": RiffRule(b"WEBP"),
    "heic": IsoBmffRule(_HEIF_BRANDS),
    "heif": IsoBmffRule(_HEIF_BRANDS),
    # Documents
    "pdf": PrefixRule((b"%PDF",)),
    # Audio / video
    "mp3": PrefixRule((b"\xff\xfb", b"\xff\xfa", b"\xff\xf3", b"\xff\xf2", b"ID3")),
    "aac": PrefixRule((b"\xff\xf1", b"\xff\xf9")),
    "ogg": PrefixRule((b"OggS",)),
    "flac": PrefixRule((b"fLaC",)),
    "wav": RiffRule(b"WAVE"),
    "webm": PrefixRule((b"\x1a\x45\xdf\xa3",)),
    "mp4": IsoBmffRule(),
    "m4a": IsoBmffRule(),
}


class SignatureVerifier:
    def __init__(self, rules: Optional[Mapping[str, SignatureRule]] = None):
        self.rules: Mapping[str, SignatureRule] = dict(DEFAULT_SIGNATURE_RULES if rules is None else rules)

    def verify(self, header: bytes, extension: str) -> Optional[Rejected]:
        """Return a rejection when ``header`` does not match the rule for ``extension``."""
        rule = self.rules.get(extension.lower())
        if rule is None:
            logger.debug("No signature rule for '.%s', skipping magic-byte check", extension)
            return None

        header = header[:HEADER_SIZE]
        if len(header) < MIN_HEADER_SIZE:
            return Rejected(
                kind=RejectionKind.SIGNATURE_MISMATCH,
                message=f"File is too short to verify as '.{extension}'",
            )

        if not rule.matches(header):
            return Rejected(
                kind=RejectionKind.SIGNATURE_MISMATCH,
                message=f"File content does not match the '.{extension}' format",
            )

        return None
