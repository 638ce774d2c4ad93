from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict


class RejectionKind(str, Enum):
    INVALID_UPLOAD = "InvalidUpload"
    SIZE_EXCEEDED = "SizeExceeded"
    EXTENSION_BLOCKED = "ExtensionBlocked"
    MIME_MISMATCH = "MimeMismatch"
    SIGNATURE_MISMATCH = "SignatureMismatch"
    ACTIVE_CONTENT_DETECTED = "ActiveContentDetected"
    INFECTED = "Infected"
    SCAN_UNAVAILABLE = "ScanUnavailable"


class ScanStatus(str, Enum):
    CLEAN = "clean"
    INFECTED = "infected"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ScanOutcome:
    """Result of an antivirus scan. Only ``infected`` carries a signature name."""

    status: ScanStatus
    signature_name: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def clean(cls) -> "ScanOutcome":
        return cls(ScanStatus.CLEAN)

    @classmethod
    def infected(cls, signature_name: str) -> "ScanOutcome":
        return cls(ScanStatus.INFECTED, signature_name=signature_name)

    @classmethod
    def skipped(cls, reason: str) -> "ScanOutcome":
        return cls(ScanStatus.SKIPPED, reason=reason)


@dataclass
class UploadCandidate:
    """An already-received upload plus what the client said about it.

    ``source`` is a filesystem path or a readable binary stream. The
    validation pipeline only reads it.
    """

    source: Union[str, Path, BinaryIO]
    filename: str
    category: str
    declared_size: Optional[int] = None
    declared_mime: Optional[str] = None


class Accepted(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["accepted"] = "accepted"
    storage_id: str
    detected_mime: str
    detected_extension: str
    size_bytes: int
    scan_status: ScanStatus

    @property
    def accepted(self) -> bool:
        return True


class Rejected(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["rejected"] = "rejected"
    kind: RejectionKind
    message: str
    detail: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return False


ValidationResult = Union[Accepted, Rejected]
