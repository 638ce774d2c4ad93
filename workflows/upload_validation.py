import os
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from config.policies import CategoryPolicy, PolicyRegistry, load_policy_registry
from config.settings import settings
from models.schemas import (
    Accepted,
    Rejected,
    RejectionKind,
    ScanStatus,
    UploadCandidate,
    ValidationResult,
)
from services.audit import AuditSink, LoggingAuditSink, build_event
from services.clam_av import AntivirusScanner, NoopScanner, build_antivirus_scanner
from services.file_naming import StorageNameService
from services.mime_sniffing import MimeSniffingService
from services.pdf_scanner import PdfActiveContentScanner
from services.signature_verifier import HEADER_SIZE, SignatureVerifier
from services.structural_filter import StructuralFilter
from utils.logger import get_logger

logger = get_logger(__name__)


class ValidationStage(str, Enum):
    RECEIVED = "received"
    SIZE_CHECKED = "size_checked"
    EXTENSION_CHECKED = "extension_checked"
    MIME_CHECKED = "mime_checked"
    SIGNATURE_CHECKED = "signature_checked"
    CONTENT_SCANNED = "content_scanned"
    ANTIVIRUS_SCANNED = "antivirus_scanned"
    ACCEPTED = "accepted"


class UploadValidationWorkflow:
    """
    Linear upload gate:

        received -> size -> extension -> MIME -> signature
                 -> [PDF active content] -> antivirus -> accepted

    The first failing stage ends the run with a ``Rejected`` result. Nothing
    is retried and the upload source is only read.
    """

    def __init__(
        self,
        policy_registry: Optional[PolicyRegistry] = None,
        structural_filter: Optional[StructuralFilter] = None,
        mime_sniffer: Optional[MimeSniffingService] = None,
        signature_verifier: Optional[SignatureVerifier] = None,
        pdf_scanner: Optional[PdfActiveContentScanner] = None,
        antivirus: Optional[AntivirusScanner] = None,
        naming_service: Optional[StorageNameService] = None,
        audit_sink: Optional[AuditSink] = None,
        fail_closed: Optional[bool] = None,
    ):
        self.policy_registry = policy_registry or load_policy_registry(settings.UPLOAD_POLICY_FILE)
        self.structural_filter = structural_filter or StructuralFilter(self.policy_registry.dangerous_extensions)
        self.mime_sniffer = mime_sniffer or MimeSniffingService()
        self.signature_verifier = signature_verifier or SignatureVerifier()
        self.pdf_scanner = pdf_scanner or PdfActiveContentScanner()
        self.antivirus = antivirus or build_antivirus_scanner(settings)
        self.naming_service = naming_service or StorageNameService()
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.fail_closed = settings.CLAMAV_FAIL_CLOSED if fail_closed is None else fail_closed

    def validate(
        self,
        candidate: UploadCandidate,
        cancel_event: Optional[threading.Event] = None,
    ) -> ValidationResult:
        policy = self.policy_registry.lookup(candidate.category)
        context: Dict[str, Any] = {
            "filename": candidate.filename,
            "category": candidate.category,
        }
        self._emit(ValidationStage.RECEIVED, "pass", context)

        # Size
        try:
            file_data, size = self._load(candidate, policy)
        except (OSError, ValueError, TypeError) as e:
            logger.error("Cannot read upload source for %s: %s", candidate.filename, e)
            return self._reject(
                ValidationStage.SIZE_CHECKED,
                Rejected(kind=RejectionKind.INVALID_UPLOAD, message="Upload source could not be read"),
                context,
            )

        context["size_bytes"] = size
        if candidate.declared_size is not None and candidate.declared_size != size:
            logger.info(
                "Declared size differs from actual size | Declared: %s | Actual: %s",
                candidate.declared_size,
                size,
            )

        if file_data is None:
            context["max_size_bytes"] = policy.max_size_bytes
            return self._reject(
                ValidationStage.SIZE_CHECKED,
                Rejected(
                    kind=RejectionKind.SIZE_EXCEEDED,
                    message=f"File exceeds the maximum size of {policy.max_size_bytes} bytes",
                ),
                context,
            )
        self._emit(ValidationStage.SIZE_CHECKED, "pass", context)

        # Extension
        extension_check = self.structural_filter.check(candidate.filename, policy)
        context["extension"] = extension_check.extension
        if extension_check.rejection is not None:
            return self._reject(ValidationStage.EXTENSION_CHECKED, extension_check.rejection, context)
        self._emit(ValidationStage.EXTENSION_CHECKED, "pass", context)
        extension = extension_check.extension

        # MIME
        if size == 0:
            return self._reject(
                ValidationStage.MIME_CHECKED,
                Rejected(kind=RejectionKind.INVALID_UPLOAD, message="File is empty"),
                context,
            )
        mime_check = self.mime_sniffer.sniff(file_data, policy, candidate.declared_mime)
        context["detected_mime"] = mime_check.detected_mime
        if candidate.declared_mime:
            context["declared_mime"] = candidate.declared_mime
        if mime_check.rejection is not None:
            return self._reject(ValidationStage.MIME_CHECKED, mime_check.rejection, context)
        self._emit(ValidationStage.MIME_CHECKED, "pass", context)
        detected_mime = mime_check.detected_mime

        # Magic bytes
        rejection = self.signature_verifier.verify(file_data[:HEADER_SIZE], extension)
        if rejection is not None:
            return self._reject(ValidationStage.SIGNATURE_CHECKED, rejection, context)
        self._emit(ValidationStage.SIGNATURE_CHECKED, "pass", context)

        # PDF active content
        if self.pdf_scanner.applies_to(detected_mime, extension):
            rejection = self.pdf_scanner.scan(file_data)
            if rejection is not None:
                context["threat"] = rejection.detail
                return self._reject(ValidationStage.CONTENT_SCANNED, rejection, context)
            self._emit(ValidationStage.CONTENT_SCANNED, "pass", context)

        # Antivirus
        outcome = self.antivirus.scan(file_data, cancel_event=cancel_event)
        if outcome.status == ScanStatus.INFECTED:
            context["signature"] = outcome.signature_name
            return self._reject(
                ValidationStage.ANTIVIRUS_SCANNED,
                Rejected(
                    kind=RejectionKind.INFECTED,
                    message=f"Malware detected: {outcome.signature_name}",
                    detail=outcome.signature_name,
                ),
                context,
            )
        if outcome.status == ScanStatus.SKIPPED:
            context["scan_skipped_reason"] = outcome.reason
            if self.fail_closed and outcome.reason != NoopScanner.REASON:
                return self._reject(
                    ValidationStage.ANTIVIRUS_SCANNED,
                    Rejected(
                        kind=RejectionKind.SCAN_UNAVAILABLE,
                        message="Antivirus scan could not be completed",
                    ),
                    context,
                )
            self._emit(ValidationStage.ANTIVIRUS_SCANNED, "skipped", context, RejectionKind.SCAN_UNAVAILABLE)
        else:
            self._emit(ValidationStage.ANTIVIRUS_SCANNED, "pass", context)

        result = Accepted(
            storage_id=self.naming_service.generate(extension),
            detected_mime=detected_mime,
            detected_extension=extension,
            size_bytes=size,
            scan_status=outcome.status,
        )
        context["storage_id"] = result.storage_id
        self._emit(ValidationStage.ACCEPTED, "accept", context)
        return result

    def _load(self, candidate: UploadCandidate, policy: CategoryPolicy) -> Tuple[Optional[bytes], int]:
        """
        Read at most ``max_size_bytes + 1`` bytes from the source.

        Returns ``(None, size)`` when the source is larger than the policy
        allows. Seekable streams are rewound to where they were.
        """
        limit = policy.max_size_bytes
        source = candidate.source

        if isinstance(source, (str, Path)):
            size = os.stat(source).st_size
            if size > limit:
                return None, size
            with open(source, "rb") as fh:
                data = fh.read(limit + 1)
        else:
            seekable = getattr(source, "seekable", None)
            position = source.tell() if seekable is not None and seekable() else None
            try:
                data = source.read(limit + 1)
            finally:
                if position is not None:
                    source.seek(position)

        if isinstance(data, (bytearray, memoryview)):
            data = bytes(data)
        if not isinstance(data, bytes):
            raise TypeError(f"Upload source must yield bytes, got {type(data).__name__}")
        if len(data) > limit:
            return None, len(data)
        return data, len(data)

    def _emit(
        self,
        stage: ValidationStage,
        decision: str,
        context: Dict[str, Any],
        kind: Optional[RejectionKind] = None,
    ) -> None:
        self.audit_sink.emit(build_event(stage.value, decision, context, kind))

    def _reject(self, stage: ValidationStage, rejection: Rejected, context: Dict[str, Any]) -> Rejected:
        self._emit(stage, "reject", {**context, "reason": rejection.message}, rejection.kind)
        return rejection
