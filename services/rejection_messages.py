from typing import Dict, Optional

from config.settings import settings
from models.schemas import RejectionKind

FALLBACK_LOCALE = "en"

# {detail} is only filled with disclosable values: a PDF threat description
# or an antivirus signature name.
MESSAGES: Dict[str, Dict[RejectionKind, str]] = {
    "en": {
        RejectionKind.INVALID_UPLOAD: "The file could not be read. Please upload it again.",
        RejectionKind.SIZE_EXCEEDED: "The file exceeds the maximum allowed size.",
        RejectionKind.EXTENSION_BLOCKED: "This type of file is not allowed.",
        RejectionKind.MIME_MISMATCH: "This file type is not allowed for this category.",
        RejectionKind.SIGNATURE_MISMATCH: "The file content does not match its extension.",
        RejectionKind.ACTIVE_CONTENT_DETECTED: "This PDF contains potentially dangerous content ({detail}).",
        RejectionKind.INFECTED: "A threat was detected in this file ({detail}).",
        RejectionKind.SCAN_UNAVAILABLE: "The file could not be scanned right now. Please try again later.",
    },
    "fr": {
        RejectionKind.INVALID_UPLOAD: "Le fichier n'a pas pu être lu. Veuillez le renvoyer.",
        RejectionKind.SIZE_EXCEEDED: "Le fichier dépasse la taille maximale autorisée.",
        RejectionKind.EXTENSION_BLOCKED: "Ce type de fichier n'est pas autorisé.",
        RejectionKind.MIME_MISMATCH: "Type de fichier non autorisé pour cette catégorie.",
        RejectionKind.SIGNATURE_MISMATCH: "Le contenu du fichier ne correspond pas à son extension.",
        RejectionKind.ACTIVE_CONTENT_DETECTED: "Ce PDF contient du contenu potentiellement dangereux ({detail}).",
        RejectionKind.INFECTED: "Une menace a été détectée dans ce fichier ({detail}).",
        RejectionKind.SCAN_UNAVAILABLE: "Le fichier n'a pas pu être analysé pour le moment. Réessayez plus tard.",
    },
}


def localized_message(kind: RejectionKind, locale: Optional[str] = None, detail: Optional[str] = None) -> str:
    """User-facing message for ``kind``; unknown locales fall back to the configured default, then English."""
    table = MESSAGES.get(_language(locale or settings.DEFAULT_LOCALE))
    if table is None:
        table = MESSAGES.get(_language(settings.DEFAULT_LOCALE), MESSAGES[FALLBACK_LOCALE])
    template = table[kind]
    if "{detail}" in template:
        if detail:
            return template.format(detail=detail)
        return template.replace(" ({detail})", "")
    return template


def _language(locale: str) -> str:
    return locale.split("-")[0].split("_")[0].lower()
