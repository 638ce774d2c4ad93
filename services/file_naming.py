import re
import uuid

DEFAULT_EXTENSION = "bin"


class StorageNameService:
    """
    Service for generating storage names for accepted uploads
    """

    _UNSAFE_CHARS = re.compile(r"[^a-z0-9]")

    def generate(self, extension: str) -> str:
        """
        Random UUID4 (122 random bits) plus the sanitized extension, never
        derived from client input
        """
        safe_extension = self._UNSAFE_CHARS.sub("", (extension or "").lower()) or DEFAULT_EXTENSION
        return f"{uuid.uuid4()}.{safe_extension}"
