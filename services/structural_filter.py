from dataclasses import dataclass
from typing import FrozenSet, Optional

from config.policies import CategoryPolicy
from models.schemas import Rejected, RejectionKind
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExtensionCheck:
    extension: str
    rejection: Optional[Rejected] = None


class StructuralFilter:
    """
    Filename-level gate: extension normalization, the category-independent
    dangerous-extension blocklist, then the category allow-list.

    Only the client filename is inspected here; content checks come later.
    """

    def __init__(self, dangerous_extensions: FrozenSet[str]):
        self.dangerous_extensions = dangerous_extensions

    @staticmethod
    def extract_extension(filename: Optional[str]) -> str:
        """Lowercased text after the last dot of the base name ('' if none)."""
        if not filename:
            return ""
        base = filename.replace("\\", "/").split("/")[-1]
        # "shell.php." and "shell.php " are stored as "shell.php" on some filesystems
        base = base.rstrip(". ")
        if "." not in base:
            return ""
        return base.rsplit(".", 1)[1].strip().lower()

    def check(self, filename: Optional[str], policy: CategoryPolicy) -> ExtensionCheck:
        extension = self.extract_extension(filename)

        if extension in self.dangerous_extensions:
            return ExtensionCheck(
                extension,
                Rejected(
                    kind=RejectionKind.EXTENSION_BLOCKED,
                    message=f"File extension '.{extension}' is not allowed",
                ),
            )

        if not policy.allows_extension(extension):
            shown = f"'.{extension}'" if extension else "(none)"
            return ExtensionCheck(
                extension,
                Rejected(
                    kind=RejectionKind.EXTENSION_BLOCKED,
                    message=f"File extension {shown} is not allowed for this category",
                ),
            )

        inner = self._inner_extensions(filename)
        if inner & self.dangerous_extensions:
            logger.info(
                "Double extension with dangerous inner part | Extension: %s | Inner: %s",
                extension,
                ", ".join(sorted(inner & self.dangerous_extensions)),
            )

        return ExtensionCheck(extension)

    @staticmethod
    def _inner_extensions(filename: Optional[str]) -> FrozenSet[str]:
        if not filename:
            return frozenset()
        base = filename.replace("\\", "/").split("/")[-1].rstrip(". ")
        parts = base.lower().split(".")
        return frozenset(part.strip() for part in parts[1:-1] if part.strip())
