"""
Per-category upload policies and the dangerous-extension blocklist.

Policies are immutable values. A ``PolicyRegistry`` is built once (from the
built-in table or from a JSON file) and handed to the validation workflow,
so concurrent validations share it without locking.

JSON policy file layout::

    {
        "default_category": "image",
        "categories": {
            "image": {
                "max_size_bytes": 5242880,
                "allowed_extensions": ["jpg", "png"],
                "allowed_mime_types": ["image/jpeg", "image/png"]
            }
        },
        "dangerous_extensions": ["php", "exe"]
    }

``dangerous_extensions`` is optional and replaces the built-in list when given.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Union

from utils.logger import get_logger

logger = get_logger(__name__)

KB = 1024
MB = 1024 * KB

DEFAULT_CATEGORY = "image"

# Script, executable, config and web-active formats. Blocked for every
# category, whatever the file actually contains.
DANGEROUS_EXTENSIONS: FrozenSet[str] = frozenset({
    # Server-side scripting
    "php", "phtml", "php3", "php4", "php5", "php7", "phar",
    "asp", "aspx", "ascx", "jsp", "jspx", "cgi",
    # Platform executables and installers
    "exe", "dll", "com", "scr", "msi", "msp", "cpl", "msc", "hta",
    "jar", "war", "swf",
    # Shell and interpreted scripts
    "bat", "cmd", "sh", "bash", "ps1", "psm1", "psd1",
    "vbs", "vbe", "wsf", "wsh",
    "js", "jsx", "mjs", "ts", "tsx",
    "py", "pyc", "pyo", "pyd", "pl", "pm",
    # Web server configuration
    "htaccess", "htpasswd",
    # Markup able to carry active content
    "svg", "html", "htm", "xhtml", "xml", "xsl", "xslt",
})

MIME_ALIASES: Dict[str, str] = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-ms-bmp": "image/bmp",
    "image/heic-sequence": "image/heic",
    "image/heif-sequence": "image/heif",
    "audio/mp3": "audio/mpeg",
    "audio/x-mp3": "audio/mpeg",
    "audio/x-wav": "audio/wav",
    "audio/wave": "audio/wav",
    "audio/vnd.wave": "audio/wav",
    "audio/x-flac": "audio/flac",
    "audio/m4a": "audio/mp4",
    "audio/x-m4a": "audio/mp4",
    "audio/x-aac": "audio/aac",
    "application/x-pdf": "application/pdf",
}


class PolicyConfigError(ValueError):
    """Raised when a policy table cannot be turned into valid policies."""


def normalize_mime(mime: Optional[str]) -> str:
    """Strip parameters, lowercase and fold known aliases."""
    if not mime:
        return ""
    base = mime.split(";")[0].strip().lower()
    return MIME_ALIASES.get(base, base)


def normalize_extension(extension: Optional[str]) -> str:
    if not extension:
        return ""
    return extension.strip().lstrip(".").lower()


@dataclass(frozen=True)
class CategoryPolicy:
    """Limits applied to one upload category.

    Empty ``allowed_extensions`` / ``allowed_mime_types`` mean "no allow-list".
    """

    max_size_bytes: int
    allowed_extensions: FrozenSet[str] = field(default_factory=frozenset)
    allowed_mime_types: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if not isinstance(self.max_size_bytes, int) or isinstance(self.max_size_bytes, bool):
            raise PolicyConfigError(f"max_size_bytes must be an integer, got {self.max_size_bytes!r}")
        if self.max_size_bytes <= 0:
            raise PolicyConfigError(f"max_size_bytes must be > 0, got {self.max_size_bytes}")

        # frozen dataclass: normalize through object.__setattr__
        object.__setattr__(
            self,
            "allowed_extensions",
            frozenset(normalize_extension(ext) for ext in self.allowed_extensions if normalize_extension(ext)),
        )
        object.__setattr__(
            self,
            "allowed_mime_types",
            frozenset(normalize_mime(mime) for mime in self.allowed_mime_types if normalize_mime(mime)),
        )

    def allows_extension(self, extension: str) -> bool:
        return not self.allowed_extensions or extension in self.allowed_extensions

    def allows_mime(self, mime: str) -> bool:
        return not self.allowed_mime_types or mime in self.allowed_mime_types

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CategoryPolicy":
        for list_field in ("allowed_extensions", "allowed_mime_types"):
            if isinstance(data.get(list_field), str):
                raise PolicyConfigError(f"{list_field} must be a list, not a string")
        try:
            return cls(
                max_size_bytes=data["max_size_bytes"],
                allowed_extensions=frozenset(data.get("allowed_extensions", ())),
                allowed_mime_types=frozenset(data.get("allowed_mime_types", ())),
            )
        except KeyError as exc:
            raise PolicyConfigError(f"Missing policy field: {exc.args[0]}") from exc
        except TypeError as exc:
            raise PolicyConfigError(f"Invalid policy definition: {exc}") from exc


_IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "webp", "heic", "heif")
_IMAGE_MIMES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/heic",
    "image/heif",
)
_AUDIO_EXTENSIONS = ("mp3", "mp4", "m4a", "ogg", "wav", "webm", "aac", "flac")
_AUDIO_MIMES = (
    "audio/mpeg",
    "audio/mp4",
    "audio/ogg",
    "audio/wav",
    "audio/webm",
    "audio/aac",
    "audio/flac",
    # m4a and voice notes are often detected with their video container type
    "video/mp4",
    "video/webm",
)
_DOCUMENT_EXTENSIONS = ("pdf", "jpg", "jpeg", "png")
_DOCUMENT_MIMES = ("application/pdf", "image/jpeg", "image/png")

BUILTIN_POLICIES: Dict[str, CategoryPolicy] = {
    "image": CategoryPolicy(
        max_size_bytes=5 * MB,
        allowed_extensions=frozenset(_IMAGE_EXTENSIONS),
        allowed_mime_types=frozenset(_IMAGE_MIMES),
    ),
    "document": CategoryPolicy(
        max_size_bytes=5 * MB,
        allowed_extensions=frozenset(_DOCUMENT_EXTENSIONS),
        allowed_mime_types=frozenset(_DOCUMENT_MIMES),
    ),
    "certificate": CategoryPolicy(
        max_size_bytes=5 * MB,
        allowed_extensions=frozenset(_DOCUMENT_EXTENSIONS),
        allowed_mime_types=frozenset(_DOCUMENT_MIMES),
    ),
    "audio": CategoryPolicy(
        max_size_bytes=10 * MB,
        allowed_extensions=frozenset(_AUDIO_EXTENSIONS),
        allowed_mime_types=frozenset(_AUDIO_MIMES),
    ),
    "media": CategoryPolicy(
        max_size_bytes=10 * MB,
        allowed_extensions=frozenset(_IMAGE_EXTENSIONS + _AUDIO_EXTENSIONS),
        allowed_mime_types=frozenset(_IMAGE_MIMES + _AUDIO_MIMES),
    ),
}


class PolicyRegistry:
    """Read-only lookup of ``CategoryPolicy`` by category key."""

    def __init__(
        self,
        policies: Optional[Mapping[str, CategoryPolicy]] = None,
        *,
        default_category: str = DEFAULT_CATEGORY,
        dangerous_extensions: Optional[Iterable[str]] = None,
    ) -> None:
        source = BUILTIN_POLICIES if policies is None else policies
        self._policies: Dict[str, CategoryPolicy] = {
            key.strip().lower(): policy for key, policy in source.items()
        }
        if not self._policies:
            raise PolicyConfigError("At least one category policy is required")

        default_key = default_category.strip().lower()
        if default_key not in self._policies:
            raise PolicyConfigError(f"Default category '{default_category}' has no policy")
        self._default = self._policies[default_key]
        self.default_category = default_key

        extensions = DANGEROUS_EXTENSIONS if dangerous_extensions is None else dangerous_extensions
        self.dangerous_extensions: FrozenSet[str] = frozenset(
            normalize_extension(ext) for ext in extensions if normalize_extension(ext)
        )

    @property
    def categories(self) -> FrozenSet[str]:
        return frozenset(self._policies)

    def lookup(self, category: Optional[str]) -> CategoryPolicy:
        """Return the policy for ``category``; unknown categories get the default policy."""
        key = (category or "").strip().lower()
        policy = self._policies.get(key)
        if policy is None:
            logger.debug("Unknown upload category %r, using default policy '%s'", category, self.default_category)
            return self._default
        return policy

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PolicyRegistry":
        categories = data.get("categories")
        if not isinstance(categories, Mapping) or not categories:
            raise PolicyConfigError("Policy configuration needs a non-empty 'categories' object")

        policies = {}
        for name, definition in categories.items():
            if not isinstance(definition, Mapping):
                raise PolicyConfigError(f"Policy for category '{name}' must be an object")
            policies[name] = CategoryPolicy.from_dict(definition)

        return cls(
            policies,
            default_category=data.get("default_category", DEFAULT_CATEGORY),
            dangerous_extensions=data.get("dangerous_extensions"),
        )

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "PolicyRegistry":
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise PolicyConfigError(f"Cannot load policy file {path}: {exc}") from exc

        if not isinstance(data, Mapping):
            raise PolicyConfigError(f"Policy file {path} must contain a JSON object")

        registry = cls.from_mapping(data)
        logger.info(
            "Loaded upload policies | File: %s | Categories: %s",
            path,
            ", ".join(sorted(registry.categories)),
        )
        return registry


def load_policy_registry(policy_file: Optional[str] = None) -> PolicyRegistry:
    """Registry from ``policy_file`` when configured, else the built-in table."""
    if policy_file:
        return PolicyRegistry.from_json_file(policy_file)
    return PolicyRegistry()
