"""Request body size limits.

Limits are per content-type category with path-prefix overrides::

    SizeLimitConfig(defaults..., overrides=(
        PathOverride("/api/auth/login", json=10 * KB),
        PathOverride("/api/files/upload", file=50 * MB),
    ))

Overrides are checked in declaration order and the first prefix that matches
the request path wins. A category the override leaves unset falls back to
the default for that category.
"""

import math
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ngurra_api.config import Settings

KB = 1024
MB = 1024 * KB
GB = 1024 * MB

DEFAULT_SIZE = MB

_UNITS = {"b": 1, "kb": KB, "mb": MB, "gb": GB}
_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(b|kb|mb|gb)?\s*$", re.IGNORECASE)


def parse_size(value: int | float | str | None) -> int:
    """Convert ``"10kb"``, ``"1.5 MB"``, ``5_000_000`` or ``1.5e6`` to bytes.

    Anything that does not parse (including negative numbers) yields the
    1 MiB default instead of an error, so a bad config value never fails a
    request.
    """
    if isinstance(value, bool):
        return DEFAULT_SIZE
    if isinstance(value, int):
        return value if value >= 0 else DEFAULT_SIZE
    if isinstance(value, float):
        return int(value) if math.isfinite(value) and value >= 0 else DEFAULT_SIZE
    if not isinstance(value, str):
        return DEFAULT_SIZE

    match = _SIZE_PATTERN.match(value)
    if match is None:
        return DEFAULT_SIZE
    number, unit = match.groups()
    return int(float(number) * _UNITS[(unit or "b").lower()])


def format_size(size: int) -> str:
    """Human-readable size as shown to clients, e.g. ``"10.0MB"``."""
    if size >= GB:
        return f"{size / GB:.1f}GB"
    if size >= MB:
        return f"{size / MB:.1f}MB"
    if size >= KB:
        return f"{size / KB:.1f}KB"
    return f"{size}B"


class ContentCategory(StrEnum):
    JSON = "json"
    URLENCODED = "urlencoded"
    TEXT = "text"
    MULTIPART = "multipart"
    RAW = "raw"


def classify_content_type(content_type: str | None) -> ContentCategory:
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if media_type == "application/json" or media_type.endswith("+json"):
        return ContentCategory.JSON
    if media_type == "application/x-www-form-urlencoded":
        return ContentCategory.URLENCODED
    if media_type == "multipart/form-data":
        return ContentCategory.MULTIPART
    if media_type.startswith("text/"):
        return ContentCategory.TEXT
    return ContentCategory.RAW


@dataclass(frozen=True)
class PathOverride:
    """Per-prefix limits in bytes; ``None`` means "use the default"."""

    prefix: str
    json: int | None = None
    urlencoded: int | None = None
    raw: int | None = None
    text: int | None = None
    file: int | None = None

    def limit_for(self, category: ContentCategory) -> int | None:
        return getattr(self, _FIELD_BY_CATEGORY[category])


_FIELD_BY_CATEGORY = {
    ContentCategory.JSON: "json",
    ContentCategory.URLENCODED: "urlencoded",
    ContentCategory.TEXT: "text",
    ContentCategory.MULTIPART: "file",
    ContentCategory.RAW: "raw",
}

DEFAULT_PATH_OVERRIDES: tuple[PathOverride, ...] = (
    PathOverride("/api/auth/login", json=parse_size("10kb")),
    PathOverride("/api/auth/register", json=parse_size("50kb")),
    PathOverride("/api/files/upload", file=parse_size("50mb")),
    PathOverride("/api/uploads", file=parse_size("25mb")),
    PathOverride("/api/resume", file=parse_size("10mb")),
    PathOverride("/webhooks", raw=parse_size("1mb")),
)


@dataclass(frozen=True)
class SizeLimitConfig:
    json: int = MB
    urlencoded: int = MB
    raw: int = 5 * MB
    text: int = MB
    file: int = 10 * MB
    overrides: tuple[PathOverride, ...] = field(default=DEFAULT_PATH_OVERRIDES)

    def __post_init__(self) -> None:
        for name in ("json", "urlencoded", "raw", "text", "file"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} limit must be >= 0")

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        overrides: tuple[PathOverride, ...] = DEFAULT_PATH_OVERRIDES,
    ) -> "SizeLimitConfig":
        return cls(
            json=parse_size(settings.json_limit),
            urlencoded=parse_size(settings.urlencoded_limit),
            raw=parse_size(settings.raw_limit),
            text=parse_size(settings.text_limit),
            file=parse_size(settings.file_limit),
            overrides=overrides,
        )

    def match_override(self, path: str) -> PathOverride | None:
        for override in self.overrides:
            if path.startswith(override.prefix):
                return override
        return None

    def resolve(self, path: str, category: ContentCategory) -> int:
        """Effective byte limit for a request to ``path`` with this body category."""
        override = self.match_override(path)
        if override is not None:
            limit = override.limit_for(category)
            if limit is not None:
                return limit
        return getattr(self, _FIELD_BY_CATEGORY[category])
