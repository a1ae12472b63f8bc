"""
Curation of raw captures into canonical markdown documents.

A curated document is a YAML front matter header followed by a ``# title``
heading and the trimmed capture text:

    ---
    title: "Art 5"
    jurisdiction: "BR/Federal"
    source_url: "https://www.planalto.gov.br/..."
    version_date: "2025-10-18"
    language: "pt-BR"
    license: "public-domain"
    captured_at: "2025-10-18T12:00:00.000Z"
    capture_mode: "lexflow-extension"
    ---

    # Art 5

    Art. 5º Todos são iguais perante a lei...

Header values are emitted by PyYAML as double-quoted scalars, so any title or
URL round-trips through a YAML parser unchanged. ``curate`` has no I/O and
no clock reads beyond the optional ``today`` default.
"""

import re
import unicodedata
from datetime import date, datetime, timezone
from typing import Any

import frontmatter  # type: ignore[import-untyped]
import yaml
from pydantic import BaseModel, Field, field_validator

from lexflow.core.config.models import CurationConfig
from lexflow.core.queue.models import CaptureItem

# Order of the header fields in a curated document
HEADER_FIELDS = (
    "title",
    "jurisdiction",
    "source_url",
    "version_date",
    "language",
    "license",
    "captured_at",
    "capture_mode",
)

SLUG_MAX_LENGTH = 80


class CurationOverrides(BaseModel):
    """
    User-supplied values for the document header.

    Any field left as None falls back to the capture's own value, then to
    the configured default.
    """

    title: str | None = None
    jurisdiction: str | None = None
    language: str | None = None
    source_url: str | None = None
    version_date: date | None = Field(
        default=None,
        description="Version date of the legal text (YYYY-MM-DD)",
    )

    @field_validator("version_date", mode="before")
    @classmethod
    def parse_version_date(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
            return date.fromisoformat(v)
        return v


class CuratedDocument(BaseModel):
    """A curated document read back into header and body."""

    metadata: dict[str, Any] = Field(default_factory=dict)
    body: str = ""

    @property
    def title(self) -> str:
        return str(self.metadata.get("title", ""))


def quote_header_value(value: str) -> str:
    """
    Render a header value as a one-line double-quoted YAML scalar.

    PyYAML escapes control characters and every YAML line break, NEL and
    U+2028/U+2029 included, so the value never spans two lines.

    Example:
        >>> quote_header_value("Art 5")
        '"Art 5"'
    """
    dumped = yaml.safe_dump(value, default_style='"', allow_unicode=True, width=float("inf"))
    return dumped.removesuffix("...\n").rstrip("\n")


def format_timestamp(ms: int) -> str:
    """ISO 8601 UTC with millisecond precision and a ``Z`` suffix."""
    seconds, millis = divmod(ms, 1000)
    dt = datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=millis * 1000)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _first(*values: str | None) -> str:
    for value in values:
        if value is not None and value.strip():
            return value.strip()
    return ""


def build_header(
    item: CaptureItem, overrides: CurationOverrides, today: date, config: CurationConfig
) -> dict[str, str]:
    """Resolve every header field to a plain string, in HEADER_FIELDS order."""
    version_date = overrides.version_date or today
    return {
        "title": _first(overrides.title, item.source_title) or config.default_title,
        "jurisdiction": _first(overrides.jurisdiction, item.jurisdiction)
        or config.default_jurisdiction,
        "source_url": _first(overrides.source_url, item.source_url),
        "version_date": version_date.isoformat(),
        "language": _first(overrides.language, item.language) or config.default_language,
        "license": config.license,
        "captured_at": format_timestamp(item.created_at),
        "capture_mode": config.capture_mode,
    }


def curate(
    item: CaptureItem,
    overrides: CurationOverrides | None = None,
    *,
    today: date | None = None,
    config: CurationConfig | None = None,
) -> str:
    """
    Build the canonical document for a capture.

    The caller stores the result in ``curated_document``; this function
    does not touch the store.

    Args:
        item: Capture to curate
        overrides: Header values supplied by the user
        today: Date used when no version date is given (defaults to today)
        config: Defaults for title, jurisdiction, language and license

    Returns:
        Markdown document with front matter header

    Example:
        >>> doc = curate(item, CurationOverrides(title="Art 5"), today=date(2025, 10, 18))
        >>> doc.splitlines()[1]
        'title: "Art 5"'
    """
    overrides = overrides or CurationOverrides()
    config = config or CurationConfig()
    if today is None:
        today = date.today()

    header = build_header(item, overrides, today, config)

    lines = ["---"]
    lines.extend(f"{name}: {quote_header_value(header[name])}" for name in HEADER_FIELDS)
    lines.append("---")

    # Heading must stay on one line
    heading = " ".join(header["title"].split())

    return "\n".join(lines + ["", f"# {heading}", "", item.raw_text.strip()])


def parse_document(document: str) -> CuratedDocument:
    """
    Read a curated document back into header and body.

    Raises:
        ValueError: If the header is not valid YAML
    """
    try:
        post = frontmatter.loads(document)
    except Exception as e:
        raise ValueError(f"Invalid document header: {e}") from e
    metadata = {k: (v.isoformat() if isinstance(v, date) else v) for k, v in post.metadata.items()}
    return CuratedDocument(metadata=metadata, body=post.content)


def slugify(title: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    """
    Convert a title into a filename-safe slug.

    Accents are folded to ASCII so Portuguese titles keep their letters.

    Example:
        >>> slugify("Constituição Federal, Art. 5º")
        'constituicao-federal-art-5o'
    """
    folded = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", folded.lower()).strip("-")

    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("-")

    return slug or "extract"


__all__ = [
    "CuratedDocument",
    "CurationOverrides",
    "HEADER_FIELDS",
    "curate",
    "quote_header_value",
    "format_timestamp",
    "parse_document",
    "slugify",
]
