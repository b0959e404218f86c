"""Domain models for notes, notebooks, and API key records."""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence
from urllib.parse import urlsplit

ID_PREFIX = "cm"
ID_BODY_LENGTH = 23
ID_PATTERN = re.compile(r"^cm[a-z0-9]{23}$")
_ID_ALPHABET = string.ascii_lowercase + string.digits

SCOPE_READ = "read"
SCOPE_WRITE = "write"
SCOPE_ADMIN = "admin"
KNOWN_SCOPES: tuple[str, ...] = (SCOPE_READ, SCOPE_WRITE, SCOPE_ADMIN)

TITLE_MAX_LENGTH = 80


def generate_id() -> str:
    """Return a fresh ``cm``-prefixed 25 character identifier."""

    body = "".join(secrets.choice(_ID_ALPHABET) for _ in range(ID_BODY_LENGTH))
    return f"{ID_PREFIX}{body}"


def looks_like_id(value: str) -> bool:
    return bool(ID_PATTERN.match(value or ""))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix accepted) into an aware datetime.

    Raises ``ValueError`` for strings that are not valid timestamps.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def _dedupe_preserve_order(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def normalize_tags(value: Any) -> list[str]:
    """Coerce a tag argument into a clean list.

    Strings are split on commas so ``"GenAI, productivity"`` and
    ``["GenAI", "productivity"]`` are equivalent.
    """

    if value is None:
        return []
    if isinstance(value, bytes):
        value = value.decode("utf-8", "ignore")
    if isinstance(value, str):
        return _dedupe_preserve_order(part.strip() for part in value.split(",") if part.strip())
    if isinstance(value, Sequence):
        collected: list[str] = []
        for item in value:
            if item is None:
                continue
            candidate = item.strip() if isinstance(item, str) else str(item).strip()
            if candidate:
                collected.append(candidate)
        return _dedupe_preserve_order(collected)
    candidate = str(value).strip()
    return [candidate] if candidate else []


def frontmatter_tags(frontmatter: Mapping[str, Any] | None) -> list[str]:
    if not isinstance(frontmatter, Mapping):
        return []
    return normalize_tags(frontmatter.get("tags"))


def derive_title(content: str) -> str:
    """Use the first non-empty content line as a title, trimmed of heading markers."""

    for line in content.splitlines():
        candidate = line.strip().lstrip("#").strip()
        if candidate:
            return candidate[:TITLE_MAX_LENGTH]
    return "Untitled"


# ---------------------------------------------------------------------------
# Domain helpers
# ---------------------------------------------------------------------------


def extract_domain(url: str | None) -> str | None:
    """Return the hostname of ``url``, or ``None`` when it cannot be parsed."""

    if not url:
        return None
    try:
        hostname = urlsplit(url.strip()).hostname
    except ValueError:
        return None
    return hostname or None


def extract_root_domain(url: str | None) -> str | None:
    """Return the last two labels of the hostname (``a.b.example.com`` -> ``example.com``)."""

    domain = extract_domain(url)
    if not domain:
        return None
    parts = domain.split(".")
    if len(parts) <= 2:
        return domain
    return ".".join(parts[-2:])


def display_domain(url: str | None) -> str | None:
    domain = extract_domain(url)
    if not domain:
        return None
    return domain[4:] if domain.startswith("www.") else domain


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Notebook:
    """Named collection of notes owned by a tenant."""

    id: str
    tenant_id: str
    name: str
    description: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    note_count: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
        if self.note_count is not None:
            payload["note_count"] = self.note_count
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, tenant_id: str = "") -> "Notebook":
        note_count = payload.get("note_count")
        return cls(
            id=str(payload["id"]),
            tenant_id=str(payload.get("tenant_id") or tenant_id),
            name=str(payload.get("name") or ""),
            description=payload.get("description"),
            created_at=parse_timestamp(payload.get("created_at")) or utcnow(),
            updated_at=parse_timestamp(payload.get("updated_at")) or utcnow(),
            note_count=int(note_count) if note_count is not None else None,
        )


@dataclass(slots=True)
class Note:
    """Markdown note with optional source URL, notebook, and frontmatter."""

    id: str
    tenant_id: str
    content: str
    title: str | None = None
    page_url: str | None = None
    notebook_id: str | None = None
    frontmatter: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def domain(self) -> str | None:
        return display_domain(self.page_url)

    @property
    def tags(self) -> list[str]:
        return frontmatter_tags(self.frontmatter)

    def to_dict(self, *, notebook: Notebook | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "page_url": self.page_url,
            "domain": self.domain,
            "notebook_id": self.notebook_id,
            "frontmatter": dict(self.frontmatter),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
        if notebook is not None:
            payload["notebook"] = {"id": notebook.id, "name": notebook.name}
        return payload


@dataclass(slots=True)
class ApiKeyRecord:
    """Stored API key: only the bcrypt hash of the secret is kept."""

    id: str
    tenant_id: str
    key_hash: str
    scopes: list[str] = field(default_factory=list)
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return True
        return ensure_utc(self.expires_at) > (now or utcnow())
