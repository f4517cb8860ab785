"""Tenant and legacy-system identifiers.

``OfficeId`` scopes every row, job and cache entry. ``ExternalId`` is the legacy
system's integer key and is deliberately not comparable with internal UUIDs.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


@dataclass(frozen=True)
class OfficeId:
    value: str

    @classmethod
    def create(cls, raw: str | uuid.UUID) -> OfficeId:
        text = str(raw)
        if not _UUID_RE.match(text):
            raise ValueError(f"Invalid OfficeId format: {text}")
        return cls(text.lower())

    @property
    def uuid(self) -> uuid.UUID:
        return uuid.UUID(self.value)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, eq=False)
class ExternalId:
    value: int

    @classmethod
    def create(cls, raw: object) -> ExternalId:
        if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
            raise ValueError(f"Invalid ExternalId: {raw!r}. Must be a non-negative integer.")
        return cls(raw)

    @classmethod
    def parse(cls, raw: object) -> ExternalId | None:
        """Lenient constructor for legacy payloads (ints or numeric strings)."""
        if raw is None or raw == "":
            return None
        if isinstance(raw, str) and raw.strip().isdigit():
            raw = int(raw.strip())
        return cls.create(raw)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExternalId):
            return NotImplemented
        return self.value == other.value

    def __hash__(self) -> int:
        return hash(("external", self.value))

    def __int__(self) -> int:
        return self.value

    def __str__(self) -> str:
        return str(self.value)
