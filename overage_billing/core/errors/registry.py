"""
Error registry.

registry.yaml is the single table of every OVB-* code: which HTTP status it
maps to, whether a caller may retry, and the text that is safe to show.
Entries are checked when the file is loaded so a typo fails at startup,
not on the first error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from overage_billing.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_PATH = Path(__file__).with_name("registry.yaml")

VALID_DOMAINS = frozenset({"API", "DB", "CFG", "PRV"})
VALID_SEVERITIES = frozenset({"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"})
_REQUIRED = (
    "code",
    "domain",
    "title",
    "severity",
    "retryable",
    "user_action_required",
    "http_status",
    "safe_message",
)


class RegistryValidationError(Exception):
    """registry.yaml is malformed."""


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)

    @classmethod
    def from_raw(cls, position: int, raw: Mapping[str, Any]) -> "ErrorEntry":
        missing = [name for name in _REQUIRED if name not in raw]
        if missing:
            raise RegistryValidationError(
                f"entry #{position} ({raw.get('code', '?')}) lacks {', '.join(missing)}"
            )

        code = raw["code"]
        if not CODE_PATTERN.match(code):
            raise RegistryValidationError(f"{code!r} is not an OVB-<DOMAIN>-<NNN> code")

        domain = raw["domain"]
        if domain not in VALID_DOMAINS:
            raise RegistryValidationError(f"{code}: domain {domain!r} is not one of {sorted(VALID_DOMAINS)}")
        if code.split("-")[1] != domain:
            raise RegistryValidationError(f"{code}: declared domain {domain!r} differs from the code")
        if raw["severity"] not in VALID_SEVERITIES:
            raise RegistryValidationError(f"{code}: severity {raw['severity']!r} is not recognised")

        return cls(
            code=code,
            domain=domain,
            title=str(raw["title"]),
            severity=raw["severity"],
            retryable=bool(raw["retryable"]),
            user_action_required=bool(raw["user_action_required"]),
            http_status=int(raw["http_status"]),
            safe_message=str(raw["safe_message"]),
            remediation=list(raw.get("remediation") or []),
        )


class ErrorRegistry:
    """In-memory view of registry.yaml."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version = 0

    def load(self, path: Optional[str] = None) -> None:
        source = Path(path) if path else DEFAULT_PATH
        document = yaml.safe_load(source.read_text(encoding="utf-8")) or {}

        rows = document.get("errors", [])
        if not isinstance(rows, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for position, raw in enumerate(rows):
            entry = ErrorEntry.from_raw(position, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"{entry.code} is listed twice")
            entries[entry.code] = entry

        self._entries = entries
        self.schema_version = int(document.get("schema_version", 0))
        logger.info(
            "error_registry_loaded",
            extra={"count": len(entries), "schema_version": self.schema_version, "path": str(source)},
        )

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        """Like get(), but an unknown code is a KeyError."""
        try:
            return self._entries[code]
        except KeyError:
            raise KeyError(f"Unknown error code: {code!r}") from None

    def by_domain(self, domain: str) -> List[ErrorEntry]:
        return [e for e in self._entries.values() if e.domain == domain]

    def __contains__(self, code: object) -> bool:
        return code in self._entries

    def __len__(self) -> int:
        return len(self._entries)


error_registry = ErrorRegistry()
