"""
Error registry for ledger error codes.

registry.yaml describes every code the ledger raises: how severe it is,
whether the caller may retry, and the safe message a host may show its
users. The file is validated as a whole on load; a broken registry fails
loudly at startup rather than at the first error.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

import yaml

from telebill.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "registry.yaml")

# BAL balance gate, ACC accounts, REC call records, SUB number subscriptions,
# DB ledger store, IDEM idempotency keys, CFG configuration, SYS fallback
VALID_DOMAINS = {"BAL", "ACC", "REC", "SUB", "DB", "IDEM", "CFG", "SYS"}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = (
    "code",
    "domain",
    "title",
    "severity",
    "retryable",
    "user_action_required",
    "http_status",
    "safe_message",
    "remediation",
)


class RegistryValidationError(Exception):
    """Raised when registry.yaml has structural errors."""


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
    tags: List[str] = field(default_factory=list)

    def public_body(self) -> Dict[str, Any]:
        """The client-safe part of the entry."""
        return {
            "code": self.code,
            "title": self.title,
            "message": self.safe_message,
            "retryable": self.retryable,
            "user_action_required": self.user_action_required,
            "remediation": list(self.remediation),
        }


def _parse_entry(idx: int, raw: Any) -> ErrorEntry:
    if not isinstance(raw, dict):
        raise RegistryValidationError(f"Entry {idx}: expected a mapping")

    missing = sorted(f for f in REQUIRED_FIELDS if f not in raw)
    if missing:
        raise RegistryValidationError(f"Entry {idx} ({raw.get('code', '?')}): missing fields {missing}")

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")

    domain = raw["domain"]
    prefix = code.split("-")[1]
    if domain != prefix:
        raise RegistryValidationError(f"{code}: domain {domain!r} doesn't match code prefix {prefix!r}")
    if domain not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {domain!r}")
    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    return ErrorEntry(
        code=code,
        domain=domain,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        http_status=int(raw["http_status"]),
        safe_message=raw["safe_message"],
        remediation=list(raw.get("remediation") or []),
        tags=list(raw.get("tags") or []),
    )


class ErrorRegistry:
    """Code -> ErrorEntry lookup backed by registry.yaml."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: str | None = None) -> None:
        with open(path or DEFAULT_PATH, "r") as f:
            data = yaml.safe_load(f) or {}

        errors_list = data.get("errors", [])
        if not isinstance(errors_list, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(errors_list):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self.schema_version = data.get("schema_version", 0)
        self._entries = entries
        logger.info("Error registry loaded: %d codes (schema v%s)", len(entries), self.schema_version)

    def missing(self, codes: Iterable[str]) -> List[str]:
        """Codes from *codes* that have no registry entry."""
        return [c for c in codes if c not in self._entries]

    def get(self, code: str) -> ErrorEntry | None:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        """Lookup by code, raising KeyError if not found."""
        entry = self._entries.get(code)
        if entry is None:
            raise KeyError(f"Unknown error code: {code!r}")
        return entry

    def all_codes(self) -> list[str]:
        return list(self._entries)

    def codes_for_domain(self, domain: str) -> list[str]:
        return [c for c, e in self._entries.items() if e.domain == domain]

    def __len__(self) -> int:
        return len(self._entries)


# Module-level singleton, loaded once at startup
error_registry = ErrorRegistry()
