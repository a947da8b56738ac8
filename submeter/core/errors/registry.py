"""
Error registry: the catalogue of SMT-* codes in registry.yaml.

Each entry fixes the HTTP status, log severity, retryability and the
user-safe message for one code. The file is validated as a whole on
load; one bad entry rejects the registry so a typo cannot ship.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping

import yaml

from submeter.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "registry.yaml")

VALID_DOMAINS = {"API", "AUTH", "DB", "EVT", "PRV", "SUB", "SYS"}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = {
    "code", "domain", "title", "severity", "retryable",
    "user_action_required", "http_status", "safe_message", "remediation",
}


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


class RegistryValidationError(Exception):
    """registry.yaml is structurally invalid."""


def _parse_entry(idx: int, raw: Mapping[str, Any]) -> ErrorEntry:
    if not isinstance(raw, Mapping):
        raise RegistryValidationError(f"Entry {idx}: expected a mapping, got {type(raw).__name__}")
    missing = REQUIRED_FIELDS - set(raw)
    if missing:
        raise RegistryValidationError(f"Entry {idx} ({raw.get('code', '?')}): missing fields {sorted(missing)}")

    code = raw["code"]
    if not CODE_PATTERN.match(str(code)):
        raise RegistryValidationError(f"Invalid code format: {code!r}")

    domain = raw["domain"]
    prefix = code.split("-")[1]
    if domain != prefix:
        raise RegistryValidationError(f"{code}: domain {domain!r} doesn't match code prefix {prefix!r}")
    if domain not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {domain!r}")
    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    status = int(raw["http_status"])
    if not 400 <= status <= 599:
        raise RegistryValidationError(f"{code}: http_status {status} is not an error status")
    # Providers and clients only retry on 5xx
    if raw["retryable"] and status < 500:
        raise RegistryValidationError(f"{code}: retryable errors must use a 5xx status, got {status}")

    return ErrorEntry(
        code=code,
        domain=domain,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        http_status=status,
        safe_message=raw["safe_message"],
        remediation=list(raw.get("remediation") or []),
        tags=list(raw.get("tags") or []),
    )


class ErrorRegistry:
    """Validated lookup table of error codes."""

    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: str | None = None) -> None:
        """Load and validate *path* (default: the packaged registry.yaml)."""
        path = path or DEFAULT_PATH
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(raw_entries):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        self.schema_version = int(data.get("schema_version", 0))
        logger.info("error_registry_loaded", extra={"count": len(entries), "schema_version": self.schema_version})

    def get(self, code: str) -> ErrorEntry | None:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        """Like get(), but an unknown code raises KeyError."""
        try:
            return self._entries[code]
        except KeyError:
            raise KeyError(f"Unknown error code: {code!r}") from None

    def all_codes(self) -> list[str]:
        return sorted(self._entries)

    def codes_for_domain(self, domain: str) -> list[str]:
        return sorted(c for c, e in self._entries.items() if e.domain == domain)

    def __contains__(self, code: object) -> bool:
        return code in self._entries

    def __iter__(self) -> Iterator[ErrorEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


# Module-level singleton, loaded at startup
error_registry = ErrorRegistry()
