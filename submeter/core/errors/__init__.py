"""
Structured errors.

Every failure that reaches a client is a SubmeterError carrying a code of
the form ``SMT-<DOMAIN>-NNN``. The code selects an entry in
registry.yaml, which decides the HTTP status, whether the caller (often a
payment provider's retry loop) should retry, and the message it may see.
``detail`` and ``context`` only go to the logs.

Domains:
    AUTH  webhook authentication       EVT  webhook payloads / events
    SUB   subscription operations      PRV  outbound provider API calls
    DB    persistent store             API  caller identity / operator key
    SYS   unexpected failures

Usage:
    from submeter.core.errors import SubmeterError
    raise SubmeterError("SMT-PRV-001", detail="paddle PATCH timed out after 10s")
"""

from __future__ import annotations

import re
from typing import Any, Dict

CODE_PATTERN = re.compile(r"^SMT-[A-Z]{2,6}-\d{3}$")


class SubmeterError(Exception):
    """Error tied to a registry code.

    Args:
        code: Registry code, e.g. "SMT-AUTH-001".
        detail: Internal message, logged but never returned to the caller.
        context: Extra key/values for the structured log entry.
    """

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: Dict[str, Any] | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = dict(context or {})
        super().__init__(f"{code}: {detail}" if detail else code)

    @property
    def domain(self) -> str:
        return self.code.split("-")[1]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code!r}, detail={self.detail!r})"
