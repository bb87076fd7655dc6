"""
Redaction hooks for scrubbing credentials from exported records.

Provides configurable redaction of:
- Store-only credential columns (never part of a field table)
- Secret-looking keys inside JSON fields (password, token, api_key, ...)
- Secrets embedded in free text (best-effort patterns)
"""

import logging
import re
from typing import Any, Dict, List, Optional, Set

from ..core.models import EntitySpec, FieldKind

logger = logging.getLogger(__name__)

# Keys inside JSON fields whose values are always redacted (case-insensitive)
DEFAULT_SENSITIVE_KEYS = {
    "password",
    "password_hash",
    "passwordhash",
    "passwd",
    "secret",
    "token",
    "access_token",
    "refresh_token",
    "api_key",
    "apikey",
    "authorization",
    "cookie",
}

# Default regex patterns for detecting secrets in text
DEFAULT_SECRET_PATTERNS = [
    # Bearer tokens
    r'bearer\s+[a-zA-Z0-9_.-]{16,}',
    # JWT tokens
    r'eyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+',
    # bcrypt / argon2 hashes
    r'\$2[aby]\$\d{2}\$[./A-Za-z0-9]{53}',
    r'\$argon2(?:id|i|d)\$[^\s"]+',
]

REDACTED_VALUE = "[REDACTED]"


class Redactor:
    """
    Redacts sensitive information from exported records.

    Projection onto the field table always happens. Scrubbing is opt-in:
    a scrubbed archive no longer restores the values it replaced, so it is
    for sharing, not for backups. Only JSON-kind fields are scanned; text
    fields hold user-entered data that must round-trip unchanged.
    """

    def __init__(
        self,
        sensitive_keys: Optional[Set[str]] = None,
        secret_patterns: Optional[List[str]] = None,
        custom_patterns: Optional[List[str]] = None,
    ):
        """
        Initialize the redactor.

        Args:
            sensitive_keys: JSON keys whose values are always redacted
            secret_patterns: Regex patterns for secret detection
            custom_patterns: Additional custom regex patterns
        """
        self.sensitive_keys = {k.lower() for k in (sensitive_keys or DEFAULT_SENSITIVE_KEYS)}
        self.secret_patterns = list(secret_patterns or DEFAULT_SECRET_PATTERNS)

        if custom_patterns:
            self.secret_patterns.extend(custom_patterns)

        self._compiled_patterns = [
            re.compile(p, re.IGNORECASE) for p in self.secret_patterns
        ]

    def redact_record(
        self,
        spec: EntitySpec,
        record: Dict[str, Any],
        scrub_secrets: bool = True,
    ) -> Dict[str, Any]:
        """
        Project a store record onto the field table.

        Store-only columns such as password_hash are always dropped. With
        scrub_secrets, secret-looking values inside JSON fields are replaced
        as well. Creates a copy; does not modify the original.
        """
        result = {}
        for field_spec in spec.fields:
            value = record.get(field_spec.name)
            if scrub_secrets and field_spec.kind == FieldKind.JSON and value is not None:
                value = self._redact_value(value)
            result[field_spec.name] = value
        return result

    def _redact_value(self, value: Any) -> Any:
        """Recursively redact secrets from a value."""
        if value is None:
            return None

        if isinstance(value, str):
            return self._redact_string(value)

        if isinstance(value, dict):
            return {
                k: (REDACTED_VALUE if str(k).lower() in self.sensitive_keys and v is not None
                    else self._redact_value(v))
                for k, v in value.items()
            }

        if isinstance(value, list):
            return [self._redact_value(item) for item in value]

        return value

    def _redact_string(self, text: str) -> str:
        result = text
        for pattern in self._compiled_patterns:
            result = pattern.sub(REDACTED_VALUE, result)
        return result
