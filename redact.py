"""
redact.py -- Keep the API token out of every log sink.

mask_secrets() returns a copy of a payload with secret-looking keys replaced.
SecretMaskFilter applies the same rule to log record arguments and to any
token value that appears verbatim in a formatted message.
"""

from __future__ import annotations

import logging
from typing import Any

MASK = "***MASKED***"

SECRET_KEYS = frozenset({
    "authorize",
    "token",
    "api_token",
    "deriv_api_token",
    "access_token",
    "secret",
    "password",
})


def _is_secret_key(key: Any) -> bool:
    return isinstance(key, str) and key.strip().lower() in SECRET_KEYS


def mask_secrets(obj: Any) -> Any:
    """Recursively copy *obj*, masking values stored under secret keys."""
    if isinstance(obj, dict):
        out = {}
        for key, value in obj.items():
            if _is_secret_key(key) and value not in (None, ""):
                out[key] = MASK
            else:
                out[key] = mask_secrets(value)
        return out
    if isinstance(obj, (list, tuple)):
        return type(obj)(mask_secrets(v) for v in obj)
    return obj


class SecretMaskFilter(logging.Filter):
    """
    Logging filter that masks dict arguments and known literal secrets.

    Attach it to handlers (not loggers) so records from every module pass
    through it.
    """

    def __init__(self, secrets: list[str] | None = None) -> None:
        super().__init__()
        self._secrets = [s for s in (secrets or []) if s and len(s) >= 4]

    def add_secret(self, value: str) -> None:
        if value and len(value) >= 4 and value not in self._secrets:
            self._secrets.append(value)

    def _scrub_text(self, text: str) -> str:
        for secret in self._secrets:
            if secret in text:
                text = text.replace(secret, MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, dict):
            record.args = mask_secrets(record.args)
        elif isinstance(record.args, tuple) and record.args:
            record.args = tuple(
                mask_secrets(a) if isinstance(a, (dict, list)) else a
                for a in record.args
            )
        if self._secrets:
            try:
                message = record.getMessage()
            except (TypeError, ValueError):
                return True
            scrubbed = self._scrub_text(message)
            if scrubbed != message:
                record.msg = scrubbed
                record.args = ()
        return True


def install(secrets: list[str] | None = None) -> SecretMaskFilter:
    """Attach one SecretMaskFilter to every root handler and return it."""
    mask_filter = SecretMaskFilter(secrets)
    for handler in logging.getLogger().handlers:
        handler.addFilter(mask_filter)
    return mask_filter
