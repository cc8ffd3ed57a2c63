from __future__ import annotations

import re
from typing import Any, Callable, Optional, Union

REDACTED = "[REDACTED]"

_EMAIL_RE = re.compile(r"\b([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*(@[A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")

# Applied in order by redact_text.
_TEXT_RULES: tuple[tuple[re.Pattern, Union[str, Callable[[re.Match], str]]], ...] = (
    (_EMAIL_RE, lambda m: f"{m.group(1)}***{m.group(2)}"),
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+"), f"Bearer {REDACTED}"),
    # Chapa live/test secret keys (CHASECK-..., CHASECK_TEST-...)
    (re.compile(r"\bCHA[A-Z]*SECK_[A-Za-z0-9_-]+|\bCHASECK-[A-Za-z0-9_-]+"), REDACTED),
)

_SECRET_KEY_PARTS = ("token", "authorization", "secret", "signature", "password")
_ACCOUNT_KEY_PARTS = ("account_number", "accountnumber")


def mask_account_number(value: Optional[str]) -> Optional[str]:
    """Keep the last four digits of a bank account number."""
    if value is None:
        return None
    digits = str(value).strip()
    return "****" if len(digits) <= 4 else "****" + digits[-4:]


def redact_text(value: str) -> str:
    for pattern, replacement in _TEXT_RULES:
        value = pattern.sub(replacement, value)
    return value


def _key_kind(key: str) -> Optional[str]:
    k = (key or "").lower()
    if any(part in k for part in _SECRET_KEY_PARTS):
        return "secret"
    if any(part in k for part in _ACCOUNT_KEY_PARTS):
        return "account"
    return None


def redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return redact_dict(value)
    if isinstance(value, (list, tuple)):
        return [redact_value(v) for v in value]
    return value


def redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
    """Copy of a webhook or processor payload that is safe to log."""
    out: dict[str, Any] = {}
    for key, value in payload.items():
        kind = _key_kind(key)
        if kind == "secret":
            out[key] = REDACTED
        elif kind == "account":
            out[key] = mask_account_number(value)
        else:
            out[key] = redact_value(value)
    return out
