"""Encoding validation for free-text fields.

Stored text must be well-formed. A field is malformed when it carries
U+FFFD replacement characters (left behind by a lossy decode upstream) or
unpaired surrogates. ``check_text`` never mutates silently: it returns the
cleaned text together with an ``EncodingError`` describing what was removed,
and the caller's policy decides whether to keep the cleaned value or reject
the input.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import EncodingError, ValidationError

logger = logging.getLogger(__name__)

_MALFORMED = re.compile("[\ufffd\ud800-\udfff]")


class TextPolicy(str, Enum):
    """What to do with a malformed text field."""

    STRIP = "strip"    # drop malformed sequences, log a warning
    REJECT = "reject"  # raise ValidationError


@dataclass(frozen=True, slots=True)
class TextCheck:
    """Result of an encoding check: cleaned text or the error found."""

    text: str
    error: EncodingError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def check_text(value: str | bytes, field: str | None = None) -> TextCheck:
    """Validate that a value is well-formed text.

    Args:
        value: Text or raw UTF-8 bytes
        field: Field name, used in the error message

    Returns:
        TextCheck with the cleaned text and, if anything was removed,
        an EncodingError carrying the number of removed characters.
    """
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")

    cleaned, removed = _MALFORMED.subn("", value)
    if not removed:
        return TextCheck(text=value)

    label = field or "text"
    return TextCheck(
        text=cleaned,
        error=EncodingError(
            f"{label} contains {removed} malformed character(s)",
            field=field,
            removed=removed,
        ),
    )


def normalize_fields(
    data: dict[str, Any],
    fields: tuple[str, ...],
    policy: TextPolicy = TextPolicy.STRIP,
    entity_type: str = "entity",
) -> dict[str, Any]:
    """Apply the encoding check to selected fields of a payload.

    Non-string values and absent fields are left untouched.

    Raises:
        ValidationError: If a field is malformed and the policy is REJECT
    """
    normalized = dict(data)
    for name in fields:
        value = normalized.get(name)
        if not isinstance(value, (str, bytes)):
            continue

        result = check_text(value, field=name)
        if result.ok:
            normalized[name] = result.text
            continue

        if policy == TextPolicy.REJECT:
            raise ValidationError(str(result.error), field=name)

        logger.warning(
            f"Stripped {result.error.removed} malformed character(s) "
            f"from {entity_type}.{name}"
        )
        normalized[name] = result.text

    return normalized


__all__ = ["TextPolicy", "TextCheck", "check_text", "normalize_fields"]
