from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Iterable, Mapping

from markupsafe import escape

from esign.core.errors import validation_error
from esign.models.template import DelimiterType
from esign.schemas.template import DelimiterConfig
from esign.utils.email_validation import is_valid_email

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%m/%d/%Y", "%d-%m-%Y", "%Y/%m/%d", "%d %b %Y", "%b %d, %Y")

EXAMPLE_VALUES = {
    DelimiterType.EMAIL: "john.doe@example.com",
    DelimiterType.PHONE: "+1234567890",
    DelimiterType.DATE: "2024-01-15",
    DelimiterType.NUMBER: 12345,
    DelimiterType.TEXT: "Sample text",
}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def is_valid_date(value: Any) -> bool:
    if isinstance(value, datetime):
        return True
    text = str(value).strip()
    try:
        datetime.fromisoformat(text.replace("Z", "+00:00"))
        return True
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            datetime.strptime(text, fmt)
            return True
        except ValueError:
            continue
    return False


def is_valid_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value).strip())
    except ValueError:
        return False
    return True


def check_value(delimiter: DelimiterConfig, value: Any) -> str | None:
    """Error message for a value that does not match the delimiter type, else None."""
    if delimiter.type == DelimiterType.EMAIL and not is_valid_email(str(value)):
        return f"Invalid email format for {delimiter.key}"
    if delimiter.type == DelimiterType.PHONE and not PHONE_PATTERN.match(str(value).strip().replace(" ", "")):
        return f"Invalid phone format for {delimiter.key}"
    if delimiter.type == DelimiterType.DATE and not is_valid_date(value):
        return f"Invalid date format for {delimiter.key}"
    if delimiter.type == DelimiterType.NUMBER and not is_valid_number(value):
        return f"Invalid number format for {delimiter.key}"
    return None


def type_errors(delimiters: Iterable[DelimiterConfig], values: Mapping[str, Any]) -> list[dict[str, str]]:
    errors: list[dict[str, str]] = []
    for delimiter in delimiters:
        if delimiter.key not in values or _is_blank(values[delimiter.key]):
            continue
        message = check_value(delimiter, values[delimiter.key])
        if message:
            errors.append({"delimiter": delimiter.key, "type": delimiter.type.value, "message": message})
    return errors


def resolve_payload(delimiters: list[DelimiterConfig], payload: Mapping[str, Any] | None) -> dict[str, Any]:
    """Validate an initiate payload and fill defaults.

    Raises VALIDATION_ERROR listing ``missing_delimiters`` or type ``errors``.
    """
    resolved: dict[str, Any] = dict(payload or {})
    for delimiter in delimiters:
        if _is_blank(resolved.get(delimiter.key)) and delimiter.default_value not in (None, ""):
            resolved[delimiter.key] = delimiter.default_value

    missing = [item.key for item in delimiters if item.required and _is_blank(resolved.get(item.key))]
    if missing:
        raise validation_error(
            f"The following required delimiters are missing: {', '.join(missing)}",
            missing_delimiters=missing,
        )
    errors = type_errors(delimiters, resolved)
    if errors:
        raise validation_error(
            "One or more delimiter values do not match their configured types",
            errors=errors,
        )
    return resolved


def example_value(delimiter: DelimiterConfig) -> Any:
    if delimiter.default_value not in (None, ""):
        return delimiter.default_value
    return EXAMPLE_VALUES.get(delimiter.type, EXAMPLE_VALUES[DelimiterType.TEXT])


def render_html(html_content: str, values: Mapping[str, Any]) -> str:
    """Substitute ``{{key}}`` placeholders with escaped values; unknown keys stay in place."""

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in values or values[key] is None:
            return match.group(0)
        return str(escape(str(values[key])))

    return PLACEHOLDER_PATTERN.sub(_replace, html_content or "")
