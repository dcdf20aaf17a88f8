"""Input validation utilities.

Validators for administrator-supplied webhook configuration. The delivery
engine only needs a small, strict set of rules: the target must be an
absolute http(s) URL, the webhook must have a name, and static headers must
be sendable as HTTP headers.

Validation philosophy:
- Fail closed (reject on ambiguity)
- Validate early (at the registry boundary, never at delivery time)
- Normalize before validation (strip whitespace, remove null bytes)
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

import structlog

log = structlog.get_logger(__name__)

MAX_WEBHOOK_NAME_LENGTH = 255
MAX_WEBHOOK_URL_LENGTH = 2048
MAX_HEADER_VALUE_LENGTH = 4096

ALLOWED_URL_SCHEMES = frozenset({"http", "https"})

# RFC 7230 token characters
_HEADER_NAME_PATTERN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

# Set by the delivery engine on every request; not configurable per webhook
RESERVED_HEADER_NAMES = frozenset({"content-type", "user-agent", "x-webhook-signature"})


class ValidationError(ValueError):
    """Raised when input validation fails.

    This is a ValueError subclass to maintain compatibility with
    FastAPI's automatic validation error handling.
    """

    pass


class InputValidator:
    """Validates and sanitizes webhook configuration input.

    All methods are static to allow use without instantiation. Each
    validator normalizes its input, checks it, and returns the sanitized
    value or raises ValidationError.

    Usage:
        url = InputValidator.validate_webhook_url(body.url)
    """

    @staticmethod
    def validate_webhook_url(url: str) -> str:
        """Validate a webhook target URL.

        Validation rules:
        - Strip whitespace and null bytes
        - Reject empty URLs
        - Scheme must be http or https
        - A host is required
        - Enforce maximum length

        Raises:
            ValidationError: If validation fails
        """
        if not isinstance(url, str):
            raise ValidationError("URL must be a string")

        sanitized = url.strip().replace("\x00", "")
        if not sanitized:
            raise ValidationError("URL cannot be empty")

        if len(sanitized) > MAX_WEBHOOK_URL_LENGTH:
            raise ValidationError(
                f"URL too long. Maximum {MAX_WEBHOOK_URL_LENGTH} characters allowed."
            )

        try:
            parts = urlsplit(sanitized)
        except ValueError as exc:
            raise ValidationError(f"Invalid URL: {exc}") from exc

        if parts.scheme.lower() not in ALLOWED_URL_SCHEMES:
            log.info("validation.webhook_url_rejected", scheme=parts.scheme)
            raise ValidationError("Invalid webhook URL: scheme must be http or https")

        if not parts.hostname:
            raise ValidationError("Invalid webhook URL: host is required")

        return sanitized

    @staticmethod
    def validate_name(name: str) -> str:
        """Validate a webhook display name."""
        if not isinstance(name, str):
            raise ValidationError("Name must be a string")

        sanitized = name.strip().replace("\x00", "")
        if not sanitized:
            raise ValidationError("Name cannot be empty")

        if len(sanitized) > MAX_WEBHOOK_NAME_LENGTH:
            raise ValidationError(
                f"Name too long. Maximum {MAX_WEBHOOK_NAME_LENGTH} characters allowed."
            )
        return sanitized

    @staticmethod
    def validate_headers(headers: dict[str, str]) -> dict[str, str]:
        """Validate static headers configured on a webhook.

        Header names must be RFC 7230 tokens and may not shadow a header the
        engine sets itself (any casing); values may not contain line breaks
        (header injection).
        """
        sanitized: dict[str, str] = {}
        for raw_name, raw_value in headers.items():
            name = str(raw_name).strip()
            if not _HEADER_NAME_PATTERN.match(name):
                raise ValidationError(f"Invalid header name: {raw_name!r}")
            if name.lower() in RESERVED_HEADER_NAMES:
                raise ValidationError(f"Header {name!r} is set by the delivery engine")

            value = str(raw_value)
            if "\r" in value or "\n" in value or "\x00" in value:
                log.warning("security.header_injection_attempt", header=name)
                raise ValidationError(f"Header {name!r} contains illegal characters")
            if len(value) > MAX_HEADER_VALUE_LENGTH:
                raise ValidationError(f"Header {name!r} value too long")

            sanitized[name] = value
        return sanitized
