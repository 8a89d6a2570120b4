"""Field validation and sanitization for registration input."""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urlsplit

from jengahacks.errors import ValidationError

FULL_NAME_MIN = 2
FULL_NAME_MAX = 100
MAX_URL_LENGTH = 2048
MAX_RESUME_PATH_LENGTH = 512

_NAME_STRIP = re.compile(r"[<>]")
_PHONE_SEPARATORS = re.compile(r"[\s\-()]")
_PHONE_RE = re.compile(r"^\+?[1-9]\d{6,14}$")
_RESUME_PATH_RE = re.compile(r"^[A-Za-z0-9._\-/]+$")


def validate_full_name(raw: Optional[str]) -> str:
    name = _NAME_STRIP.sub("", (raw or "").strip())
    name = re.sub(r"\s+", " ", name)
    if len(name) < FULL_NAME_MIN or len(name) > FULL_NAME_MAX:
        raise ValidationError(
            f"Full name must be between {FULL_NAME_MIN} and {FULL_NAME_MAX} characters",
            field="full_name",
        )
    # Letters (any script), spaces, apostrophes and hyphens
    if not all(ch.isalpha() or ch in " '-" for ch in name):
        raise ValidationError("Full name contains invalid characters", field="full_name")
    return name


def normalize_whatsapp(raw: Optional[str]) -> Optional[str]:
    """Return ``+<digits>`` or None when absent.

    Accepts +254 712345678, 254712345678 and 0712345678 style input; a
    leading trunk zero is dropped when there is no ``+``.
    """
    if raw is None or not raw.strip():
        return None
    cleaned = _PHONE_SEPARATORS.sub("", raw.strip())
    if not cleaned.startswith("+") and cleaned.startswith("0"):
        cleaned = cleaned[1:]
    if not _PHONE_RE.match(cleaned):
        raise ValidationError("Please enter a valid WhatsApp number", field="whatsapp_number")
    return cleaned if cleaned.startswith("+") else f"+{cleaned}"


def sanitize_url(raw: Optional[str]) -> Optional[str]:
    """Return an http(s) URL with whitespace removed, or None when absent.

    A missing scheme defaults to https.
    """
    if raw is None or not raw.strip():
        return None
    url = re.sub(r"\s", "", raw)
    if not re.match(r"^https?://", url, re.IGNORECASE):
        if "://" in url:
            raise ValidationError("Only http and https links are allowed", field="linkedin_url")
        url = f"https://{url}"
    if len(url) > MAX_URL_LENGTH:
        raise ValidationError("Link is too long", field="linkedin_url")
    try:
        parts = urlsplit(url)
    except ValueError:
        raise ValidationError("Please enter a valid URL", field="linkedin_url") from None
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname or "." not in parts.hostname:
        raise ValidationError("Please enter a valid URL", field="linkedin_url")
    return url


def validate_resume_path(raw: Optional[str]) -> Optional[str]:
    """Resume is uploaded elsewhere; here it is only an object path string."""
    if raw is None or not raw.strip():
        return None
    path = raw.strip()
    if (
        len(path) > MAX_RESUME_PATH_LENGTH
        or path.startswith("/")
        or ".." in path.split("/")
        or not _RESUME_PATH_RE.match(path)
    ):
        raise ValidationError("Invalid resume path", field="resume_path")
    if not path.lower().endswith(".pdf"):
        raise ValidationError("Resume must be a PDF", field="resume_path")
    return path


__all__ = [
    "normalize_whatsapp",
    "sanitize_url",
    "validate_full_name",
    "validate_resume_path",
]
