"""Failure reason normalization for error analysis.

Failed progress events carry free-form detail text ("SMTP timeout after 30s
for council@example.gov", "OpenAI 429 rate limit exceeded ..."). Grouping on
the raw text would give one bucket per submission, so each detail is mapped
to a small set of reason categories by case-insensitive pattern matching,
falling back to a scrubbed prefix of the message.
"""

import re
from enum import StrEnum


class FailureReason(StrEnum):
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    VALIDATION = "validation"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    TEMPLATE = "template"
    UNKNOWN = "unknown"


# Checked in order; first match wins.
_REASON_PATTERNS: tuple[tuple[FailureReason, tuple[str, ...]], ...] = (
    (FailureReason.RATE_LIMITED, ("rate limit", "too many requests", "429", "quota")),
    (FailureReason.TIMEOUT, ("timeout", "timed out", "deadline exceeded")),
    (FailureReason.AUTHENTICATION, (
        "unauthorized",
        "forbidden",
        "invalid credentials",
        "authentication failed",
        "permission denied",
        "401",
        "403",
    )),
    (FailureReason.NETWORK, (
        "connection refused",
        "connection reset",
        "econnreset",
        "enotfound",
        "name resolution",
        "network",
    )),
    (FailureReason.PROVIDER_UNAVAILABLE, ("service unavailable", "503", "502", "overloaded", "bad gateway")),
    (FailureReason.TEMPLATE, ("template", "merge field", "placeholder")),
    (FailureReason.VALIDATION, ("invalid", "validation", "missing required", "malformed")),
)

_UUID_RE = re.compile(r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE)
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_NUMBER_RE = re.compile(r"\d+")
_SPACE_RE = re.compile(r"\s+")


def classify_failure(detail: str | None) -> FailureReason:
    """Map free-form failure detail to a reason category."""
    if not detail:
        return FailureReason.UNKNOWN
    text = detail.lower()
    for reason, patterns in _REASON_PATTERNS:
        if any(p in text for p in patterns):
            return reason
    return FailureReason.UNKNOWN


def scrub_detail(detail: str, max_length: int = 80) -> str:
    """Strip identifiers and numbers so similar messages compare equal."""
    text = _UUID_RE.sub("<id>", detail)
    text = _EMAIL_RE.sub("<email>", text)
    text = _NUMBER_RE.sub("<n>", text)
    text = _SPACE_RE.sub(" ", text).strip().lower()
    return text[:max_length]


def normalize_failure_reason(detail: str | None) -> str:
    """Stable grouping key for a failed event's detail text.

    Known categories collapse to their name; unknown messages collapse to
    their scrubbed prefix so repeated identical faults still group together.
    """
    reason = classify_failure(detail)
    if reason is not FailureReason.UNKNOWN or not detail:
        return reason.value
    return f"{FailureReason.UNKNOWN.value}: {scrub_detail(detail)}"
