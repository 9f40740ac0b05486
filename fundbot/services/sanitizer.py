# =============================================================================
# Input Sanitizer — Validation, Abuse Patterns, Cleanup
# =============================================================================
#
# Runs on the requester's text after mention stripping and before anything
# that costs money. Checks, in order:
#   1. non-empty after trim
#   2. length within [MIN_MESSAGE_LENGTH, max_length]
#   3. blocked phrases   — case-insensitive substring match
#   4. suspicious patterns — ordered (label, regex) pairs
# then strips control characters and collapses whitespace.
#
# Each failure reason has its own requester-facing message. Adding or
# removing an abuse pattern is an edit to SUSPICIOUS_PATTERNS only.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum

from fundbot.config import settings

logger = logging.getLogger(__name__)

MIN_MESSAGE_LENGTH = 1

BLOCKED_PHRASES: tuple[str, ...] = (
    "ignore previous instructions",
    "disregard previous instructions",
    "forget all previous",
    "system:",
    "assistant:",
)

# (label, matcher). Order matters only for which label gets logged.
SUSPICIOUS_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    # Instruction override
    ("instruction_override", re.compile(r"ignore\s+previous\s+instructions", re.I)),
    ("instruction_override", re.compile(r"disregard\s+all\s+previous", re.I)),
    ("instruction_override", re.compile(r"forget\s+everything", re.I)),
    ("instruction_override", re.compile(r"you\s+are\s+now", re.I)),
    ("instruction_override", re.compile(r"new\s+instructions:", re.I)),
    # Role-prefix injection
    ("role_prefix", re.compile(r"system\s*:\s*", re.I)),
    ("role_prefix", re.compile(r"assistant\s*:\s*", re.I)),
    # Prompt extraction
    ("prompt_extraction", re.compile(r"show\s+me\s+your\s+prompt", re.I)),
    ("prompt_extraction", re.compile(r"what\s+are\s+your\s+instructions", re.I)),
    ("prompt_extraction", re.compile(r"reveal\s+your\s+system\s+prompt", re.I)),
    # Markup / script injection
    ("script_injection", re.compile(r"<script[\s\S]*?>", re.I)),
    ("script_injection", re.compile(r"javascript:", re.I)),
    ("script_injection", re.compile(r"onerror\s*=", re.I)),
    ("script_injection", re.compile(r"onclick\s*=", re.I)),
]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_WHITESPACE = re.compile(r"\s+")
_MENTION = re.compile(r"<@[A-Z0-9]+>")

_HELP_PATTERNS = [
    re.compile(r"^help$", re.I),
    re.compile(r"^what can you do\??$", re.I),
    re.compile(r"^commands\??$", re.I),
    re.compile(r"^how do i use you\??$", re.I),
]


class Rejection(str, Enum):
    EMPTY = "empty"
    TOO_SHORT = "too_short"
    TOO_LONG = "too_long"
    BLOCKED_PHRASE = "blocked_phrase"
    SUSPICIOUS_PATTERN = "suspicious_pattern"


@dataclass
class ValidationResult:
    """Outcome of validate(): either sanitized_text or reason + message."""

    valid: bool
    sanitized_text: str | None = None
    reason: Rejection | None = None
    message: str | None = None


def _reject(reason: Rejection, message: str) -> ValidationResult:
    return ValidationResult(valid=False, reason=reason, message=message)


def validate(raw_text: str | None, max_length: int | None = None) -> ValidationResult:
    """Validate and sanitize one message from a requester."""
    max_length = max_length or settings.max_message_length

    if not raw_text or not isinstance(raw_text, str):
        return _reject(Rejection.EMPTY, "Please provide a valid message.")

    trimmed = raw_text.strip()

    if len(trimmed) < MIN_MESSAGE_LENGTH:
        return _reject(
            Rejection.TOO_SHORT,
            "Your message is too short. Please ask a question or provide "
            "more details.",
        )

    if len(trimmed) > max_length:
        return _reject(
            Rejection.TOO_LONG,
            f"Your message is too long ({len(trimmed)} characters). "
            f"Please keep it under {max_length} characters.",
        )

    lowered = trimmed.lower()
    for phrase in BLOCKED_PHRASES:
        if phrase in lowered:
            return _reject(
                Rejection.BLOCKED_PHRASE,
                "Your message contains phrases that cannot be processed. "
                "Please rephrase your question.",
            )

    label = match_suspicious(trimmed)
    if label is not None:
        logger.warning(
            "Suspicious pattern '%s' detected in message: %s",
            label, trimmed[:100],
        )
        return _reject(
            Rejection.SUSPICIOUS_PATTERN,
            "Your message appears to contain unusual formatting. "
            "Please rephrase your question naturally.",
        )

    sanitized = _WHITESPACE.sub(" ", _CONTROL_CHARS.sub("", trimmed))
    return ValidationResult(valid=True, sanitized_text=sanitized)


def match_suspicious(text: str) -> str | None:
    """Label of the first suspicious pattern found in text, or None."""
    for label, pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(text):
            return label
    return None


def clean_message_text(text: str) -> str:
    """Remove bot mentions (`<@U12345>`) and collapse whitespace."""
    return _WHITESPACE.sub(" ", _MENTION.sub("", text or "")).strip()


def is_help_request(text: str) -> bool:
    trimmed = text.strip()
    return any(pattern.match(trimmed) for pattern in _HELP_PATTERNS)


def truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."
