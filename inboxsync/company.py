"""CompanyResolver: infer a company name and sender address from message headers.

The name comes from an ordered list of pure rules; the first rule that
yields a non-empty name wins:

1. keyword patterns in the subject (``Invoice - Acme``, ``Acme Invoice``,
   ``... from Acme``, ``Re: Acme``)
2. the first run of Title-Case words in the subject
3. the From display name, minus stop-words and generic sender terms
4. the first label of the sender's domain
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from typing import NamedTuple

import structlog

from .errors import CompanyNameUnresolved
from .models import ResolvedCompany

logger = structlog.get_logger()

STOP_WORDS = frozenset(
    {"the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"}
)

GENERIC_SENDER_TERMS = frozenset(
    {
        "team",
        "support",
        "no-reply",
        "noreply",
        "do-not-reply",
        "donotreply",
        "notification",
        "notifications",
        "info",
        "admin",
        "mailer-daemon",
        "help",
        "service",
        "services",
        "billing",
        "accounts",
    }
)

_NAME_CHARS = r"[A-Za-z0-9\s&.,]+"
_KEYWORDS = r"(?:Invoice|Document|Contract|Report|Statement|Receipt)"

SUBJECT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"{_KEYWORDS}\s*[-:]\s*({_NAME_CHARS})", re.IGNORECASE),
    re.compile(rf"({_NAME_CHARS})\s+{_KEYWORDS}", re.IGNORECASE),
    re.compile(rf"\b(?:for|to|from)\s+({_NAME_CHARS})", re.IGNORECASE),
    re.compile(rf"\b(?:Re|Fwd|Fw):\s*({_NAME_CHARS})", re.IGNORECASE),
)

_TITLE_CASE_RUN = re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b")
_ANGLE_ADDRESS = re.compile(r"<(.+?)>")
_DISPLAY_NAME = re.compile(r"^(.+?)\s*<")
_DOMAIN_LABEL = re.compile(r"@([^.@\s>]+)\.")
_INITIAL = re.compile(r"^[A-Za-z]\.$")


class HeaderView(NamedTuple):
    subject: str
    sender: str


NameRule = Callable[[HeaderView], str | None]


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------


def extract_email(from_header: str) -> str:
    """``Name <addr>`` -> ``addr``; otherwise the whole header, trimmed."""
    match = _ANGLE_ADDRESS.search(from_header)
    if match:
        return match.group(1).strip()
    return from_header.strip()


def _clean_words(text: str, *, extra_stop: frozenset[str] = frozenset()) -> str | None:
    words = [
        word
        for word in text.split()
        if len(word) > 2 and word.lower() not in STOP_WORDS and word.lower() not in extra_stop
    ]
    if not words:
        return None
    return " ".join(words).rstrip(" .,") or None


# ----------------------------------------------------------------------
# Rules
# ----------------------------------------------------------------------


def name_from_subject_patterns(headers: HeaderView) -> str | None:
    for pattern in SUBJECT_PATTERNS:
        match = pattern.search(headers.subject)
        if match:
            name = _clean_words(match.group(1))
            if name:
                return name
    return None


def name_from_title_case(headers: HeaderView) -> str | None:
    for match in _TITLE_CASE_RUN.finditer(headers.subject):
        name = _clean_words(match.group(0))
        if name:
            return name
    return None


def name_from_display_name(headers: HeaderView) -> str | None:
    match = _DISPLAY_NAME.match(headers.sender.strip())
    if not match:
        return None
    display = match.group(1).strip().strip("\"'")
    # "J. Smith" is a person, not a company
    if any(_INITIAL.match(token) for token in display.split()):
        return None
    return _clean_words(display, extra_stop=GENERIC_SENDER_TERMS)


def name_from_domain(headers: HeaderView) -> str | None:
    match = _DOMAIN_LABEL.search(extract_email(headers.sender))
    if not match:
        return None
    label = match.group(1)
    return label[:1].upper() + label[1:]


DEFAULT_RULES: tuple[NameRule, ...] = (
    name_from_subject_patterns,
    name_from_title_case,
    name_from_display_name,
    name_from_domain,
)


class CompanyResolver:
    """Evaluate the name rules in order over ``Subject`` and ``From``."""

    def __init__(self, rules: tuple[NameRule, ...] = DEFAULT_RULES) -> None:
        self._rules = rules

    def resolve(self, headers: Mapping[str, str]) -> ResolvedCompany:
        """Return the inferred company.

        Raises :class:`CompanyNameUnresolved` when no sender address is
        present or every rule comes up empty.
        """
        lowered = {key.lower(): value for key, value in headers.items()}
        view = HeaderView(subject=lowered.get("subject", ""), sender=lowered.get("from", ""))

        email = extract_email(view.sender)
        if not email:
            raise CompanyNameUnresolved("Message has no From address")

        for rule in self._rules:
            name = rule(view)
            if name:
                logger.debug("company_name_resolved", rule=rule.__name__, name=name, email=email)
                return ResolvedCompany(name=name, email=email)

        raise CompanyNameUnresolved(
            f"No company name in subject {view.subject!r} or sender {view.sender!r}"
        )
