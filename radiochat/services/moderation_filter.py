"""Message text moderation.

Redacts, never blocks: every result is allowed. Blocking belongs to the
ban registry and violation tracker upstream.

Pipeline:
1. Dangerous markup (all rooms). Checks run in a fixed order and the first
   hazardous construct found is redacted everywhere it occurs; later
   categories are not looked at.
2. Public room: URLs and bare domains, then phone numbers.
3. Private room: admin-maintained blacklist patterns. A hit counts a
   ``spam_url`` violation against the sender's IP.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

REDACTION = "***"

REASON_URL = "URL removed"
REASON_PHONE = "Phone number removed"
REASON_BLACKLIST = "Blacklisted URL removed"

EVENT_HANDLERS = (
    "onload", "onerror", "onclick", "onmouseover", "onmouseout",
    "onkeydown", "onkeyup", "onfocus", "onblur", "onchange",
    "onsubmit", "ondblclick", "oncontextmenu", "oninput",
    "onmouseenter", "onmouseleave", "onwheel", "oncopy", "onpaste",
)

# Order matters: the first match wins
DANGEROUS_PATTERNS: List[Tuple[Pattern[str], str]] = [
    (re.compile(r"<script\b[^>]*>(.*?)</script>", re.IGNORECASE | re.DOTALL), "Script tags not allowed"),
    *[
        (re.compile(rf"{handler}\s*=", re.IGNORECASE), "Event handlers not allowed")
        for handler in EVENT_HANDLERS
    ],
    (re.compile(r"javascript\s*:", re.IGNORECASE), "JavaScript protocol not allowed"),
    (re.compile(r"data:text/html", re.IGNORECASE), "Data URLs not allowed"),
    (re.compile(r"<style\b[^>]*>(.*?)</style>", re.IGNORECASE | re.DOTALL), "Style tags not allowed"),
    (re.compile(r"<(iframe|object|embed|applet)\b[^>]*>", re.IGNORECASE), "Embedded content not allowed"),
    (re.compile(r"<meta\b[^>]*>", re.IGNORECASE), "Meta tags not allowed"),
    (re.compile(r"<base\b[^>]*>", re.IGNORECASE), "Base tags not allowed"),
    (re.compile(r"<link\b[^>]*>", re.IGNORECASE), "Link tags not allowed"),
    (re.compile(r"<form\b[^>]*>", re.IGNORECASE), "Form tags not allowed"),
    (re.compile(r"<(input|textarea|button|select)\b[^>]*>", re.IGNORECASE), "Form inputs not allowed"),
]

URL_PATTERN = re.compile(
    r"\b(?:(?:https?|ftp|file)://|www\.|ftp\.)[-A-Z0-9+&@#/%=~_|$?!:,.]*[A-Z0-9+&@#/%=~_|$]",
    re.IGNORECASE,
)
DOMAIN_PATTERN = re.compile(
    r"\b[a-z0-9]+([\-.][a-z0-9]+)*\."
    r"(com|net|org|edu|gov|co|io|ai|app|dev|tech|info|biz|me|tv|cc|xyz|online|site|website|blog|shop|store)\b",
    re.IGNORECASE,
)
PHONE_PATTERNS = (
    # International / long digit runs with separators, must start and end on a digit
    re.compile(r"\+?\d[\d\s\-()]{8,}\d"),
    re.compile(r"(\(?\d{3}\)?[\s.\-]?)?\d{3}[\s.\-]?\d{4}"),
)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class FilterResult:
    """
    Outcome of filtering one message body.

    Attributes:
        filtered: Text after redaction
        modified: True when anything was redacted
        reasons: One entry per redaction category that fired, in pipeline order
        allowed: Always True
    """
    filtered: str
    modified: bool = False
    reasons: List[str] = field(default_factory=list)
    allowed: bool = True

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "filtered": self.filtered,
            "modified": self.modified,
            "reasons": list(self.reasons),
        }


# ============================================================================
# Pure stages
# ============================================================================

def find_dangerous(text: str) -> Optional[Tuple[str, str]]:
    """
    Find the first hazardous construct.

    Returns:
        ``(matched_text, reason)`` or None when the text is clean
    """
    for pattern, reason in DANGEROUS_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0), reason
    return None


def strip_dangerous(text: str) -> Tuple[str, Optional[str]]:
    """Redact every occurrence of the first hazardous construct found."""
    found = find_dangerous(text)
    if found is None:
        return text, None
    matched, reason = found
    return text.replace(matched, REDACTION), reason


def redact_urls(text: str) -> Tuple[str, bool]:
    result = URL_PATTERN.sub(REDACTION, text)
    result = DOMAIN_PATTERN.sub(REDACTION, result)
    return result, result != text


def redact_phone_numbers(text: str) -> Tuple[str, bool]:
    result = text
    for pattern in PHONE_PATTERNS:
        result = pattern.sub(REDACTION, result)
    return result, result != text


def compile_blacklist_pattern(pattern: str) -> Pattern[str]:
    """``*`` becomes a regex wildcard, everything else is literal; case-insensitive."""
    return re.compile(re.escape(pattern).replace(r"\*", ".*"), re.IGNORECASE)


def apply_blacklist(text: str, patterns: Iterable[str]) -> Tuple[str, bool]:
    """Redact every blacklist match; returns the text and whether any pattern hit."""
    result = text
    for raw in patterns:
        if not raw:
            continue
        try:
            compiled = compile_blacklist_pattern(raw)
        except re.error as e:
            logger.warning(f"Skipping unusable blacklist pattern {raw!r}: {e}")
            continue
        result = compiled.sub(REDACTION, result)
    return result, result != text


# ============================================================================
# Filter
# ============================================================================

class ModerationFilter:
    """
    Stateless apart from its collaborators.

    Args:
        blacklist: Source of private-room patterns (``UrlBlacklist``)
        violations: Tracker fed with ``spam_url`` hits (``ViolationTracker``)
    """

    def __init__(self, blacklist=None, violations=None):
        self._blacklist = blacklist
        self._violations = violations

    def filter_public(self, body: str) -> FilterResult:
        reasons: List[str] = []

        text, reason = strip_dangerous(body)
        if reason:
            reasons.append(reason)

        text, replaced = redact_urls(text)
        if replaced:
            reasons.append(REASON_URL)

        text, replaced = redact_phone_numbers(text)
        if replaced:
            reasons.append(REASON_PHONE)

        return FilterResult(filtered=text, modified=text != body, reasons=reasons)

    async def filter_private(self, body: str, ip: str = "") -> FilterResult:
        reasons: List[str] = []

        text, reason = strip_dangerous(body)
        if reason:
            reasons.append(reason)

        patterns = await self._blacklist.patterns() if self._blacklist is not None else []
        text, hit = apply_blacklist(text, patterns)
        if hit:
            reasons.append(REASON_BLACKLIST)
            if ip and self._violations is not None:
                await self._violations.record_and_check(ip, "spam_url")

        return FilterResult(filtered=text, modified=text != body, reasons=reasons)
