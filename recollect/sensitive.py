"""
Sensitive content scanner.

Detects credentials and PII in text that is about to be stored (LLM merge
output) and produces a redacted copy.
"""

import re
from dataclasses import dataclass, field
from typing import List, Tuple


@dataclass(frozen=True)
class SensitiveMatch:
    type: str
    value: str
    start: int
    end: int
    redacted: str


@dataclass
class SensitiveScan:
    has_sensitive: bool
    redacted_text: str
    matches: List[SensitiveMatch] = field(default_factory=list)


# (type, pattern, replacement)
PATTERNS: List[Tuple[str, "re.Pattern[str]", str]] = [
    # API keys
    ("anthropic_key", re.compile(r"sk-ant-[a-zA-Z0-9-]{20,}"), "sk-ant-***"),
    ("openai_key", re.compile(r"sk-[a-zA-Z0-9]{20,}"), "sk-***"),
    ("aws_access_key", re.compile(r"AKIA[0-9A-Z]{16}"), "AKIA***"),
    ("github_token", re.compile(r"gh[pousr]_[a-zA-Z0-9]{36}"), "gh*_***"),
    ("gitlab_token", re.compile(r"glpat-[a-zA-Z0-9-]{20,}"), "glpat-***"),
    ("slack_token", re.compile(r"xox[baprs]-[0-9]{10,13}-[0-9]{10,13}-[a-zA-Z0-9]{24}"), "xox*-***"),
    ("stripe_key", re.compile(r"(?:sk|pk)_(?:live|test)_[a-zA-Z0-9]{24,}"), "sk_***"),
    ("google_api_key", re.compile(r"AIza[0-9A-Za-z\-_]{35}"), "AIza***"),
    ("npm_token", re.compile(r"npm_[a-zA-Z0-9]{36}"), "npm_***"),

    # Secrets in config-like assignments
    ("password_assignment", re.compile(
        r"(?:password|passwd|pwd|secret|token|api_key|apikey|auth)['\"]?\s*[:=]\s*['\"]([^'\"\s]{8,})['\"]?",
        re.IGNORECASE
    ), "[REDACTED]"),

    # PII
    ("email", re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), "[EMAIL]"),
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN]"),
    ("credit_card", re.compile(
        r"\b(?:4[0-9]{12}(?:[0-9]{3})?|5[1-5][0-9]{14}|3[47][0-9]{13}|6(?:011|5[0-9]{2})[0-9]{12})\b"
    ), "[CARD]"),

    # Security material
    ("jwt", re.compile(r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*"), "[JWT]"),
    ("private_key", re.compile(
        r"-----BEGIN (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----[\s\S]*?-----END (?:RSA |EC |DSA |OPENSSH )?PRIVATE KEY-----"
    ), "[PRIVATE_KEY]"),
]


def scan_sensitive(text: str) -> SensitiveScan:
    """Find sensitive spans and build a redacted copy of the text."""
    found: List[SensitiveMatch] = []
    for kind, pattern, replacement in PATTERNS:
        for match in pattern.finditer(text):
            found.append(SensitiveMatch(kind, match.group(0), match.start(), match.end(), replacement))

    # Earliest first, longest first at the same position; drop overlaps
    found.sort(key=lambda m: (m.start, -(m.end - m.start)))
    matches: List[SensitiveMatch] = []
    for match in found:
        if matches and match.start < matches[-1].end:
            continue
        matches.append(match)

    redacted = text
    for match in reversed(matches):
        redacted = redacted[:match.start] + match.redacted + redacted[match.end:]

    return SensitiveScan(has_sensitive=bool(matches), redacted_text=redacted, matches=matches)
