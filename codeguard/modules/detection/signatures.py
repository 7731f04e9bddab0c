"""
Attack signature detection.

Stateless matcher for five attack families:
- sql_injection: UNION SELECT, tautologies, stacked queries, comment tails
- xss: script tags, javascript: URLs, inline event handlers, DOM sinks
- path_traversal: ../ sequences (raw and URL-encoded), /etc/passwd
- command_injection: shell metacharacters followed by commands, $( ), backticks
- brute_force: well-known default credentials

Patterns need structure (keywords with whitespace, quotes, angle brackets,
slashes). Generated codes use a special-character set without those, so a
legitimate code never trips a signature.

Confidence (0-100): 50 base + per-family boost, +10 for inputs over 1000
characters, +20 over 5000, +15 for more than 10 of <>"'&. Severity and ban
duration come from per-family tables and drive threat handling in the rate
limiter and code service.
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import unquote_plus

from pydantic import BaseModel, Field

from codeguard.models.rate_limit import SignatureMatch, ThreatSeverity

logger = logging.getLogger(__name__)


class SignatureFamily(BaseModel):
    """A named group of patterns for one attack class."""
    name: str
    patterns: List[str]
    confidence_boost: int = Field(..., ge=0, le=50)
    severity_score: int = Field(..., ge=0, le=100)
    ban_seconds: float = Field(..., gt=0)


DEFAULT_SIGNATURES: List[SignatureFamily] = [
    SignatureFamily(
        name="sql_injection",
        patterns=[
            r"\bunion\b[\s\S]{0,40}?\bselect\b",
            r"\bselect\b\s[\s\S]{0,200}?\bfrom\b",
            r"\binsert\s+into\b",
            r"\bdelete\s+from\b",
            r"\bdrop\s+(table|database|schema)\b",
            r"\bupdate\s+\w+\s+set\b",
            r"'\s*(or|and)\s+'?[\w]*'?\s*(=|like)",
            r"'\s*;?\s*(--|#)",
            r";\s*(drop|delete|insert|update|shutdown|exec)\b",
            r"\b(sleep|benchmark|pg_sleep)\s*\(",
            r"\bexec(\s|\()+x?p_\w+",
        ],
        confidence_boost=30,
        severity_score=90,
        ban_seconds=3600,
    ),
    SignatureFamily(
        name="xss",
        patterns=[
            r"<\s*script\b",
            r"javascript\s*:",
            r"<[^>]*\bon\w+\s*=",
            r"<\s*(iframe|object|embed|link|svg|img)\b",
            r"document\s*\.\s*cookie",
            r"window\s*\.\s*location",
        ],
        confidence_boost=25,
        severity_score=70,
        ban_seconds=1800,
    ),
    SignatureFamily(
        name="path_traversal",
        patterns=[
            r"\.\./",
            r"\.\.\\",
            r"%2e%2e(%2f|%5c|/|\\)",
            r"/etc/(passwd|shadow)",
        ],
        confidence_boost=20,
        severity_score=80,
        ban_seconds=3600,
    ),
    SignatureFamily(
        name="command_injection",
        patterns=[
            r"[;&|`]\s*(rm|cat|ls|wget|curl|nc|bash|sh|whoami|id|chmod|python|perl)\b",
            r"\$\([^)]*\)",
            r"`[^`]+`",
            r"\brm\s+-rf\b",
        ],
        confidence_boost=35,
        severity_score=95,
        ban_seconds=7200,
    ),
    SignatureFamily(
        name="brute_force",
        patterns=[
            r"^(admin|administrator|root|password|passwd|qwerty|letmein|123456\d*)$",
            r"\b(admin|root|administrator)\s*[:/]\s*(admin|root|password|toor|123456)\b",
            r"\b(password|passwd|pwd)\s*[:=]\s*(123456|password|qwerty|admin|letmein)\b",
        ],
        confidence_boost=40,
        severity_score=85,
        ban_seconds=86400,
    ),
]

_SUSPICIOUS_CHARS = re.compile(r"[<>\"'&]")


class AttackSignatureDetector:
    """
    Pattern matcher over arbitrary text.

    Usage:
        detector = AttackSignatureDetector()
        matches = detector.scan("1' OR '1'='1")
        if matches:
            level = detector.threat_level(matches)
    """

    def __init__(
        self,
        families: Optional[Iterable[SignatureFamily]] = None,
        base_confidence: int = 50,
        default_ban_seconds: float = 900
    ):
        self.families: Dict[str, SignatureFamily] = {
            family.name: family for family in (families or DEFAULT_SIGNATURES)
        }
        self.base_confidence = base_confidence
        self.default_ban_seconds = default_ban_seconds
        self._compiled = {
            name: [re.compile(pattern, re.IGNORECASE) for pattern in family.patterns]
            for name, family in self.families.items()
        }

    def _confidence(self, family: SignatureFamily, text: str) -> int:
        confidence = self.base_confidence + family.confidence_boost

        if len(text) > 5000:
            confidence += 20
        elif len(text) > 1000:
            confidence += 10

        if len(_SUSPICIOUS_CHARS.findall(text)) > 10:
            confidence += 15

        return min(confidence, 100)

    def scan(self, text: Optional[str], field: str = "input") -> List[SignatureMatch]:
        """
        Scan one value. At most one match per family is returned.

        URL-encoded payloads are decoded once and scanned as well.

        Args:
            text: Value to scan (None and empty strings never match)
            field: Name recorded on the match (path, user_agent, body, ...)

        Returns:
            List of SignatureMatch, empty when clean
        """
        if not text:
            return []

        candidates = [text]
        decoded = unquote_plus(text)
        if decoded != text:
            candidates.append(decoded)

        matches = []
        for name, patterns in self._compiled.items():
            for pattern in patterns:
                if any(pattern.search(candidate) for candidate in candidates):
                    matches.append(SignatureMatch(
                        threat_type=name,
                        field=field,
                        confidence=self._confidence(self.families[name], text),
                        pattern=pattern.pattern,
                    ))
                    break

        return matches

    def scan_fields(self, fields: Dict[str, Any]) -> List[SignatureMatch]:
        """
        Scan several named values (path, user agent, body, headers).

        Non-string values are serialized to JSON before scanning.
        """
        matches = []
        for field, value in fields.items():
            if value is None:
                continue
            if not isinstance(value, str):
                value = json.dumps(value, default=str)
            matches.extend(self.scan(value, field=field))
        return matches

    def severity_score(self, threat_type: str) -> int:
        family = self.families.get(threat_type)
        return family.severity_score if family else 50

    def ban_seconds(self, threat_type: str) -> float:
        family = self.families.get(threat_type)
        return family.ban_seconds if family else self.default_ban_seconds

    def threat_score(self, matches: List[SignatureMatch]) -> int:
        """Highest severity score among the matched families."""
        return max((self.severity_score(m.threat_type) for m in matches), default=0)

    def threat_level(self, matches: List[SignatureMatch]) -> ThreatSeverity:
        return ThreatSeverity.from_score(self.threat_score(matches))
