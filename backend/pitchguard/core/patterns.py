"""
Request fingerprints and stateless pattern detectors

Detectors are plain data (a name, a weight and a set of regular expressions)
so that a configuration can carry its own table of them. Matching never
raises: anything that cannot be turned into text simply does not match.
"""

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Pattern, Tuple
from urllib.parse import unquote

from pitchguard.utils.exceptions import ConfigurationError


@dataclass(frozen=True)
class RequestFingerprint:
    """Normalized view of one inbound request, never persisted"""
    client_ip: str
    path: str = "/"
    method: str = "GET"
    client_identifier: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Any = None
    body: Any = None
    is_auth_endpoint: bool = False
    timestamp: float = field(default_factory=time.time)

    def canonical_text(self) -> str:
        return canonicalize(self.path, self.query, self.body)


def _serialize(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload).decode("utf-8", errors="replace")
    try:
        return json.dumps(payload, default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        try:
            return str(payload)
        except Exception:
            return ""


def canonicalize(path: Any, query: Any = None, body: Any = None) -> str:
    """Concatenate path, serialized query and serialized body"""
    parts = [_serialize(path), _serialize(query), _serialize(body)]
    return " ".join(part for part in parts if part)


@dataclass(frozen=True)
class PatternDetector:
    """A named predicate over canonicalized request text"""
    name: str
    patterns: Tuple[str, ...]
    weight: int = 25
    # Also test the percent-decoded text (catches %2e%2e%2f and friends)
    decode: bool = False
    _compiled: Tuple[Pattern, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.weight < 0:
            raise ConfigurationError(f"Detector {self.name} has a negative weight")
        try:
            compiled = tuple(re.compile(p, re.IGNORECASE) for p in self.patterns)
        except re.error as e:
            raise ConfigurationError(f"Invalid pattern in detector {self.name}: {e}") from e
        object.__setattr__(self, "_compiled", compiled)

    def matches(self, text: Any) -> bool:
        if not isinstance(text, str):
            text = _serialize(text)
        candidates = [text]
        if self.decode:
            try:
                decoded = unquote(text)
            except (TypeError, ValueError):
                decoded = text
            if decoded != text:
                candidates.append(decoded)
        for pattern in self._compiled:
            for candidate in candidates:
                if pattern.search(candidate):
                    return True
        return False


SQL_INJECTION_PATTERNS = (
    r"(\bunion\b.*\bselect\b)",
    r"(\bselect\b.*\bfrom\b)",
    r"(\binsert\b.*\binto\b)",
    r"(\bupdate\b.*\bset\b)",
    r"(\bdelete\b.*\bfrom\b)",
    r"(\bdrop\b\s+\btable\b)",
    r"(\btruncate\b\s+\btable\b)",
    r"('\s*or\s*'?\d+'?\s*=\s*'?\d+)",
    r"(\bor\b\s+1\s*=\s*1\b)",
    r"(;\s*--)",
    r"(\bexec\b.*\bxp_\w+)",
    r"(\bsleep\b\s*\(\s*\d+\s*\))",
    r"(\bwaitfor\b.*\bdelay\b)",
    r"(\bbenchmark\b\s*\(\s*\d+)",
    r"(\binto\b.*\boutfile\b)",
)

SCRIPT_INJECTION_PATTERNS = (
    r"<script[^>]*>",
    r"<iframe[^>]*>",
    r"<object[^>]*>",
    r"<embed[^>]*>",
    r"javascript:",
    r"vbscript:",
    r"\bon(?:load|error|click|mouseover|focus|blur|submit|change|keydown|keyup)\s*=",
    r"style\s*=.*expression\s*\(",
)

PATH_TRAVERSAL_PATTERNS = (
    r"\.\./",
    r"\.\.\\",
    r"%2e%2e%2f",
    r"%2e%2e%5c",
    r"\.\.%2f",
    r"\.\.%5c",
    r"%252e%252e%252f",
)

COMMAND_INJECTION_PATTERNS = (
    r";\s*(?:cat|ls|pwd|whoami|id|uname|ps|netstat|wget|curl|rm|nc|bash|sh)\b",
    r"\|\s*(?:cat|ls|sh|bash|nc|wget|curl)\b",
    r"&&\s*(?:cat|ls|rm|wget|curl|whoami)\b",
    r"\$\([^)]*\)",
    r"`[^`]+`",
    r"\$\{[^}]*\}",
)

SUSPICIOUS_CLIENT_PATTERNS = (
    r"sqlmap",
    r"nikto",
    r"nmap",
    r"masscan",
    r"zgrab",
    r"burp",
    r"w3af",
    r"acunetix",
    r"nessus",
    r"openvas",
    r"metasploit",
    r"wpscan",
    r"gobuster",
    r"dirbuster",
    r"python-requests",
    r"\bcurl/",
    r"\bwget/",
)


def default_detectors() -> Tuple[PatternDetector, ...]:
    return (
        PatternDetector("sql_injection", SQL_INJECTION_PATTERNS, weight=30),
        PatternDetector("script_injection", SCRIPT_INJECTION_PATTERNS, weight=25, decode=True),
        PatternDetector("path_traversal", PATH_TRAVERSAL_PATTERNS, weight=25, decode=True),
        PatternDetector("command_injection", COMMAND_INJECTION_PATTERNS, weight=30),
    )


def default_client_detector(weight: int = 40) -> PatternDetector:
    return PatternDetector("suspicious_client", SUSPICIOUS_CLIENT_PATTERNS, weight=weight)


def run_detectors(detectors: Iterable[PatternDetector], text: str) -> List[PatternDetector]:
    """Return the detectors that fire on ``text``"""
    return [detector for detector in detectors if detector.matches(text)]


def detector_table(detectors: Iterable[PatternDetector]) -> Dict[str, int]:
    return {detector.name: detector.weight for detector in detectors}
