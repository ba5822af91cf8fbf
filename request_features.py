"""
Canonical text representation of an HTTP request.

Folds structural and lexical signals (user agent class, body size, header
flags, entropy, encoding depth, special-character density, attack-signature
flags) and a payload snippet into one string for the tokenizer. Token order
is fixed; the embedding is order-sensitive.
"""

import math
import re
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import unquote

from config.model_config import (
    BODY_SIZE_BUCKETS,
    ENTROPY_BUCKETS,
    MAX_DECODE_ROUNDS,
    PAYLOAD_MAX_CHARS,
    SPECIAL_DENSITY_BUCKETS
)

# =====================================================================
# User agent classes (checked in this order, first match wins)
# =====================================================================

SCANNER_AGENTS = (
    "sqlmap", "nikto", "nmap", "masscan", "nuclei", "dirbuster", "gobuster",
    "wpscan", "acunetix", "nessus", "openvas", "burp", "zgrab", "ffuf",
    "hydra", "w3af", "arachni", "whatweb", "zap/"
)

BOT_AGENTS = (
    "bot", "crawler", "spider", "curl", "python", "java", "wget", "go-http-client",
    "httpclient", "okhttp", "libwww", "scrapy", "axios", "node-fetch", "perl"
)

BROWSER_AGENTS = ("mozilla", "chrome", "safari", "firefox", "edge", "opera")

SPECIAL_CHARACTERS = frozenset("<>'\";(){}[]|&$`\\%=*!@#^~")

# =====================================================================
# Attack signatures, tested against the decoded request text
# =====================================================================

ATTACK_SIGNATURES: List[Tuple[str, "re.Pattern[str]"]] = [
    ("SQL_KEYWORDS", re.compile(
        r"\b(select|insert|update|delete|drop|union|or\s+\d|and\s+\d|--|')"
        r"|\b(sleep|benchmark)\s*\(|waitfor\s+delay",
        re.IGNORECASE
    )),
    ("XSS_PATTERN", re.compile(
        r"<script|javascript:|onerror|onload|on(mouseover|focus|click)\s*=|alert\(|<iframe|<svg[\s/>]|document\.cookie",
        re.IGNORECASE
    )),
    ("PATH_TRAVERSAL", re.compile(
        r"\.\.[/\\]|%2e%2e",
        re.IGNORECASE
    )),
    ("CMD_INJECTION", re.compile(
        r"(;|\||&&|`|\$\()\s*(cat|ls|id|whoami|uname|wget|curl|nc|ncat|bash|sh|ping|rm|echo|python|perl|chmod)\b"
        r"|`[^`]+`|\$\([^)]+\)",
        re.IGNORECASE
    )),
    ("SSRF_PATTERN", re.compile(
        r"\b(https?|gopher|dict|ftp)://(localhost|127\.\d{1,3}\.\d{1,3}\.\d{1,3}|0\.0\.0\.0|\[::1?\]"
        r"|169\.254\.169\.254|metadata\.google\.internal|10\.\d{1,3}\.\d{1,3}\.\d{1,3}"
        r"|192\.168\.\d{1,3}\.\d{1,3}|172\.(1[6-9]|2\d|3[01])\.\d{1,3}\.\d{1,3})"
        r"|\bfile:///",
        re.IGNORECASE
    )),
    ("XXE_PATTERN", re.compile(
        r"<!(doctype|entity)\b[^>]*(system|public|\[)|<!entity\b",
        re.IGNORECASE
    )),
    ("NOSQL_INJECTION", re.compile(
        r"\$(ne|eq|gt|gte|lt|lte|in|nin|regex|where|exists|expr|or|and|not)\b",
        re.IGNORECASE
    )),
    ("TEMPLATE_INJECTION", re.compile(
        r"\{\{.*?\}\}|\{%.*?%\}|\$\{(?!\s*jndi)[^}]*\}|<%=.*?%>|#\{[^}]*\}",
        re.IGNORECASE | re.DOTALL
    )),
    ("LOG4SHELL", re.compile(
        r"\$\{\s*jndi\s*:|\$\{[^}]*\$\{[^}]*\}[^}]*:|jndi:(ldaps?|rmi|dns|iiop|nis|nds|corba|http)://",
        re.IGNORECASE
    )),
    ("OPEN_REDIRECT", re.compile(
        r"(^|[?&\s])(redirect|redirect_uri|redirect_url|return|return_to|returnurl|next|url|dest"
        r"|destination|continue|goto|target|forward)=\s*(https?:)?//",
        re.IGNORECASE
    )),
    ("LDAP_INJECTION", re.compile(
        r"\*\)\s*\(|\)\s*\(\s*[|&!]|\(\s*[|&!]\s*\(\s*\w+\s*=|\(\s*\w+\s*=\s*\*\s*\)",
        re.IGNORECASE
    )),
]

# Sensitive-file fingerprints, tested against the raw path
SCANNER_PATH_PATTERN = re.compile(
    r"/\.env\b|/\.git(/|$)|/\.svn(/|$)|/\.htaccess|/\.htpasswd|/\.ds_store|wp-config\.php"
    r"|wp-login\.php|xmlrpc\.php|phpmyadmin|/etc/passwd|/etc/shadow|web\.config|server-status"
    r"|\.aws/credentials|id_rsa|backup\.(sql|zip|tar(\.gz)?)|\.bak$|/actuator(/|$)|/cgi-bin/",
    re.IGNORECASE
)


# =====================================================================
# Signal helpers
# =====================================================================

def percent_decode(text: str) -> str:
    """Percent-decode once; undecodable input is returned unchanged."""
    try:
        return unquote(text, errors="strict")
    except UnicodeDecodeError:
        return text


def encoding_depth(text: str, max_rounds: int = MAX_DECODE_ROUNDS) -> int:
    """
    Count how many successive percent-decodes change the text.

    Detects double/triple encoding; capped at ``max_rounds``.
    """
    depth = 0
    current = text
    for _ in range(max_rounds):
        decoded = percent_decode(current)
        if decoded == current:
            break
        depth += 1
        current = decoded
    return depth


def shannon_entropy(text: str) -> float:
    """Base-2 Shannon entropy over character frequencies."""
    if not text:
        return 0.0
    length = len(text)
    entropy = 0.0
    for count in Counter(text).values():
        p = count / length
        entropy -= p * math.log2(p)
    return entropy


def special_char_density(text: str) -> float:
    """Fraction of characters belonging to the special-character set."""
    if not text:
        return 0.0
    return sum(1 for c in text if c in SPECIAL_CHARACTERS) / len(text)


def _bucket(value: float, buckets, top: str) -> str:
    for limit, name in buckets:
        if value < limit:
            return name
    return top


def entropy_bucket(entropy: float) -> str:
    return _bucket(entropy, ENTROPY_BUCKETS, "very_high")


def special_density_bucket(density: float) -> str:
    return _bucket(density, SPECIAL_DENSITY_BUCKETS, "very_high")


def body_size_bucket(size: int) -> str:
    return _bucket(size, BODY_SIZE_BUCKETS, "large")


def classify_user_agent(user_agent: Optional[str]) -> Optional[str]:
    """
    Classify a user agent as scanner, bot, browser or unknown.

    Returns:
        The class name, or None for an absent/empty user agent
    """
    if not user_agent:
        return None
    ua_lower = user_agent.lower()
    if any(s in ua_lower for s in SCANNER_AGENTS):
        return "scanner"
    if any(b in ua_lower for b in BOT_AGENTS):
        return "bot"
    if any(b in ua_lower for b in BROWSER_AGENTS):
        return "browser"
    return "unknown"


def header_flags(headers: Mapping[str, Any]) -> List[str]:
    """Flags derived from header names and values (case-insensitive)."""
    has_referer = has_xml = has_json = False
    for name, value in headers.items():
        if value is None or value == "":
            continue
        name_lower = str(name).lower()
        if name_lower in ("referer", "referrer"):
            has_referer = True
        elif name_lower == "content-type":
            value_lower = str(value).lower()
            has_xml = has_xml or "xml" in value_lower
            has_json = has_json or "json" in value_lower

    flags = []
    if has_referer:
        flags.append("HAS_REFERER")
    if has_xml:
        flags.append("HAS_XML_CONTENT")
    if has_json:
        flags.append("HAS_JSON_CONTENT")
    return flags


def attack_flags(decoded_text: str, raw_path: str) -> List[str]:
    """Names of every attack signature that fires, in fixed order."""
    flags = [name for name, pattern in ATTACK_SIGNATURES if pattern.search(decoded_text)]
    if SCANNER_PATH_PATTERN.search(raw_path):
        flags.append("SCANNER_PATH")
    return flags


def _referer(headers: Mapping[str, Any]) -> Optional[str]:
    for name, value in headers.items():
        if str(name).lower() in ("referer", "referrer") and value:
            return str(value)
    return None


# =====================================================================
# Canonical text
# =====================================================================

def request_to_text(
    method: str,
    path: str,
    body: Optional[str] = "",
    user_agent: Optional[str] = "",
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, Any]] = None
) -> str:
    """
    Convert request fields into the canonical text classified by the model.

    Args:
        method: HTTP method
        path: Raw request path
        body: Request body text
        user_agent: User-Agent header value
        params: Request parameters
        headers: Selected request headers

    Returns:
        Space-joined tagged tokens
    """
    body = body or ""
    params = params or {}
    headers = headers or {}
    parts = []

    parts.append(f"METHOD:{method.upper()}")
    parts.append(f"PATH:{path}")
    parts.append(f"DEPTH:{path.count('/')}")

    if params:
        parts.append(f"PARAMS:{len(params)}")

    ua_type = classify_user_agent(user_agent)
    if ua_type:
        parts.append(f"UA_TYPE:{ua_type}")

    if body:
        parts.append(f"BODY_SIZE:{body_size_bucket(len(body.encode('utf-8')))}")

    if headers:
        parts.append(f"HEADERS:{len(headers)}")
        parts.extend(header_flags(headers))

    param_values = " ".join(str(v) for v in params.values())
    header_values = " ".join(str(v) for v in headers.values() if v is not None)
    combined = f"{path} {body} {param_values} {header_values}"
    decoded_combined = percent_decode(combined)

    parts.append(f"ENTROPY:{entropy_bucket(shannon_entropy(combined))}")

    depth = encoding_depth(combined)
    if depth > 0:
        parts.append(f"ENCODING:{depth}")

    parts.append(f"SPECIAL_DENSITY:{special_density_bucket(special_char_density(decoded_combined))}")

    parts.extend(f"FLAG:{name}" for name in attack_flags(decoded_combined, path))

    payload_parts = []
    if body:
        payload_parts.append(body)
    if params:
        payload_parts.append(str(params))
    referer = _referer(headers)
    if referer:
        payload_parts.append(f"REFERER:{referer}")
    payload = " ".join(payload_parts)
    if payload:
        parts.append(f"PAYLOAD:{payload[:PAYLOAD_MAX_CHARS]}")

    return " ".join(parts)
