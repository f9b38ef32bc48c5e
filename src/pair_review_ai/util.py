import os
import re
from functools import lru_cache
from typing import List, Mapping, Tuple

DEFAULT_REPLACEMENT = "REDACTED"
_DEFAULT_PATTERNS = (
    (r"sk-ant-[A-Za-z0-9_-]{10,}", "sk-ant-REDACTED"),
    (r"sk-(?!ant-)[A-Za-z0-9_-]{10,}", "sk-REDACTED"),
    (r"github_pat_[A-Za-z0-9_]{20,}", "github_pat_REDACTED"),
    (r"gh[pousr]_[A-Za-z0-9]{20,}", "gh-REDACTED"),
    (r"AIza[0-9A-Za-z_-]{30,}", "AIza-REDACTED"),
    (r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*", "Bearer REDACTED"),
    (
        r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|secret|password))\b\s*[:=]\s*([^\s,;]+)",
        r"\1=REDACTED",
    ),
)
EXTRA_PATTERNS_ENV = "PAIR_REVIEW_REDACTION_PATTERNS"
_SENSITIVE_ENV_KEY_RE = re.compile(r"(?i)(key|token|secret|password|credential)")


def redact(text: str) -> str:
    value = text or ""
    for regex, replacement in _compiled_patterns(os.environ.get(EXTRA_PATTERNS_ENV) or ""):
        value = regex.sub(replacement, value)
    return value


def redact_env(env: Mapping[str, str]) -> dict:
    """Mask values of env entries whose names look like credentials."""
    masked = {}
    for key, value in (env or {}).items():
        masked[key] = DEFAULT_REPLACEMENT if _SENSITIVE_ENV_KEY_RE.search(key) else redact(str(value))
    return masked


def preview(text: str, limit: int = 500) -> str:
    """Redacted, length-limited view of CLI output for log lines."""
    value = redact(text or "")
    if len(value) <= limit:
        return value
    return value[:limit] + "..."


@lru_cache(maxsize=8)
def _compiled_patterns(extra_raw: str) -> List[Tuple["re.Pattern[str]", str]]:
    """Built-in patterns plus ``;;``-separated extras, cached per extras string."""
    patterns = [(re.compile(pattern), replacement) for pattern, replacement in _DEFAULT_PATTERNS]
    for token in extra_raw.split(";;"):
        token = token.strip()
        if not token:
            continue
        try:
            patterns.append((re.compile(token), DEFAULT_REPLACEMENT))
        except re.error:
            continue
    return patterns
