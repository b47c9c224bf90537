"""Regex-based secret redaction for log files and console output.

Integration API keys are handed to assistant processes through environment
variables; they must never show up in quest.log, in the cron task store's
recorded output, or in verbose console logging. Known key shapes are
masked by pattern, and keys we know about exactly (the configured
integrations) can be registered so they are masked verbatim.

Short tokens (< 18 chars) are fully masked. Longer tokens keep the first 6
and last 4 characters.
"""

import logging
import re
import threading
from typing import Iterable, Set

logger = logging.getLogger(__name__)

_PREFIX_PATTERNS = [
    r"sk-ant-[A-Za-z0-9_-]{10,}",       # Anthropic
    r"sk-[A-Za-z0-9_-]{10,}",           # OpenAI-style
    r"ghp_[A-Za-z0-9]{10,}",            # GitHub PAT (classic)
    r"gho_[A-Za-z0-9]{10,}",            # GitHub OAuth
    r"github_pat_[A-Za-z0-9_]{10,}",    # GitHub PAT (fine-grained)
    r"lin_api_[A-Za-z0-9]{10,}",        # Linear
    r"xox[baprs]-[A-Za-z0-9-]{10,}",    # Slack
    r"secret_[A-Za-z0-9]{20,}",         # Notion
    r"ntn_[A-Za-z0-9]{20,}",            # Notion (new format)
    r"AIza[A-Za-z0-9_-]{30,}",          # Google
    r"[rs]k_live_[A-Za-z0-9]{10,}",     # Stripe
]

_SECRET_ENV_NAMES = r"(?:API_?KEY|TOKEN|SECRET|PASSWORD|PASSWD|CREDENTIAL|AUTH)"
_ENV_ASSIGN_RE = re.compile(
    rf"([A-Z_]*{_SECRET_ENV_NAMES}[A-Z_]*)\s*=\s*(['\"]?)(\S+)\2",
    re.IGNORECASE,
)

_JSON_KEY_NAMES = r"(?:api_?[Kk]ey|token|secret|password|access_token|auth_token|bearer)"
_JSON_FIELD_RE = re.compile(
    rf'("{_JSON_KEY_NAMES}")\s*:\s*"([^"]+)"',
    re.IGNORECASE,
)

_AUTH_HEADER_RE = re.compile(
    r"(Authorization:\s*Bearer\s+)(\S+)",
    re.IGNORECASE,
)

_PREFIX_RE = re.compile(
    r"(?<![A-Za-z0-9_-])(" + "|".join(_PREFIX_PATTERNS) + r")(?![A-Za-z0-9_-])"
)

_known_secrets: Set[str] = set()
_known_lock = threading.Lock()

# Anything shorter would mask ordinary words.
_MIN_KNOWN_SECRET_LEN = 8


def register_secrets(values: Iterable[str]) -> None:
    """Mask these exact values wherever they appear from now on."""
    with _known_lock:
        for value in values:
            if value and len(value) >= _MIN_KNOWN_SECRET_LEN:
                _known_secrets.add(value)


def clear_registered_secrets() -> None:
    with _known_lock:
        _known_secrets.clear()


def _mask_token(token: str) -> str:
    if len(token) < 18:
        return "***"
    return f"{token[:6]}...{token[-4:]}"


def redact_sensitive_text(text: str) -> str:
    """Apply all redaction patterns to a block of text.

    Safe to call on any string -- non-matching text passes through unchanged.
    """
    if not text:
        return text

    with _known_lock:
        known = sorted(_known_secrets, key=len, reverse=True)
    for secret in known:
        if secret in text:
            text = text.replace(secret, _mask_token(secret))

    text = _PREFIX_RE.sub(lambda m: _mask_token(m.group(1)), text)

    def _redact_env(m):
        name, quote, value = m.group(1), m.group(2), m.group(3)
        return f"{name}={quote}{_mask_token(value)}{quote}"
    text = _ENV_ASSIGN_RE.sub(_redact_env, text)

    def _redact_json(m):
        return f'{m.group(1)}: "{_mask_token(m.group(2))}"'
    text = _JSON_FIELD_RE.sub(_redact_json, text)

    text = _AUTH_HEADER_RE.sub(
        lambda m: m.group(1) + _mask_token(m.group(2)),
        text,
    )
    return text


class RedactingFormatter(logging.Formatter):
    """Log formatter that redacts secrets from every formatted record."""

    def format(self, record: logging.LogRecord) -> str:
        return redact_sensitive_text(super().format(record))
