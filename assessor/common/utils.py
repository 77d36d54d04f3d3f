import hashlib
import html
import re
from datetime import datetime, timezone
from typing import Optional

_SCRIPT_RE = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE)
_STYLE_RE = re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def strip_markup(text: Optional[str]) -> str:
    """Unescape entities and remove script/style blocks and tags until stable"""
    if not text:
        return ""
    cleaned = str(text)
    while True:
        previous = cleaned
        cleaned = html.unescape(cleaned)
        cleaned = _SCRIPT_RE.sub("", cleaned)
        cleaned = _STYLE_RE.sub("", cleaned)
        cleaned = _TAG_RE.sub("", cleaned)
        if cleaned == previous:
            return cleaned.strip()


def fingerprint(text: Optional[str]) -> str:
    """Log-safe stand-in for learner content"""
    if not text:
        return "[empty]"
    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:12]
    return f"[content_hash:{digest}, length:{len(text)}]"


def current_timestamp() -> datetime:
    """Get current UTC timestamp"""
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
