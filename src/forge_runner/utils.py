"""Provide utility helpers for timestamps, ids, and slugs."""

from __future__ import annotations

import re
import secrets
from datetime import datetime, timezone


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _title_to_slug(title: str) -> str:
    return _SLUG_RE.sub("-", title.lower()).strip("-")


def _session_id() -> str:
    """Return a short 8-character hex id used for sessions and worktree dirs."""
    return secrets.token_hex(4)
