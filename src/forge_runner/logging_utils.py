"""Configure loguru and summarize verification output for logs."""

from __future__ import annotations

import json
import re
import sys
from typing import Any

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n{message}"
)

_FAILED_NODEID_RE = re.compile(r"^(?P<nodeid>\S+)\s+FAILED\b", re.M)
_FAILED_SUMMARY_RE = re.compile(r"^FAILED\s+(?P<nodeid>\S+)\b", re.M)
_ASSERT_RE = re.compile(r"^(E\s+.+)$", re.M)
_FAILURE_HEADER_RE = re.compile(r"^_{5,}\s*(.+?)\s*_{5,}$", re.M)


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


def summarize_pytest_failures(log_text: str, max_failed: int = 5) -> dict[str, object]:
    """Pull failing node ids and the first assertion line out of pytest output.

    Returns a dictionary with keys `failed`, `headline`, and `first_error`.
    """
    if not log_text:
        return {"failed": [], "headline": None, "first_error": None}

    failed: list[str] = []
    seen: set[str] = set()
    for regex in (_FAILED_NODEID_RE, _FAILED_SUMMARY_RE):
        for match in regex.finditer(log_text):
            nodeid = (match.group("nodeid") or "").strip()
            if not nodeid or nodeid in seen:
                continue
            seen.add(nodeid)
            failed.append(nodeid)
            if len(failed) >= max_failed:
                break
        if len(failed) >= max_failed:
            break

    m_err = _ASSERT_RE.search(log_text)
    first_error = m_err.group(1).strip() if m_err else None

    m_head = _FAILURE_HEADER_RE.search(log_text)
    headline = m_head.group(1).strip() if m_head else None

    return {"failed": failed, "headline": headline, "first_error": first_error}


def summarize_pipeline(result: Any) -> dict[str, Any]:
    """Compact, JSON-friendly view of a pipeline result for one log line."""
    if result is None:
        return {"passed": None}
    gates: dict[str, str] = {}
    for gate in getattr(result, "gates", []):
        if getattr(gate, "skipped", False):
            gates[gate.gate] = "skipped"
        elif gate.passed:
            gates[gate.gate] = "passed"
        else:
            gates[gate.gate] = f"failed ({len(gate.errors)} errors)"
    return {"passed": bool(getattr(result, "passed", False)), "gates": gates}


def truncate(text: str, limit: int = 240) -> str:
    text = text.strip()
    return (text[:limit] + "…") if len(text) > limit else text


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs, falling back to `str`."""
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
