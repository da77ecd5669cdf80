"""Gates that probe a running dev server over HTTP."""

from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from typing import Optional

from loguru import logger

from .base import GateContext, GateError, GateResult, PipelineInput
from .devserver import DevServerError

REQUEST_TIMEOUT_SECONDS = 15


def _request(url: str, method: str = "GET") -> tuple[int, bytes, Optional[str]]:
    """Return `(status, body, content_type)`; HTTP error statuses are returned, not raised."""
    request = urllib.request.Request(url, method=method)
    try:
        with urllib.request.urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as resp:
            return resp.status, resp.read(), resp.headers.get("Content-Type")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read() or b"", exc.headers.get("Content-Type") if exc.headers else None


def parse_endpoint(endpoint: str) -> tuple[str, str]:
    """Split `"POST /api/items"` into method and path; a bare path means GET."""
    endpoint = endpoint.strip()
    head, _, rest = endpoint.partition(" ")
    if rest and not head.startswith("/"):
        return head.upper(), rest.strip()
    return "GET", endpoint


def _join(base_url: str, path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return base_url.rstrip("/") + path


def _start_server(name: str, context: GateContext, start: float):
    try:
        return context.dev_server(), None
    except DevServerError as exc:
        return None, GateResult(
            gate=name,
            passed=False,
            errors=[GateError(message=f"Dev server failed to start: {exc}")],
            duration_ms=int((time.monotonic() - start) * 1000),
        )


def verify_visual(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
    """Each configured page must answer 2xx with a non-empty body."""
    start = time.monotonic()
    if not pipeline_input.pages:
        return GateResult(gate="visual", passed=True, warnings=["No pages configured"])
    server, failure = _start_server("visual", context, start)
    if failure:
        return failure

    errors: list[GateError] = []
    warnings: list[str] = []
    for page in pipeline_input.pages:
        url = _join(server.base_url, page)
        try:
            status, body, _ctype = _request(url)
        except (urllib.error.URLError, OSError) as exc:
            errors.append(GateError(message=f"{page} -> FAILED: {exc}", file=page))
            continue
        if not 200 <= status < 300:
            errors.append(GateError(message=f"{page} -> {status}", file=page))
        elif not body.strip():
            errors.append(GateError(message=f"{page} -> {status} with an empty body", file=page))
        else:
            warnings.append(f"{page} -> {status} ({len(body)} bytes)")
    logger.debug("Visual gate checked {} page(s), {} failing", len(pipeline_input.pages), len(errors))
    return GateResult(
        gate="visual",
        passed=not errors,
        errors=errors,
        warnings=warnings,
        duration_ms=int((time.monotonic() - start) * 1000),
    )


def verify_runtime(pipeline_input: PipelineInput, context: GateContext) -> GateResult:
    """Each configured API endpoint must answer 2xx."""
    start = time.monotonic()
    if not pipeline_input.api_endpoints:
        return GateResult(gate="runtime", passed=True, warnings=["No API endpoints configured"])
    server, failure = _start_server("runtime", context, start)
    if failure:
        return failure

    errors: list[GateError] = []
    warnings: list[str] = []
    for endpoint in pipeline_input.api_endpoints:
        method, path = parse_endpoint(endpoint)
        label = f"{method} {path}"
        try:
            status, body, ctype = _request(_join(server.base_url, path), method)
        except (urllib.error.URLError, OSError) as exc:
            errors.append(GateError(message=f"{label} -> FAILED: {exc}"))
            continue
        if not 200 <= status < 300:
            errors.append(GateError(message=f"{label} -> {status}"))
            continue
        try:
            payload = json.loads(body.decode("utf-8") or "null")
        except (UnicodeDecodeError, json.JSONDecodeError):
            warnings.append(f"{label} -> {status} (non-JSON response)")
            continue
        if isinstance(payload, dict):
            warnings.append(f"{label} -> {status} (JSON, {len(payload)} keys)")
        else:
            warnings.append(f"{label} -> {status} (JSON, {ctype or 'unknown content type'})")
    return GateResult(
        gate="runtime",
        passed=not errors,
        errors=errors,
        warnings=warnings,
        duration_ms=int((time.monotonic() - start) * 1000),
    )
