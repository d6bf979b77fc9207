# =============================================
# File: giftfinder/utils/slog.py
# Purpose: One JSON line per request/search event (stdlib logger "giftfinder")
# =============================================
from __future__ import annotations
import hashlib
import json
import logging
import os
import re
import time
import uuid
from typing import Any, Dict, Optional

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{8,64}$")

_log = logging.getLogger("giftfinder")
if not _log.handlers:
    _log.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))
    _stream = logging.StreamHandler()
    _stream.setFormatter(logging.Formatter("%(message)s"))
    _log.addHandler(_stream)
    # caplog hooks the root logger
    _log.propagate = True


def _emit(record: Dict[str, Any], level: int = logging.INFO) -> None:
    _log.log(level, json.dumps(record, ensure_ascii=False, default=str))


def _level_for(status: int) -> str:
    if status >= 500:
        return "error"
    if status >= 400:
        return "warning"
    return "info"


def qhash(text: str) -> str:
    """10-hex digest of the normalized query. Raw search text is never logged."""
    norm = " ".join((text or "").strip().lower().split())
    return hashlib.sha256(norm.encode("utf-8")).hexdigest()[:10]


def new_request_id(incoming: Optional[str] = None) -> str:
    if incoming and _REQUEST_ID_RE.match(incoming):
        return incoming
    return uuid.uuid4().hex


def log_event(event: str, **fields: Any) -> None:
    _emit({"event": event, "ts": round(time.time(), 3), **fields})


def search_context(query: str, kind: str, results: int, degraded: bool = False) -> Dict[str, Any]:
    """Fields a search router hands to the request log via request.state.log_context."""
    return {"kind": kind, "qhash": qhash(query), "results": results, "degraded": degraded}


def finalize_request_log(
    request_id: str,
    method: str,
    path: str,
    status: int,
    latency_ms: int,
    client_ip: str | None,
    ctx: Dict[str, Any] | None = None,
) -> None:
    level = _level_for(status)
    record: Dict[str, Any] = {
        "event": "request.completed",
        "level": level,
        "request_id": request_id,
        "method": method,
        "path": path,
        "status": status,
        "latency_ms": latency_ms,
        "client_ip": client_ip or "",
    }
    record.update(ctx or {})
    _emit(record, logging.getLevelName(level.upper()))
