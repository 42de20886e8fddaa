"""Append-only JSON diagnostics log for provider events that could not be mapped."""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime

DEFAULT_PROVIDER_DEBUG_LOG_PATH = "/tmp/open-pilot-provider-events.log"
PROVIDER_DEBUG_LOG_MAX_SIZE = 10 * 1024 * 1024

_log_lock = threading.Lock()

_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _rfc3339_now() -> str:
    now = datetime.now().astimezone()
    stamp = now.strftime("%Y-%m-%dT%H:%M:%S")
    fraction = f"{now.microsecond:06d}".rstrip("0")
    if fraction:
        stamp += "." + fraction
    offset = now.utcoffset()
    if not offset:
        return stamp + "Z"
    tz = now.strftime("%z")
    return f"{stamp}{tz[:3]}:{tz[3:5]}"


def _encode(entry: dict) -> str:
    text = json.dumps(entry, ensure_ascii=False, separators=(",", ":"))
    for char, escape in _JSON_ESCAPES.items():
        text = text.replace(char, escape)
    return text


def _log_path() -> str:
    path = os.environ.get("OPEN_PILOT_PROVIDER_DEBUG_LOG", "").strip()
    return path or DEFAULT_PROVIDER_DEBUG_LOG_PATH


def log_provider_diagnostic(
    provider: str,
    session_id: str,
    request_id: str,
    raw_type: str,
    normalized_type: str,
    reason: str,
    raw_json: str,
) -> None:
    """Append one diagnostic record; failures to write are ignored."""
    fields = {
        "provider": provider,
        "session_id": session_id,
        "request_id": request_id,
        "raw_type": raw_type,
        "normalized_type": normalized_type,
        "reason": reason,
        "raw_json": raw_json,
    }
    entry = {"timestamp": _rfc3339_now()}
    for key, value in fields.items():
        cleaned = str(value or "").strip()
        if cleaned:
            entry[key] = cleaned
    line = (_encode(entry) + "\n").encode("utf-8")

    path = _log_path()
    with _log_lock:
        try:
            if os.stat(path).st_size >= PROVIDER_DEBUG_LOG_MAX_SIZE:
                backup = path + ".1"
                try:
                    os.remove(backup)
                except OSError:
                    pass
                try:
                    os.rename(path, backup)
                except OSError:
                    pass
        except OSError:
            pass

        try:
            fd = os.open(path, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o600)
        except OSError:
            return
        with os.fdopen(fd, "ab") as handle:
            try:
                handle.write(line)
            except OSError:
                pass