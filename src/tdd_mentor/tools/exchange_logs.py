"""Structured JSON logs of every oracle exchange."""

from __future__ import annotations

import hashlib
import json
import re
import uuid
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


def write_exchange_log(
    logs_root: Path | None,
    stage: str,
    *,
    label: str,
    prompt: str,
    options: Any,
    raw: Any = None,
    result: Any = None,
    error: BaseException | None = None,
) -> Path | None:
    """Persist one oracle exchange under ``logs_root/exchanges``.

    Returns the written path, or ``None`` when logging is disabled or the file
    could not be written.
    """
    if logs_root is None:
        return None
    target_root = Path(logs_root) / "exchanges"
    try:
        target_root.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None

    timestamp = datetime.now(timezone.utc)
    entry: dict[str, Any] = {
        "timestamp": timestamp.isoformat(),
        "stage": stage,
        "label": label,
        "prompt": prompt,
        "options": json_safe(options),
        "raw": json_safe(raw),
    }
    if result is not None:
        entry["result"] = json_safe(result)
    if error is not None:
        entry["error"] = f"{type(error).__name__}: {error}"

    parts = [
        "exchange",
        slug(stage, fallback="stage"),
        slug(label, fallback="label"),
        timestamp.strftime("%Y%m%dT%H%M%S%fZ"),
        uuid.uuid4().hex[:8],
    ]
    log_path = target_root / ("__".join(parts) + ".json")
    try:
        with log_path.open("w", encoding="utf-8") as handle:
            json.dump(entry, handle, indent=2, sort_keys=True, ensure_ascii=False)
    except OSError:
        return None
    return log_path


def json_safe(value: Any) -> Any:
    """Coerce complex objects into JSON-serialisable representations."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return value.as_posix()
    if is_dataclass(value) and not isinstance(value, type):
        return json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        try:
            return json_safe(value.model_dump(mode="json", by_alias=True))
        except TypeError:
            pass
    if isinstance(value, dict):
        return {str(key): json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def slug(value: str, *, fallback: str = "item", max_length: int = 60) -> str:
    """Normalise identifiers for use in log filenames."""
    cleaned = re.sub(r"[^A-Za-z0-9]+", "-", value).strip("-")
    result = cleaned or fallback
    if len(result) <= max_length:
        return result
    digest = hashlib.sha256(result.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = result[:prefix_length].rstrip("-") or result[:prefix_length]
    return f"{prefix}-{digest}"


__all__ = ["json_safe", "slug", "write_exchange_log"]
