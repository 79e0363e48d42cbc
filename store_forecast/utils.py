from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict

import numpy as np

logger = logging.getLogger(__name__)


# -------------------------
# Path utilities
# -------------------------
def normalize_abs_posix(path: str | Path) -> str:
    """Absolute POSIX-style path string, identical across platforms."""
    return Path(path).resolve().as_posix()


# -------------------------
# Hashing utilities
# -------------------------
def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """Deterministic JSON (sorted keys, compact separators, non-ASCII kept) for hashing."""
    return json.dumps(
        payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True
    )


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """(short_hash8, full_hash_hex) of the canonical JSON encoding (UTF-8, SHA-256)."""
    h = hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()
    return h[:8], h


# -------------------------
# JSON sanitizing
# -------------------------
def sanitize_for_json(obj: Any) -> Any:
    """
    Recursively convert engine objects into JSON primitives.

    - Path -> absolute POSIX string
    - Enum -> member name; FitMode additionally carries a label, which is preferred
    - dataclass -> dict of sanitized fields
    - numpy scalar -> Python scalar; ndarray -> list
    - non-finite floats -> None (JSON has no NaN/inf)
    - dict keys -> str; list/tuple/set -> list
    - datetime -> ISO-8601
    """
    if obj is None or isinstance(obj, (bool, str)):
        return obj
    if isinstance(obj, (int, np.integer)):
        return int(obj)
    if isinstance(obj, (float, np.floating)):
        f = float(obj)
        return f if np.isfinite(f) else None
    if isinstance(obj, Path):
        return normalize_abs_posix(obj)
    if isinstance(obj, _dt.datetime):
        return obj.isoformat()
    if hasattr(obj, "label") and isinstance(getattr(obj, "label"), str):
        return obj.label
    if hasattr(obj, "name") and hasattr(obj, "value") and isinstance(obj.name, str):
        return obj.name
    if isinstance(obj, np.ndarray):
        return [sanitize_for_json(x) for x in obj.tolist()]
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {
            f.name: sanitize_for_json(getattr(obj, f.name)) for f in dataclasses.fields(obj)
        }
    if isinstance(obj, dict):
        return {str(k): sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [sanitize_for_json(x) for x in obj]
    return str(obj)


def build_effective_parameters(engine: Any, batch: Any) -> dict[str, Any]:
    """
    JSON-safe {"engine": {...}, "batch": {...}} from the EngineParams/BatchParams
    dataclasses. New dataclass fields are picked up automatically.
    """
    return {
        "engine": sanitize_for_json(engine),
        "batch": sanitize_for_json(batch),
    }


# -------------------------
# Manifest / run directory helpers
# -------------------------
def write_manifest(path: str | Path, manifest: Dict[str, Any]) -> None:
    """Write manifest JSON as UTF-8 with indent=2."""
    Path(path).write_text(
        json.dumps(manifest, ensure_ascii=False, indent=2), encoding="utf-8"
    )


def utc_timestamp_seconds() -> str:
    """ISO-8601 UTC timestamp with seconds precision and Z suffix."""
    now = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)
    return now.isoformat(timespec="seconds") + "Z"


def ensure_run_dir(base: Path | str = "output") -> Path:
    """Create and return base/<YYYYmmddTHHMMSS>."""
    run_dir = Path(base) / time.strftime("%Y%m%dT%H%M%S", time.localtime())
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Ensured run_dir=%s", str(run_dir))
    return run_dir
