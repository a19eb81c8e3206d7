from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import Any, Dict


def setup_logger(log_dir: str | Path, name: str = "doctrans", level: int = logging.INFO) -> logging.Logger:
    """Create a simple file+console logger."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid adding multiple handlers on repeated runs in one process
    if logger.handlers:
        return logger

    fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    fh = logging.FileHandler(log_dir / "doctrans.log", encoding="utf-8")
    fh.setLevel(level)
    fh.setFormatter(fmt)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)

    logger.addHandler(fh)
    logger.addHandler(ch)
    return logger


def sha1_text(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


def collapse_whitespace(s: str) -> str:
    return re.sub(r"\s+", " ", s).strip()


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""

    merged: Dict[str, Any] = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class AuditTrail:
    """Lightweight audit collector for prompt hashes and pipeline decisions."""

    def __init__(self) -> None:
        self.records: list[Dict[str, Any]] = []

    def record(self, kind: str, payload: Dict[str, Any]) -> None:
        entry = {"kind": kind, **payload}
        self.records.append(entry)

    def as_list(self) -> list[Dict[str, Any]]:
        return list(self.records)
