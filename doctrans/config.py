from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Optional

from . import storage
from .utils import deep_merge


DEFAULT_CONFIG: Dict[str, Any] = {
    "paths": {
        "logs_dir": "logs",
        "exports_dir": "data/exports",
        "translation_memory": "data/memory/translation_memory.jsonl",
        "linkage_table": "data/exports/translation_groups.json",
        "quality_report": "data/exports/quality_report.md",
        "quality_report_csv": "data/exports/quality_report.csv",
        "audit_report": "logs/audit.json",
    },
    "classifier": {
        "rules": [],
        "short_max_words": 6,
        "body_min_chars": 120,
    },
    "memory": {
        "fuzzy_threshold": 0.85,
        "auto_adopt_threshold": 0.95,
        "max_candidates": 5,
    },
    "translation": {
        "provider": "openai",
        "openai": {"model": "gpt-4.1-mini", "temperature": 0.1, "max_output_tokens": 2000},
        "deepl": {"preserve_formatting": True},
        "dummy": {"dictionary": {}},
        "scheduling": {
            "max_attempts": 4,
            "retry_backoff_seconds": 1.0,
            "max_backoff_seconds": 30.0,
            "call_timeout_seconds": 60.0,
            "max_in_flight": 4,
            "min_interval_seconds": 0.0,
        },
        "parallel_workers": 4,
        "documents_in_parallel": 2,
    },
    "quality": {
        "register_threshold": 0.8,
        "scorer": "heuristic",
        "openai": {"model": "gpt-4.1-mini"},
    },
    "rebuild": {"partial": False},
    "linkage": {"target_ref_template": "{item}@{lang}"},
    "style": {
        "default": {
            "register": "neutral, professional",
            "formality": "default",
            "conventions": [
                "Keep brand and product names unchanged",
                "Preserve numbers, dates and units exactly",
            ],
            "forbidden_terms": [],
            "min_length_ratio": 0.4,
            "max_length_ratio": 2.5,
        },
        "roles": {
            "title": {"conventions": ["Concise headline; no terminal period"]},
            "short-form": {"conventions": ["Keep it short, like a UI label"], "max_length_ratio": 3.0},
            "metadata": {"conventions": ["Search-snippet style; keep keywords near the start"]},
            "body": {"conventions": ["Fluent, natural prose; keep paragraph rhythm"]},
        },
        "languages": {},
    },
}


def load_config(path: Optional[str | Path] = None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Read a JSON config file and merge it over the defaults."""

    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if path:
        cfg = deep_merge(cfg, storage.read_json(path))
    if overrides:
        cfg = deep_merge(cfg, overrides)
    return cfg
