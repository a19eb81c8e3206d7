from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from difflib import SequenceMatcher
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from . import storage
from .errors import OverwriteNotConfirmed
from .markers import normalize_for_memory
from .model import ContentRole, Segment
from .utils import collapse_whitespace, sha1_text


SourceLike = Union[Segment, str]


def normalize_source(source: SourceLike) -> str:
    if isinstance(source, Segment):
        return normalize_for_memory(source)
    return collapse_whitespace(source.casefold())


def similarity(a: str, b: str) -> float:
    """Mean of token-set overlap and edit-distance ratio on normalized text."""
    if a == b:
        return 1.0
    ta, tb = set(a.split()), set(b.split())
    union = ta | tb
    token_overlap = len(ta & tb) / len(union) if union else 0.0
    char_ratio = SequenceMatcher(None, a, b).ratio()
    return (token_overlap + char_ratio) / 2


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class MemoryKey:
    fingerprint: str
    target_language: str
    role: str


@dataclass(frozen=True)
class MemoryEntry:
    fingerprint: str
    target_language: str
    role: str
    source_norm: str
    source_text: str
    target_template: str
    acceptance_score: float = 1.0
    usage_count: int = 1
    created_at: str = ""
    updated_at: str = ""

    @property
    def key(self) -> MemoryKey:
        return MemoryKey(self.fingerprint, self.target_language, self.role)

    def as_record(self, op: str) -> Dict[str, Any]:
        return {"op": op, **asdict(self)}


class LookupKind(str, Enum):
    EXACT = "exact"
    FUZZY = "fuzzy"
    NONE = "none"


@dataclass(frozen=True)
class Candidate:
    entry: MemoryEntry
    similarity: float


@dataclass(frozen=True)
class LookupResult:
    kind: LookupKind
    exact: Optional[MemoryEntry] = None
    candidates: Tuple[Candidate, ...] = ()

    @property
    def best(self) -> Optional[Candidate]:
        return self.candidates[0] if self.candidates else None


class RecordOutcome(str, Enum):
    CREATED = "created"
    REINFORCED = "reinforced"
    CONFLICT = "conflict"
    OVERWRITTEN = "overwritten"


def _role_value(role: ContentRole | str) -> str:
    return role.value if isinstance(role, ContentRole) else str(role)


class TranslationMemory:
    """
    Accepted translations keyed by (source fingerprint, target language, role).

    Entries are immutable snapshots swapped in place, so lookups never take a
    lock. Writers take a per-key lock; every write is one appended JSONL line,
    written before the in-memory table changes.
    """

    def __init__(
        self,
        storage_path: Optional[str | Path] = None,
        fuzzy_threshold: float = 0.85,
        max_candidates: int = 5,
        logger: Optional[logging.Logger] = None,
    ):
        self.storage_path = Path(storage_path) if storage_path else None
        self.fuzzy_threshold = fuzzy_threshold
        self.max_candidates = max_candidates
        self.logger = logger
        self._entries: Dict[MemoryKey, MemoryEntry] = {}
        self._locks: Dict[MemoryKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._closed = False
        self._lookups: Dict[str, int] = {k.value: 0 for k in LookupKind}
        self._lookups_guard = threading.Lock()

    @classmethod
    def open(cls, storage_path: Optional[str | Path] = None, **kwargs: Any) -> "TranslationMemory":
        tm = cls(storage_path=storage_path, **kwargs)
        tm._load()
        return tm

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> "TranslationMemory":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._entries)

    def _load(self) -> None:
        if not self.storage_path:
            return
        skipped = 0
        for rec in storage.iter_jsonl(self.storage_path):
            rec.pop("op", None)
            try:
                entry = MemoryEntry(**rec)
            except TypeError:
                skipped += 1
                continue
            self._entries[entry.key] = entry
        if self.logger:
            self.logger.info("Translation memory loaded: %s entries from %s", len(self._entries), self.storage_path)
            if skipped:
                self.logger.warning("Skipped %s unreadable memory record(s)", skipped)

    def _persist(self, entry: MemoryEntry, op: str) -> None:
        if self.storage_path:
            storage.append_jsonl(self.storage_path, entry.as_record(op))

    def _lock_for(self, key: MemoryKey) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Translation memory is closed")

    @staticmethod
    def key_for(source: SourceLike, target_language: str, role: ContentRole | str) -> MemoryKey:
        return MemoryKey(sha1_text(normalize_source(source)), target_language, _role_value(role))

    def get(self, key: MemoryKey) -> Optional[MemoryEntry]:
        return self._entries.get(key)

    def entries(self) -> List[MemoryEntry]:
        return list(self._entries.values())

    def _counted(self, result: LookupResult) -> LookupResult:
        with self._lookups_guard:
            self._lookups[result.kind.value] += 1
        return result

    def lookup(self, source: SourceLike, target_language: str, role: ContentRole | str) -> LookupResult:
        norm = normalize_source(source)
        role_v = _role_value(role)
        exact = self._entries.get(MemoryKey(sha1_text(norm), target_language, role_v))
        if exact is not None:
            return self._counted(LookupResult(LookupKind.EXACT, exact=exact))

        scored: List[Candidate] = []
        for entry in list(self._entries.values()):
            if entry.target_language != target_language or entry.role != role_v:
                continue
            score = similarity(norm, entry.source_norm)
            if score >= self.fuzzy_threshold:
                scored.append(Candidate(entry, score))
        if not scored:
            return self._counted(LookupResult(LookupKind.NONE))
        scored.sort(key=lambda c: (-c.similarity, -c.entry.usage_count))
        return self._counted(LookupResult(LookupKind.FUZZY, candidates=tuple(scored[: self.max_candidates])))

    def record(
        self,
        source: SourceLike,
        target_language: str,
        role: ContentRole | str,
        target_template: str,
        acceptance_score: float = 1.0,
    ) -> RecordOutcome:
        """Create an entry, or reinforce one holding the same translation.

        A different translation for an existing key is left alone and reported
        as CONFLICT; replacing it goes through :meth:`overwrite`.
        """
        self._check_open()
        norm = normalize_source(source)
        key = MemoryKey(sha1_text(norm), target_language, _role_value(role))
        with self._lock_for(key):
            current = self._entries.get(key)
            if current is None:
                now = _now()
                entry = MemoryEntry(
                    fingerprint=key.fingerprint,
                    target_language=key.target_language,
                    role=key.role,
                    source_norm=norm,
                    source_text=source.text if isinstance(source, Segment) else source,
                    target_template=target_template,
                    acceptance_score=acceptance_score,
                    usage_count=1,
                    created_at=now,
                    updated_at=now,
                )
                self._persist(entry, RecordOutcome.CREATED.value)
                self._entries[key] = entry
                return RecordOutcome.CREATED

            if current.target_template != target_template:
                if self.logger:
                    self.logger.warning(
                        "Memory conflict for %s/%s %s: kept %r, refused %r",
                        key.target_language,
                        key.role,
                        key.fingerprint[:10],
                        current.target_template,
                        target_template,
                    )
                return RecordOutcome.CONFLICT

            entry = replace(
                current,
                usage_count=current.usage_count + 1,
                acceptance_score=max(current.acceptance_score, acceptance_score),
                updated_at=_now(),
            )
            self._persist(entry, RecordOutcome.REINFORCED.value)
            self._entries[key] = entry
            return RecordOutcome.REINFORCED

    def overwrite(
        self,
        source: SourceLike,
        target_language: str,
        role: ContentRole | str,
        target_template: str,
        acceptance_score: float = 1.0,
        confirmed: bool = False,
    ) -> RecordOutcome:
        """Operator path: replace the accepted translation for a key."""
        if not confirmed:
            raise OverwriteNotConfirmed("Overwriting an accepted memory entry requires confirmed=True")
        self._check_open()
        norm = normalize_source(source)
        key = MemoryKey(sha1_text(norm), target_language, _role_value(role))
        with self._lock_for(key):
            current = self._entries.get(key)
            now = _now()
            entry = MemoryEntry(
                fingerprint=key.fingerprint,
                target_language=key.target_language,
                role=key.role,
                source_norm=norm,
                source_text=source.text if isinstance(source, Segment) else source,
                target_template=target_template,
                acceptance_score=acceptance_score,
                usage_count=1,
                created_at=current.created_at if current else now,
                updated_at=now,
            )
            self._persist(entry, RecordOutcome.OVERWRITTEN.value)
            self._entries[key] = entry
        if self.logger:
            self.logger.info("Memory entry %s/%s %s overwritten by operator", key.target_language, key.role, key.fingerprint[:10])
        return RecordOutcome.OVERWRITTEN

    def compact(self) -> None:
        """Rewrite the backing file with one line per entry. Call with no writers active."""
        if not self.storage_path:
            return
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.storage_path.with_suffix(self.storage_path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            for entry in self.entries():
                f.write(json.dumps(entry.as_record("snapshot"), ensure_ascii=False) + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.storage_path)

    def stats(self) -> Dict[str, Any]:
        by_scope: Dict[str, int] = {}
        for entry in self.entries():
            scope = f"{entry.target_language}/{entry.role}"
            by_scope[scope] = by_scope.get(scope, 0) + 1
        with self._lookups_guard:
            lookups = dict(self._lookups)
        return {
            "entries": len(self._entries),
            "by_scope": by_scope,
            "hits": lookups[LookupKind.EXACT.value],
            "fuzzy": lookups[LookupKind.FUZZY.value],
            "misses": lookups[LookupKind.NONE.value],
        }
