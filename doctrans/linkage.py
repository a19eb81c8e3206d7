from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import storage
from .errors import GroupConflict
from .model import ContentDocument


# uuid5 namespace for group ids
GROUP_NAMESPACE = uuid.UUID("6f1d3c1e-8a52-5b7e-9d0a-3c4b2f1e7a90")


@dataclass
class TranslationGroup:
    group_id: str
    source_language: str
    source_ref: str
    translations: Dict[str, str] = field(default_factory=dict)

    def as_record(self) -> Dict[str, Any]:
        return {
            "groupId": self.group_id,
            "sourceLanguage": self.source_language,
            "sourceContentRef": self.source_ref,
            "translations": dict(self.translations),
        }

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "TranslationGroup":
        return cls(
            group_id=str(rec["groupId"]),
            source_language=str(rec["sourceLanguage"]),
            source_ref=str(rec["sourceContentRef"]),
            translations={str(k): str(v) for k, v in (rec.get("translations") or {}).items()},
        )


@dataclass
class LinkResult:
    document: str
    target_language: str
    registered: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    conflicts: List[GroupConflict] = field(default_factory=list)


def derive_group_id(source_language: str, source_ref: str) -> str:
    return str(uuid.uuid5(GROUP_NAMESPACE, f"{source_language}|{source_ref}"))


class LinkageManager:
    """
    Cross-language group table, keyed by group id.

    The source entry of a group never changes. Each language slot holds at
    most one content reference; a different one raises GroupConflict.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger
        self._groups: Dict[str, TranslationGroup] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._groups)

    def get(self, group_id: str) -> Optional[TranslationGroup]:
        return self._groups.get(group_id)

    def group_for(self, source_language: str, source_ref: str) -> str:
        group_id = derive_group_id(source_language, source_ref)
        with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                self._groups[group_id] = TranslationGroup(group_id, source_language, source_ref)
            elif (group.source_language, group.source_ref) != (source_language, source_ref):
                raise GroupConflict(group_id, source_language, group.source_ref, source_ref)
        return group_id

    def register(self, group_id: str, language: str, target_ref: str) -> bool:
        """Returns True when the slot was filled now, False when it already held ``target_ref``."""
        with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise KeyError(f"Unknown translation group: {group_id}")
            if language == group.source_language:
                if target_ref != group.source_ref:
                    raise GroupConflict(group_id, language, group.source_ref, target_ref)
                return False
            existing = group.translations.get(language)
            if existing is None:
                group.translations[language] = target_ref
                return True
            if existing != target_ref:
                raise GroupConflict(group_id, language, existing, target_ref)
            return False

    def link_document(
        self,
        doc: ContentDocument,
        target_language: Optional[str] = None,
        ref_template: str = "{item}@{lang}",
    ) -> LinkResult:
        """Register every content item of ``doc``. Conflicts are collected per item."""
        language = target_language or doc.target_language
        result = LinkResult(document=doc.name or doc.source_sha1[:8], target_language=language)
        for item in doc.content_items():
            target_ref = ref_template.format(item=item, lang=language)
            try:
                group_id = self.group_for(doc.source_language, item)
                if self.register(group_id, language, target_ref):
                    result.registered.append(group_id)
                else:
                    result.unchanged.append(group_id)
            except GroupConflict as exc:
                result.conflicts.append(exc)
                if self.logger:
                    self.logger.warning("Linkage conflict for %s: %s", item, exc)
        if self.logger:
            self.logger.info(
                "   Linked %s -> %s: %s new, %s unchanged, %s conflict(s)",
                result.document,
                language,
                len(result.registered),
                len(result.unchanged),
                len(result.conflicts),
            )
        return result

    def export_table(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [g.as_record() for g in self._groups.values()]

    def save(self, path: str | Path) -> Path:
        p = Path(path)
        storage.write_json(p, self.export_table())
        return p

    @classmethod
    def load(cls, path: str | Path, logger: Optional[logging.Logger] = None) -> "LinkageManager":
        manager = cls(logger=logger)
        p = Path(path)
        if p.exists():
            for rec in storage.read_json(p):
                group = TranslationGroup.from_record(rec)
                manager._groups[group.group_id] = group
            if logger:
                logger.info("Linkage table loaded: %s group(s) from %s", len(manager), p)
        return manager
