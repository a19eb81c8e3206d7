from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .model import ContentDocument, ContentRole, TranslationUnit


# First match wins; SEO/meta patterns come before the generic *_title ones.
DEFAULT_FIELD_RULES: List[Tuple[str, ContentRole]] = [
    ("_yoast_wpseo_*", ContentRole.METADATA),
    ("*seo*", ContentRole.METADATA),
    ("*metadesc*", ContentRole.METADATA),
    ("meta_*", ContentRole.METADATA),
    ("meta-*", ContentRole.METADATA),
    ("*description", ContentRole.METADATA),
    ("slug", ContentRole.METADATA),
    ("post_name", ContentRole.METADATA),
    ("alt", ContentRole.METADATA),
    ("*_alt", ContentRole.METADATA),
    ("title", ContentRole.TITLE),
    ("post_title", ContentRole.TITLE),
    ("*_title", ContentRole.TITLE),
    ("*-title", ContentRole.TITLE),
    ("heading*", ContentRole.TITLE),
    ("headline*", ContentRole.TITLE),
    ("body", ContentRole.BODY),
    ("content", ContentRole.BODY),
    ("post_content", ContentRole.BODY),
    ("*_content", ContentRole.BODY),
    ("*_text", ContentRole.BODY),
    ("excerpt", ContentRole.SHORT_FORM),
    ("post_excerpt", ContentRole.SHORT_FORM),
    ("*label*", ContentRole.SHORT_FORM),
    ("*button*", ContentRole.SHORT_FORM),
    ("menu*", ContentRole.SHORT_FORM),
    ("nav_*", ContentRole.SHORT_FORM),
    ("tag", ContentRole.SHORT_FORM),
    ("tags", ContentRole.SHORT_FORM),
    ("category*", ContentRole.SHORT_FORM),
    ("caption", ContentRole.SHORT_FORM),
]

_WPML_FIELD_PREFIX = re.compile(r"^field-")
_WPML_FIELD_INDEX = re.compile(r"-\d+$")
_TERMINAL_PUNCT = tuple(".!?…。！？:;")
_SENTENCE_END = re.compile(r"[.!?…。！？](?:\s+|$)")


def normalize_field_name(name: str) -> str:
    """``field-_yoast_wpseo_title-0`` -> ``_yoast_wpseo_title``."""
    name = name.strip().lower()
    name = _WPML_FIELD_PREFIX.sub("", name)
    return _WPML_FIELD_INDEX.sub("", name)


@dataclass(frozen=True)
class ExplicitFieldRule:
    """Field-name pattern table."""

    patterns: Tuple[Tuple[str, ContentRole], ...]

    def __call__(self, unit: TranslationUnit, doc: Optional[ContentDocument] = None) -> Optional[ContentRole]:
        name = normalize_field_name(unit.content_ref.field)
        for pattern, role in self.patterns:
            if fnmatch.fnmatchcase(name, pattern):
                return role
        return None


@dataclass(frozen=True)
class HeuristicRule:
    """Length/punctuation fallback when the field name says nothing."""

    short_max_words: int = 6
    body_min_chars: int = 120

    def __call__(self, unit: TranslationUnit, doc: Optional[ContentDocument] = None) -> Optional[ContentRole]:
        text = unit.source.plain_text
        if not text:
            return ContentRole.SHORT_FORM
        terminal = text.endswith(_TERMINAL_PUNCT)
        if len(text.split()) <= self.short_max_words and not terminal:
            return ContentRole.SHORT_FORM
        if len(text) >= self.body_min_chars or len(_SENTENCE_END.findall(text)) >= 2:
            return ContentRole.BODY
        return ContentRole.TITLE


@dataclass
class ContentClassifier:
    rules: List[Any] = field(default_factory=list)

    def classify(self, unit: TranslationUnit, doc: Optional[ContentDocument] = None) -> ContentRole:
        for rule in self.rules:
            role = rule(unit, doc)
            if role is not None:
                return role
        return ContentRole.BODY

    def classify_document(self, doc: ContentDocument, logger: Optional[logging.Logger] = None) -> Dict[str, int]:
        """Annotate every unit of ``doc`` with a role; returns counts per role."""
        counts: Dict[str, int] = {r.value: 0 for r in ContentRole}
        for unit in doc.units:
            unit.role = self.classify(unit, doc)
            counts[unit.role.value] += 1
        if logger:
            logger.info("   Roles for %s: %s", doc.name or doc.source_sha1[:8], counts)
        return counts


def _parse_extra_rules(rows: Sequence[Any]) -> List[Tuple[str, ContentRole]]:
    extra: List[Tuple[str, ContentRole]] = []
    for row in rows or []:
        if isinstance(row, dict):
            pattern, role = row.get("pattern", ""), row.get("role", "")
        else:
            pattern, role = row
        extra.append((str(pattern).lower(), ContentRole(role)))
    return extra


def build_classifier(cfg: Optional[Dict[str, Any]] = None) -> ContentClassifier:
    """Explicit field rules (configured ones first), then the heuristic."""
    ccfg = (cfg or {}).get("classifier", {})
    patterns = tuple(_parse_extra_rules(ccfg.get("rules", []))) + tuple(DEFAULT_FIELD_RULES)
    return ContentClassifier(
        rules=[
            ExplicitFieldRule(patterns),
            HeuristicRule(
                short_max_words=int(ccfg.get("short_max_words", 6)),
                body_min_chars=int(ccfg.get("body_min_chars", 120)),
            ),
        ]
    )
