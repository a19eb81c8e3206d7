from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from . import storage
from .errors import IncompleteTranslation
from .markers import xml_escape
from .model import ContentDocument, LanguageSlot, Literal, Segment, TargetSlot, TranslationUnit, UnitStatus


_BLOCKING = (UnitStatus.UNTRANSLATED, UnitStatus.FLAGGED)


def blocking_units(doc: ContentDocument) -> List[str]:
    """Ids of translatable units that would make the output incomplete."""
    return [u.id for u in doc.translatable_units() if u.status in _BLOCKING]


def _cdata(payload: str) -> str:
    return "<![CDATA[" + payload.replace("]]>", "]]]]><![CDATA[>") + "]]>"


def _language_value(language: str) -> str:
    return xml_escape(language).replace('"', "&quot;")


def _with_language(tag: str, slot: TargetSlot, language: str) -> str:
    if slot.lang_span is None:
        return tag
    start, end = slot.lang_span
    return tag[:start] + _language_value(language) + tag[end:]


def _render_target(slot: TargetSlot, target: Segment, language: str) -> str:
    if target.cdata:
        inner = slot.lead + _cdata(target.raw) + slot.trail if slot.cdata else _cdata(target.raw)
    else:
        inner = target.raw
    if slot.wraps:
        return _with_language(slot.open_tag, slot, language) + inner + slot.close_tag
    return inner


def _render_slot(slot: TargetSlot, unit: TranslationUnit, language: str) -> str:
    if unit.translatable and unit.is_translated and unit.target is not None:
        return _render_target(slot, unit.target, language)
    # Untouched: whatever the input had there, language attribute aside
    return _with_language(slot.original, slot, language)


def rebuild_document(
    doc: ContentDocument,
    partial: bool = False,
    target_language: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    """
    Serialize ``doc`` back into its original format.

    Only target spans and target-language attributes differ from the input.
    Raises IncompleteTranslation when a translatable unit is still untranslated
    or flagged, unless ``partial`` is set; in partial mode such units keep
    whatever target the input carried.
    """
    blocked = blocking_units(doc)
    if blocked and not partial:
        raise IncompleteTranslation(blocked)
    if blocked and logger:
        logger.warning("Partial output for %s: %s unit(s) left as in the input", doc.name or doc.source_sha1[:8], len(blocked))

    language = target_language or doc.target_language
    out: List[str] = []
    for part in doc.skeleton:
        if isinstance(part, Literal):
            out.append(part.text)
        elif isinstance(part, LanguageSlot):
            out.append(_language_value(language))
        elif isinstance(part, TargetSlot):
            out.append(_render_slot(part, doc.unit(part.unit_id), language))
    return "".join(out)


def write_document(
    path: str | Path,
    doc: ContentDocument,
    partial: bool = False,
    target_language: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> Path:
    text = rebuild_document(doc, partial=partial, target_language=target_language, logger=logger)
    p = Path(path)
    storage.write_text(p, text)
    if logger:
        logger.info("   Wrote %s (%s units)", p, len(doc))
    return p
