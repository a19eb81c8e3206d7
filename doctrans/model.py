from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .utils import collapse_whitespace


class ContentRole(str, Enum):
    TITLE = "title"
    BODY = "body"
    SHORT_FORM = "short-form"
    METADATA = "metadata"


class UnitStatus(str, Enum):
    UNTRANSLATED = "untranslated"
    MACHINE_TRANSLATED = "machine-translated"
    MEMORY_HIT = "memory-hit"
    VALIDATED = "validated"
    FLAGGED = "flagged"


TRANSLATED_STATUSES = frozenset({UnitStatus.MACHINE_TRANSLATED, UnitStatus.MEMORY_HIT, UnitStatus.VALIDATED})


@dataclass(frozen=True)
class TextSpan:
    """Translatable text. ``raw`` is the serialized form, ``text`` the decoded one."""

    raw: str
    text: str


@dataclass(frozen=True)
class MarkerSpan:
    """A non-translatable inline element kept verbatim."""

    raw: str
    kind: str


Span = Union[TextSpan, MarkerSpan]


@dataclass(frozen=True)
class Segment:
    spans: Tuple[Span, ...]
    cdata: bool = False

    @property
    def raw(self) -> str:
        return "".join(s.raw for s in self.spans)

    @property
    def text(self) -> str:
        """Readable text with markers left in place."""
        return "".join(s.text if isinstance(s, TextSpan) else s.raw for s in self.spans)

    @property
    def plain_text(self) -> str:
        return collapse_whitespace(" ".join(s.text for s in self.spans if isinstance(s, TextSpan)))

    @property
    def markers(self) -> Tuple[MarkerSpan, ...]:
        return tuple(s for s in self.spans if isinstance(s, MarkerSpan))

    @property
    def marker_raws(self) -> Tuple[str, ...]:
        return tuple(m.raw for m in self.markers)

    def is_blank(self) -> bool:
        return not self.plain_text


@dataclass(frozen=True)
class ContentRef:
    """Points a unit back to the logical content item (and field) it belongs to."""

    item: str
    field: str

    def __str__(self) -> str:
        return f"{self.item}#{self.field}"


@dataclass(frozen=True)
class QualityIssue:
    code: str
    message: str


@dataclass(frozen=True)
class QualityReport:
    unit_id: str
    attempt: int
    structural_ok: bool
    register_score: float
    threshold: float
    issues: Tuple[QualityIssue, ...] = ()
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def passed(self) -> bool:
        return self.structural_ok and self.register_score >= self.threshold

    def as_dict(self) -> Dict[str, object]:
        return {
            "unit_id": self.unit_id,
            "attempt": self.attempt,
            "structural_ok": self.structural_ok,
            "register_score": round(self.register_score, 4),
            "threshold": self.threshold,
            "passed": self.passed,
            "issues": [{"code": i.code, "message": i.message} for i in self.issues],
            "created_at": self.created_at,
        }


@dataclass
class TranslationUnit:
    id: str
    source: Segment
    content_ref: ContentRef
    role: Optional[ContentRole] = None
    target: Optional[Segment] = None
    status: UnitStatus = UnitStatus.UNTRANSLATED
    translatable: bool = True
    existing_target: Optional[Segment] = None
    notes: Tuple[str, ...] = ()
    attempts: int = 0
    last_error: Optional[str] = None
    origin: Optional[str] = None
    reports: List[QualityReport] = field(default_factory=list)

    @property
    def latest_report(self) -> Optional[QualityReport]:
        return self.reports[-1] if self.reports else None

    @property
    def is_translated(self) -> bool:
        return self.status in TRANSLATED_STATUSES

    @property
    def needs_translation(self) -> bool:
        return self.translatable and not self.source.is_blank()

    def apply_translation(self, target: Segment, status: UnitStatus, origin: str) -> None:
        self.target = target
        self.status = status
        self.origin = origin
        self.last_error = None

    def add_report(self, report: QualityReport) -> None:
        # Reports are superseded, never edited
        self.reports.append(report)


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class LanguageSlot:
    """A language attribute value (``target-language``, ``trgLang``, ``xml:lang``)."""

    attribute: str
    value: str


@dataclass(frozen=True)
class TargetSlot:
    """Where a unit's target content lives.

    ``original`` is the exact text the slot stands for. When ``wraps`` is set
    the slot emits its own element (the unit had no ``<target>`` or an empty
    ``<target/>``) using ``open_tag``/``close_tag``. ``lang_span`` locates the
    ``xml:lang`` value inside an empty ``<target/>``, at the same offsets in
    ``original`` and ``open_tag``.
    """

    unit_id: str
    original: str
    wraps: bool = False
    open_tag: str = ""
    close_tag: str = ""
    cdata: bool = False
    lead: str = ""
    trail: str = ""
    lang_span: Optional[Tuple[int, int]] = None


SkeletonPart = Union[Literal, LanguageSlot, TargetSlot]


@dataclass
class ContentDocument:
    version: str
    source_language: str
    target_language: str
    units: Tuple[TranslationUnit, ...]
    skeleton: Tuple[SkeletonPart, ...]
    source_sha1: str = ""
    name: str = ""

    def __post_init__(self) -> None:
        self._index = {u.id: u for u in self.units}

    def __iter__(self) -> Iterator[TranslationUnit]:
        return iter(self.units)

    def __len__(self) -> int:
        return len(self.units)

    def unit(self, unit_id: str) -> TranslationUnit:
        return self._index[unit_id]

    def content_items(self) -> List[str]:
        """Distinct content items, in document order."""
        return list(dict.fromkeys(u.content_ref.item for u in self.units))

    def translatable_units(self) -> List[TranslationUnit]:
        return [u for u in self.units if u.needs_translation]

    def status_counts(self) -> Dict[str, int]:
        counts = Counter(u.status.value for u in self.translatable_units())
        return {s.value: counts.get(s.value, 0) for s in UnitStatus}

    def pending_units(self) -> List[TranslationUnit]:
        return [u for u in self.translatable_units() if u.status in (UnitStatus.UNTRANSLATED, UnitStatus.FLAGGED)]
