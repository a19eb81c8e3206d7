from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup, Tag

from . import storage
from .errors import MalformedDocument, MissingRequiredAttribute, UnsupportedVersion
from .markers import segment_from_content, xml_unescape
from .model import (
    ContentDocument,
    ContentRef,
    LanguageSlot,
    Literal,
    Segment,
    SkeletonPart,
    TargetSlot,
    TranslationUnit,
)
from .utils import sha1_text


@dataclass(frozen=True)
class Dialect:
    version: str
    unit_tag: str
    container_tag: str
    name_attr: str
    source_lang_attr: str
    target_lang_attr: str
    lang_owner: str


DIALECTS: Dict[str, Dialect] = {
    "1.2": Dialect("1.2", "trans-unit", "trans-unit", "resname", "source-language", "target-language", "file"),
    "2.0": Dialect("2.0", "unit", "segment", "name", "srcLang", "trgLang", "xliff"),
}
SUPPORTED_VERSIONS = tuple(DIALECTS)

_VERSION_RE = re.compile(r"^\d+\.\d+$")
_TOKEN_RE = re.compile(
    r"<!--[\s\S]*?-->"
    r"|<!\[CDATA\[[\s\S]*?\]\]>"
    r"|<\?[\s\S]*?\?>"
    r"|<!DOCTYPE(?:[^<>\[]|\[[\s\S]*?\])*>"
    r"|</(?P<end>[\w:.-]+)\s*>"
    r"|<(?P<start>[\w:.-]+)(?P<attrs>(?:\s+[\w:.-]+\s*=\s*(?:\"[^\"]*\"|'[^']*'))*)\s*(?P<empty>/?)>"
)
_ATTR_RE = re.compile(r"([\w:.-]+)\s*=\s*(?:\"([^\"]*)\"|'([^']*)')")
_CDATA_ONLY_RE = re.compile(r"^(\s*)<!\[CDATA\[([\s\S]*?)\]\]>(\s*)$")


@dataclass
class _Element:
    qname: str
    local: str


@dataclass
class _Container:
    """Positions of the element that directly holds ``<source>``/``<target>``."""

    unit_id: Optional[str]
    depth: int
    source_start: int = -1
    source_open_end: int = -1
    source_qname: str = "source"
    source_inner: Optional[Tuple[int, int]] = None
    source_end: int = -1
    target_inner: Optional[Tuple[int, int]] = None
    target_empty: Optional[Tuple[int, int]] = None
    target_empty_lang: Optional[Tuple[int, int]] = None
    target_qname: str = "target"


@dataclass
class _UnitInfo:
    id: str
    raw_id: str
    content_ref: ContentRef
    translatable: bool
    notes: Tuple[str, ...] = ()


class _Scanner:
    """Walks the raw markup, checking nesting and recording byte positions.

    BeautifulSoup tells us what the document says; the scanner tells us where
    it says it, so the skeleton reproduces the input exactly.
    """

    def __init__(self, text: str):
        self.text = text
        self.dialect: Optional[Dialect] = None
        self.root_attrs: Dict[str, str] = {}
        self.files: List[Dict[str, str]] = []
        self.language_spans: List[Tuple[int, int, str]] = []
        self.containers: List[_Container] = []
        self._stack: List[_Element] = []
        self._current: Optional[_Container] = None
        self._unit_id: Optional[str] = None
        self._root_seen = False

    def run(self) -> "_Scanner":
        pos = 0
        for m in _TOKEN_RE.finditer(self.text):
            self._check_gap(pos, m.start())
            pos = m.end()
            if m.group("start"):
                self._on_start(m)
            elif m.group("end"):
                self._on_end(m)
            elif not self._stack and m.group(0).startswith("<![CDATA["):
                raise MalformedDocument(f"CDATA section outside the root element at offset {m.start()}")
        self._check_gap(pos, len(self.text))
        if self._stack:
            raise MalformedDocument(f"Unclosed element <{self._stack[-1].qname}>")
        if not self._root_seen:
            raise MalformedDocument("Document has no root element")
        return self

    def _check_gap(self, start: int, end: int) -> None:
        gap = self.text[start:end]
        if "<" in gap:
            raise MalformedDocument(f"Unparsable markup at offset {start + gap.index('<')}")
        if not self._stack and gap.strip("\ufeff \t\r\n"):
            raise MalformedDocument(f"Text outside the root element at offset {start}")

    def _attributes(self, m: re.Match[str]) -> Tuple[Dict[str, str], Dict[str, Tuple[int, int]]]:
        attrs: Dict[str, str] = {}
        spans: Dict[str, Tuple[int, int]] = {}
        base = m.start("attrs")
        for a in _ATTR_RE.finditer(m.group("attrs")):
            name = a.group(1)
            group = 2 if a.group(2) is not None else 3
            attrs.setdefault(name, xml_unescape(a.group(group)))
            spans.setdefault(name, (base + a.start(group), base + a.end(group)))
        return attrs, spans

    def _on_start(self, m: re.Match[str]) -> None:
        qname = m.group("start")
        local = qname.split(":")[-1]
        empty = bool(m.group("empty"))
        attrs, spans = self._attributes(m)

        if not self._stack:
            if self._root_seen:
                raise MalformedDocument(f"Second root element <{qname}> at offset {m.start()}")
            self._root_seen = True
            self._on_root(local, attrs, spans)
        else:
            self._on_element(m, qname, local, attrs, spans, empty)

        if not empty:
            self._stack.append(_Element(qname, local))

    def _on_root(self, local: str, attrs: Dict[str, str], spans: Dict[str, Tuple[int, int]]) -> None:
        if local != "xliff":
            raise MalformedDocument(f"Root element is <{local}>, expected <xliff>")
        version = attrs.get("version", "").strip()
        if not version:
            raise MissingRequiredAttribute("version", "xliff")
        if not _VERSION_RE.match(version):
            raise MalformedDocument(f"Invalid XLIFF version: {version!r}")
        if version not in DIALECTS:
            raise UnsupportedVersion(version)
        self.dialect = DIALECTS[version]
        self.root_attrs = attrs
        if self.dialect.lang_owner == "xliff" and self.dialect.target_lang_attr in spans:
            self.language_spans.append((*spans[self.dialect.target_lang_attr], self.dialect.target_lang_attr))

    def _on_element(
        self,
        m: re.Match[str],
        qname: str,
        local: str,
        attrs: Dict[str, str],
        spans: Dict[str, Tuple[int, int]],
        empty: bool,
    ) -> None:
        d = self.dialect
        if d is None:
            raise MalformedDocument(f"Element <{qname}> before the XLIFF root at offset {m.start()}")
        parent = self._stack[-1].local

        if local == "file":
            self.files.append(attrs)
            if d.lang_owner == "file" and d.target_lang_attr in spans:
                self.language_spans.append((*spans[d.target_lang_attr], d.target_lang_attr))

        if local == d.unit_tag:
            self._unit_id = attrs.get("id")

        if local == d.container_tag and (d.container_tag == d.unit_tag or parent == d.unit_tag):
            container = _Container(unit_id=self._unit_id, depth=len(self._stack))
            self._current = container
            if empty:
                self._close_container(container)
            return

        cur = self._current
        if cur is None or len(self._stack) != cur.depth + 1 or local not in ("source", "target"):
            return

        if local == "source":
            cur.source_start = m.start()
            cur.source_open_end = m.end()
            cur.source_qname = qname
            if empty:
                cur.source_inner = (m.end(), m.end())
                cur.source_end = m.end()
        else:
            cur.target_qname = qname
            if empty:
                cur.target_empty = (m.start(), m.end())
                if "xml:lang" in spans:
                    s, e = spans["xml:lang"]
                    cur.target_empty_lang = (s - m.start(), e - m.start())
                return
            if "xml:lang" in spans:
                self.language_spans.append((*spans["xml:lang"], "xml:lang"))
            cur.target_inner = (m.end(), -1)

    def _on_end(self, m: re.Match[str]) -> None:
        qname = m.group("end")
        if not self._stack:
            raise MalformedDocument(f"Unexpected closing tag </{qname}> at offset {m.start()}")
        el = self._stack.pop()
        if el.qname != qname:
            raise MalformedDocument(f"Mismatched closing tag </{qname}> for <{el.qname}> at offset {m.start()}")

        cur = self._current
        if cur is None:
            return
        if len(self._stack) == cur.depth:
            self._close_container(cur)
        elif len(self._stack) == cur.depth + 1:
            if el.local == "source" and cur.source_start >= 0 and cur.source_inner is None:
                cur.source_inner = (cur.source_open_end, m.start())
                cur.source_end = m.end()
            elif el.local == "target" and cur.target_inner is not None and cur.target_inner[1] < 0:
                cur.target_inner = (cur.target_inner[0], m.start())

    def _close_container(self, cur: _Container) -> None:
        if cur.source_inner is None:
            raise MalformedDocument(f"Unit {cur.unit_id!r} has no <source>")
        self.containers.append(cur)
        self._current = None


def _segment(inner: str) -> Tuple[Segment, Optional[re.Match[str]]]:
    m = _CDATA_ONLY_RE.match(inner)
    if m:
        # adjacent CDATA sections (a split "]]>") form one payload
        return segment_from_content(m.group(2).replace("]]><![CDATA[", ""), cdata=True), m
    return segment_from_content(inner, cdata=False), None


def _notes(tag: Tag, dialect: Dialect) -> Tuple[str, ...]:
    if dialect.version == "1.2":
        nodes = tag.find_all("note", recursive=False)
    else:
        holder = tag.find("notes", recursive=False)
        nodes = holder.find_all("note", recursive=False) if holder else []
    return tuple(n.get_text(" ", strip=True) for n in nodes if n.get_text(strip=True))


def _translatable(unit: Tag) -> bool:
    """``translate="no"`` on the unit or any enclosing group or file wins."""
    for tag in (unit, *unit.parents):
        if (tag.get("translate") or "yes").lower() == "no":
            return False
    return True


def _read_units(soup: BeautifulSoup, dialect: Dialect, default_item: str) -> List[_UnitInfo]:
    """Enumerate translation units in document order, as BeautifulSoup sees them."""

    infos: List[_UnitInfo] = []
    for file_tag in soup.find_all("file"):
        item = file_tag.get("original") or file_tag.get("id") or default_item
        for unit in file_tag.find_all(dialect.unit_tag):
            uid = unit.get("id")
            if not uid:
                raise MissingRequiredAttribute("id", dialect.unit_tag)
            field_name = unit.get(dialect.name_attr) or uid
            notes = _notes(unit, dialect)
            unit_translatable = _translatable(unit)

            if dialect.container_tag == dialect.unit_tag:
                infos.append(_UnitInfo(uid, uid, ContentRef(item, field_name), unit_translatable, notes))
                continue

            segments = unit.find_all(dialect.container_tag, recursive=False)
            for n, seg in enumerate(segments, start=1):
                seg_id = uid if len(segments) == 1 else f"{uid}/{seg.get('id') or n}"
                infos.append(_UnitInfo(seg_id, uid, ContentRef(item, field_name), unit_translatable, notes))
    return infos


def _languages(scan: _Scanner, d: Dialect) -> Tuple[str, str]:
    if d.lang_owner == "xliff":
        src = scan.root_attrs.get(d.source_lang_attr, "").strip()
        tgt = scan.root_attrs.get(d.target_lang_attr, "").strip()
        if not src:
            raise MissingRequiredAttribute(d.source_lang_attr, "xliff")
        if not tgt:
            raise MissingRequiredAttribute(d.target_lang_attr, "xliff")
        return src, tgt

    if not scan.files:
        raise MalformedDocument("Document declares no <file>")
    sources, targets = set(), set()
    for attrs in scan.files:
        src = attrs.get(d.source_lang_attr, "").strip()
        tgt = attrs.get(d.target_lang_attr, "").strip()
        if not src:
            raise MissingRequiredAttribute(d.source_lang_attr, "file")
        if not tgt:
            raise MissingRequiredAttribute(d.target_lang_attr, "file")
        sources.add(src)
        targets.add(tgt)
    if len(sources) > 1 or len(targets) > 1:
        raise MalformedDocument(
            f"<file> elements disagree on languages: sources={sorted(sources)} targets={sorted(targets)}"
        )
    return sources.pop(), targets.pop()


def _newline(text: str) -> str:
    return "\r\n" if "\r\n" in text else "\n"


def _insert_prefix(text: str, source_start: int) -> str:
    line_start = text.rfind("\n", 0, source_start) + 1
    indent = text[line_start:source_start]
    if line_start == 0 or indent.strip():
        return ""
    return _newline(text) + indent


def _target_slot(text: str, unit_id: str, cont: _Container, source: Segment) -> Tuple[int, int, TargetSlot, Optional[Segment]]:
    prefix = cont.source_qname[: -len("source")]
    close_tag = f"</{prefix}target>"

    if cont.target_inner is not None:
        start, end = cont.target_inner
        inner = text[start:end]
        existing, cdata_match = _segment(inner)
        slot = TargetSlot(
            unit_id=unit_id,
            original=inner,
            cdata=cdata_match is not None,
            lead=cdata_match.group(1) if cdata_match else "",
            trail=cdata_match.group(3) if cdata_match else "",
        )
        return start, end, slot, existing

    if cont.target_empty is not None:
        start, end = cont.target_empty
        empty_tag = text[start:end]
        open_tag = re.sub(r"\s*/>$", ">", empty_tag)
        slot = TargetSlot(
            unit_id,
            original=empty_tag,
            wraps=True,
            open_tag=open_tag,
            close_tag=close_tag,
            cdata=source.cdata,
            lang_span=cont.target_empty_lang,
        )
        return start, end, slot, None

    at = cont.source_end
    open_tag = _insert_prefix(text, cont.source_start) + f"<{prefix}target>"
    slot = TargetSlot(unit_id, original="", wraps=True, open_tag=open_tag, close_tag=close_tag, cdata=source.cdata)
    return at, at, slot, None


def parse_document(data: str | bytes, name: str = "") -> ContentDocument:
    """Parse a serialized XLIFF 1.2 / 2.0 document into a :class:`ContentDocument`.

    Raises:
      MalformedDocument: syntax errors or inconsistent structure.
      UnsupportedVersion: a well-formed version this parser does not handle.
      MissingRequiredAttribute: version, languages or unit ids missing.
    """

    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedDocument(f"Document is not valid UTF-8: {exc}") from exc
    else:
        text = data
    scan = _Scanner(text).run()
    dialect = scan.dialect
    if dialect is None:
        raise MalformedDocument("Document has no XLIFF root element")
    source_language, target_language = _languages(scan, dialect)

    soup = BeautifulSoup(text.lstrip("\ufeff"), "xml")
    infos = _read_units(soup, dialect, default_item=name or "document")

    if len(infos) != len(scan.containers):
        raise MalformedDocument(
            f"Unit layout mismatch: {len(infos)} unit(s) declared, {len(scan.containers)} located in markup"
        )

    units: List[TranslationUnit] = []
    cuts: List[Tuple[int, int, SkeletonPart]] = [(s, e, LanguageSlot(attr, text[s:e])) for s, e, attr in scan.language_spans]
    seen: set[str] = set()

    for info, cont in zip(infos, scan.containers):
        if cont.unit_id != info.raw_id:
            raise MalformedDocument(f"Unit layout mismatch at {info.id!r}: markup has {cont.unit_id!r}")
        if info.id in seen:
            raise MalformedDocument(f"Duplicate unit id: {info.id}")
        seen.add(info.id)

        if cont.source_inner is None:
            raise MalformedDocument(f"Unit {info.id!r} has no <source>")
        source, _ = _segment(text[cont.source_inner[0] : cont.source_inner[1]])
        start, end, slot, existing = _target_slot(text, info.id, cont, source)
        cuts.append((start, end, slot))
        units.append(
            TranslationUnit(
                id=info.id,
                source=source,
                content_ref=info.content_ref,
                translatable=info.translatable,
                existing_target=existing,
                notes=info.notes,
            )
        )

    cuts.sort(key=lambda c: (c[0], c[1]))
    skeleton: List[SkeletonPart] = []
    pos = 0
    for start, end, part in cuts:
        if start < pos:
            raise MalformedDocument(f"Overlapping structural slots at offset {start}")
        if start > pos:
            skeleton.append(Literal(text[pos:start]))
        skeleton.append(part)
        pos = end
    if pos < len(text):
        skeleton.append(Literal(text[pos:]))

    return ContentDocument(
        version=dialect.version,
        source_language=source_language,
        target_language=target_language,
        units=tuple(units),
        skeleton=tuple(skeleton),
        source_sha1=sha1_text(text),
        name=name,
    )


def parse_file(path: str | Path) -> ContentDocument:
    p = Path(path)
    return parse_document(storage.read_bytes(p), name=p.stem)
