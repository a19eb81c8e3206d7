from __future__ import annotations

import html
import re
from typing import List, Sequence, Tuple

from .model import MarkerSpan, Segment, Span, TextSpan
from .utils import collapse_whitespace


PLACEHOLDER_RE = re.compile(r"⟦(\d+)⟧")
MEMORY_MARKER_TOKEN = "⟦m⟧"

# Shared by both modes: CMS shortcodes and template placeholders living in plain text.
_TEXT_MARKERS = (
    r"(?P<shortcode>\[/?[A-Za-z][\w-]*(?:\s[^\[\]]*)?/?\])"
    r"|(?P<placeholder>%(?:\d+\$)?[sdf]|\{\{[^{}]+\}\}|\{\d+\})"
)

# CDATA payloads carry HTML.
_HTML_MARKER_RE = re.compile(
    r"(?P<comment><!--[\s\S]*?-->)"
    r"|(?P<tag></?[A-Za-z][^<>]*>)"
    r"|" + _TEXT_MARKERS
)

# Plain XML content carries XLIFF inline elements.
_XML_MARKER_RE = re.compile(
    r"(?P<cdata><!\[CDATA\[(?P<cdata_body>[\s\S]*?)\]\]>)"
    r"|(?P<native><(?P<native_name>ph|bpt|ept|it)\b[^<>]*(?<!/)>[\s\S]*?</(?P=native_name)>)"
    r"|(?P<comment><!--[\s\S]*?-->)"
    r"|(?P<inline></?[A-Za-z][\w:.-]*(?:\s[^<>]*)?/?>)"
    r"|" + _TEXT_MARKERS
)

_MARKER_KINDS = ("native", "comment", "inline", "tag", "shortcode", "placeholder")


def xml_unescape(raw: str) -> str:
    return html.unescape(raw)


def xml_escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _text_span(raw: str, cdata: bool) -> TextSpan:
    return TextSpan(raw=raw, text=raw if cdata else xml_unescape(raw))


def tokenize(content: str, cdata: bool) -> Tuple[Span, ...]:
    """Split serialized unit content into text spans and marker spans.

    ``content`` is the element body: for CDATA it is the payload inside the
    CDATA section (HTML), otherwise the raw XML between the tags.
    """

    pattern = _HTML_MARKER_RE if cdata else _XML_MARKER_RE
    spans: List[Span] = []
    pos = 0
    for m in pattern.finditer(content):
        if m.start() > pos:
            spans.append(_text_span(content[pos : m.start()], cdata))
        if not cdata and m.group("cdata") is not None:
            spans.append(TextSpan(raw=m.group(0), text=m.group("cdata_body")))
        else:
            kind = next(k for k in _MARKER_KINDS if k in m.groupdict() and m.group(k) is not None)
            spans.append(MarkerSpan(raw=m.group(0), kind=kind))
        pos = m.end()
    if pos < len(content):
        spans.append(_text_span(content[pos:], cdata))
    return tuple(spans)


def segment_from_content(content: str, cdata: bool) -> Segment:
    return Segment(spans=tokenize(content, cdata), cdata=cdata)


def protect(segment: Segment) -> Tuple[str, Tuple[MarkerSpan, ...]]:
    """Replace each marker with a stable ``⟦n⟧`` placeholder.

    Returns the text to send to the translation capability and the markers in
    ordinal order, for :func:`restore`.
    """

    parts: List[str] = []
    markers: List[MarkerSpan] = []
    for span in segment.spans:
        if isinstance(span, MarkerSpan):
            parts.append(f"⟦{len(markers)}⟧")
            markers.append(span)
        else:
            parts.append(span.text)
    return "".join(parts), tuple(markers)


def restore(protected_text: str, markers: Sequence[MarkerSpan], cdata: bool) -> Segment:
    """Rebuild a segment from translated text carrying ``⟦n⟧`` placeholders.

    Unknown placeholders are left as text so the validator can report them.
    """

    spans: List[Span] = []
    pos = 0
    for m in PLACEHOLDER_RE.finditer(protected_text):
        idx = int(m.group(1))
        if idx >= len(markers):
            continue
        if m.start() > pos:
            spans.append(_encode_text(protected_text[pos : m.start()], cdata))
        spans.append(markers[idx])
        pos = m.end()
    if pos < len(protected_text):
        spans.append(_encode_text(protected_text[pos:], cdata))
    return Segment(spans=tuple(spans), cdata=cdata)


def _encode_text(text: str, cdata: bool) -> TextSpan:
    if cdata:
        return TextSpan(raw=text, text=text)
    return TextSpan(raw=xml_escape(text), text=text)


def leftover_placeholders(segment: Segment) -> List[str]:
    return [m.group(0) for span in segment.spans if isinstance(span, TextSpan) for m in PLACEHOLDER_RE.finditer(span.text)]


def normalize_for_memory(segment: Segment) -> str:
    """Case-folded, whitespace-collapsed text with markers reduced to one token."""

    parts = [MEMORY_MARKER_TOKEN if isinstance(s, MarkerSpan) else s.text for s in segment.spans]
    return collapse_whitespace(" ".join(parts).casefold())


def template_marker_count(template: str) -> int:
    return len(PLACEHOLDER_RE.findall(template))
