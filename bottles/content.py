from __future__ import annotations

import html
import re
from dataclasses import dataclass
from typing import Union


MEDIA_KINDS = ("image", "audio", "video")
AV_KINDS = frozenset({"audio", "video"})

_TAG_FOR_KIND = {"image": "img", "audio": "audio", "video": "video"}
_KIND_FOR_TAG = {"img": "image", "image": "image", "audio": "audio", "video": "video"}

_MEDIA_RE = re.compile(r"<(img|image|audio|video)\b([^<>]*?)/?>", re.I)
_CLOSING_RE = re.compile(r"</(?:img|image|audio|video)\s*>", re.I)
_ATTR_RE = re.compile(r"""([A-Za-z_:][-\w:.]*)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_DATA_PAYLOAD_RE = re.compile(r"^(data:[^,]*?;base64,).*$", re.S)


@dataclass(frozen=True, slots=True)
class TextSpan:
    text: str


@dataclass(frozen=True, slots=True)
class MediaSpan:
    kind: str
    src: str

    @property
    def representation(self) -> str:
        return locator_representation(self.src)


Span = Union[TextSpan, MediaSpan]


def locator_representation(src: str) -> str:
    """remote | inline | local, judged from the locator scheme."""
    s = (src or "").strip().lower()
    if s.startswith("data:"):
        return "inline"
    if s.startswith("file:"):
        return "local"
    return "remote"


def parse(text: str) -> list[Span]:
    spans: list[Span] = []
    source = _CLOSING_RE.sub("", text or "")
    pos = 0
    for m in _MEDIA_RE.finditer(source):
        if m.start() > pos:
            spans.append(TextSpan(html.unescape(source[pos:m.start()])))
        attrs = {
            a.group(1).lower(): html.unescape(a.group(2) if a.group(2) is not None else a.group(3))
            for a in _ATTR_RE.finditer(m.group(2))
        }
        src = attrs.get("src") or attrs.get("url") or ""
        if src:
            spans.append(MediaSpan(_KIND_FOR_TAG[m.group(1).lower()], src))
        pos = m.end()
    if pos < len(source):
        spans.append(TextSpan(html.unescape(source[pos:])))
    return _merge_text(spans)


def serialize(spans: list[Span]) -> str:
    out: list[str] = []
    for span in spans:
        if isinstance(span, MediaSpan):
            out.append(f'<{_TAG_FOR_KIND[span.kind]} src="{html.escape(span.src, quote=True)}"/>')
        else:
            out.append(html.escape(span.text, quote=False))
    return "".join(out)


def from_plain(text: str, media: list[MediaSpan] | None = None) -> str:
    """Stored form for a chat message: escaped text followed by its attachments."""
    spans: list[Span] = []
    if text:
        spans.append(TextSpan(text))
    spans.extend(media or [])
    return serialize(spans)


def _merge_text(spans: list[Span]) -> list[Span]:
    merged: list[Span] = []
    for span in spans:
        if isinstance(span, TextSpan):
            if not span.text:
                continue
            if merged and isinstance(merged[-1], TextSpan):
                merged[-1] = TextSpan(merged[-1].text + span.text)
                continue
        merged.append(span)
    return merged


def media_spans(spans: list[Span]) -> list[tuple[int, MediaSpan]]:
    return [(idx, s) for idx, s in enumerate(spans) if isinstance(s, MediaSpan)]


def has_media(content: str) -> bool:
    return any(isinstance(s, MediaSpan) for s in parse(content))


def has_av(content: str) -> bool:
    return any(isinstance(s, MediaSpan) and s.kind in AV_KINDS for s in parse(content))


def strip_media(content: str) -> str:
    return serialize([s for s in parse(content) if isinstance(s, TextSpan)])


def plain_text(content: str) -> str:
    return "".join(s.text for s in parse(content) if isinstance(s, TextSpan))


def measured_length(content: str) -> int:
    """Length used for the size limit; inline payloads only count their data: header."""
    total = 0
    for span in parse(content):
        if isinstance(span, TextSpan):
            total += len(span.text)
            continue
        src = span.src
        if span.representation == "inline":
            src = _DATA_PAYLOAD_RE.sub(r"\1", src)
        total += len(serialize([MediaSpan(span.kind, src)]))
    return total


def summary(content: str) -> str:
    """One-line listing form: audio/video collapse to a placeholder."""
    spans = parse(content)
    for span in spans:
        if isinstance(span, MediaSpan) and span.kind == "audio":
            return "[audio]"
        if isinstance(span, MediaSpan) and span.kind == "video":
            return "[video]"
    parts: list[str] = []
    for span in spans:
        parts.append("[image]" if isinstance(span, MediaSpan) else span.text)
    return " ".join("".join(parts).split())
