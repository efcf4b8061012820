"""
Input sanitization for user-supplied text and rich-text comments.

sanitize_html() is allow-list based: anything not explicitly listed is dropped, and
script/style bodies are removed together with their tags.
"""
from __future__ import annotations

import html
import re
from html.parser import HTMLParser
from urllib.parse import urlparse

ALLOWED_TAGS = frozenset(
    {
        "p", "br", "strong", "b", "em", "i", "u", "s", "strike",
        "ul", "ol", "li", "code", "pre", "blockquote",
        "h1", "h2", "h3", "h4", "h5", "h6",
        "a", "span", "div",
    }
)
ALLOWED_ATTRIBUTES: dict[str, frozenset[str]] = {
    "a": frozenset({"href", "title", "target", "rel"}),
    "span": frozenset({"class", "data-mention-id"}),
    "div": frozenset({"class"}),
    "code": frozenset({"class"}),
    "pre": frozenset({"class"}),
}
ALLOWED_PROTOCOLS = frozenset({"http", "https", "mailto"})
_DROP_WITH_CONTENT = frozenset({"script", "style"})
_VOID_TAGS = frozenset({"br"})
_UNSAFE_PREFIXES = ("javascript:", "data:", "vbscript:")

_HTML_ESCAPES = {
    "&": "&amp;",
    "<": "&lt;",
    ">": "&gt;",
    '"': "&quot;",
    "'": "&#x27;",
    "/": "&#x2F;",
}
_HTML_UNESCAPES = {v: k for k, v in _HTML_ESCAPES.items()}
_ESCAPE_RE = re.compile(r"[&<>\"'/]")
_UNESCAPE_RE = re.compile(r"&(?:amp|lt|gt|quot|#x27|#x2F);")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_TAG_RE = re.compile(r"<[^>]*>")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def escape_html(text: str) -> str:
    return _ESCAPE_RE.sub(lambda m: _HTML_ESCAPES[m.group(0)], text)


def unescape_html(text: str) -> str:
    return _UNESCAPE_RE.sub(lambda m: _HTML_UNESCAPES[m.group(0)], text)


def is_safe_url(url: str) -> bool:
    candidate = re.sub(r"\s", "", url).lower()
    if candidate.startswith(_UNSAFE_PREFIXES):
        return False
    scheme = urlparse(url.strip()).scheme.lower()
    # Relative URLs have no scheme and are allowed.
    return not scheme or scheme in ALLOWED_PROTOCOLS


class _AllowListParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.out: list[str] = []
        self._skip_depth = 0

    def _render_attrs(self, tag: str, attrs: list[tuple[str, str | None]]) -> list[str]:
        allowed = ALLOWED_ATTRIBUTES.get(tag, frozenset())
        rendered: list[tuple[str, str]] = []
        external = False
        for name, value in attrs:
            name = name.lower()
            if name not in allowed or name.startswith("on"):
                continue
            value = value or ""
            if name == "href":
                if not is_safe_url(value):
                    continue
                if value.startswith("http"):
                    external = True
            rendered.append((name, value))
        if external:
            rendered = [(n, v) for n, v in rendered if n not in ("rel", "target")]
            rendered += [("rel", "noopener noreferrer"), ("target", "_blank")]
        return [f'{n}="{html.escape(v, quote=True)}"' for n, v in rendered]

    def _start(self, tag: str, attrs: list[tuple[str, str | None]], self_closing: bool) -> None:
        tag = tag.lower()
        if tag in _DROP_WITH_CONTENT:
            if not self_closing:
                self._skip_depth += 1
            return
        if self._skip_depth or tag not in ALLOWED_TAGS:
            return
        parts = [tag] + self._render_attrs(tag, attrs)
        if self_closing or tag in _VOID_TAGS:
            self.out.append(f"<{' '.join(parts)} />")
        else:
            self.out.append(f"<{' '.join(parts)}>")

    def handle_starttag(self, tag, attrs):
        self._start(tag, attrs, self_closing=False)

    def handle_startendtag(self, tag, attrs):
        self._start(tag, attrs, self_closing=True)

    def handle_endtag(self, tag):
        tag = tag.lower()
        if tag in _DROP_WITH_CONTENT:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if self._skip_depth or tag not in ALLOWED_TAGS or tag in _VOID_TAGS:
            return
        self.out.append(f"</{tag}>")

    def handle_data(self, data):
        if not self._skip_depth:
            self.out.append(html.escape(data, quote=False))


def sanitize_html(value: str | None) -> str:
    if not value or not isinstance(value, str):
        return ""
    parser = _AllowListParser()
    parser.feed(value)
    parser.close()
    return "".join(parser.out).strip()


def strip_html(value: str | None) -> str:
    if not value or not isinstance(value, str):
        return ""
    return _TAG_RE.sub("", value).strip()


def sanitize_like_pattern(pattern: str) -> str:
    """Escape LIKE wildcards; pair with `escape="\\\\"` on the SQLAlchemy side."""
    return re.sub(r"([%_\\])", r"\\\1", pattern)


def sanitize_email(value: str | None) -> str | None:
    if not value or not isinstance(value, str):
        return None
    trimmed = value.strip().lower()
    if not _EMAIL_RE.match(trimmed):
        return None
    return trimmed


def sanitize_url(value: str | None) -> str | None:
    if not value or not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not is_safe_url(trimmed):
        return None
    return trimmed


def sanitize_text(value: str | None, max_length: int | None = None) -> str:
    if not value or not isinstance(value, str):
        return ""
    cleaned = _CONTROL_CHARS_RE.sub("", value).strip()
    if max_length and len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return cleaned
