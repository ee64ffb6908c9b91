"""
Incremental markdown renderer for streamed answers.

``render`` is a pure function of the accumulated answer text: every call
recomputes the whole tree, so re-rendering after each streamed delta needs no
parser state and tolerates text that stops mid-construct (an open reasoning
block or an unclosed code fence).

Precedence: reasoning blocks, fenced code, inline code, bold/italic,
headings, list lines, links, then paragraph and line-break folding.
"""

from __future__ import annotations

import re

from .nodes import (
    CodeBlock,
    Document,
    Emphasis,
    Heading,
    InlineCode,
    LineBreak,
    Link,
    ListBlock,
    ListItem,
    Node,
    Paragraph,
    Reasoning,
    Strong,
    Text,
)

PREVIEWABLE_LANGUAGES = frozenset({"html", "css", "js", "javascript"})

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
_ESCAPED_OPEN = "&lt;think&gt;"
_ESCAPED_CLOSE = "&lt;/think&gt;"

_PAIRED_REASONING = re.compile(r"<think>(.*?)</think>", re.S)
_CLOSED_FENCE = re.compile(r"```(\w*)\n(.*?)```", re.S)
_OPEN_FENCE = re.compile(r"(?:^|\n)```(\w*)(?:\n(.*))?\Z", re.S)
_BLANK_LINE = re.compile(r"\n[ \t]*\n")
_HEADING = re.compile(r"^(#{1,6}) (.+)$")
_BULLET = re.compile(r"^[*-] (.+)$")
_NUMBERED = re.compile(r"^\d+\. (.+)$")
_CODE_SPAN = re.compile(r"`([^`]+)`")
_INLINE = re.compile(
    r"\*\*(?P<strong>.+?)\*\*"
    r"|\*(?P<em>.+?)\*"
    r"|\[(?P<label>[^\]]+)\]\((?P<href>[^)\s]+)\)"
)
_SAFE_HREF = re.compile(r"^(?:https?:|mailto:|/|#)", re.I)


def escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def render(text: str) -> Document:
    """
    Render accumulated answer text into a display tree.

    The whole text is escaped first; only the reasoning delimiters are
    restored so they can be recognized.
    """
    if not text:
        return Document()
    escaped = (
        escape(text)
        .replace(_ESCAPED_OPEN, THINK_OPEN)
        .replace(_ESCAPED_CLOSE, THINK_CLOSE)
    )
    return Document(tuple(_render_segments(escaped)))


def to_html(text: str) -> str:
    return render(text).to_html()


def _render_segments(text: str) -> list[Node]:
    """Split out reasoning sections; everything else is block content."""
    nodes: list[Node] = []
    pos = 0
    for match in _PAIRED_REASONING.finditer(text):
        nodes.extend(_render_blocks(text[pos:match.start()]))
        inner = _render_segments(match.group(1).strip())
        nodes.append(Reasoning(tuple(inner), complete=True))
        pos = match.end()

    rest = text[pos:]
    open_at = rest.find(THINK_OPEN)
    if open_at == -1:
        nodes.extend(_render_blocks(rest))
        return nodes

    # Still inside the reasoning block: it runs to the end of the buffer
    nodes.extend(_render_blocks(rest[:open_at]))
    body = rest[open_at + len(THINK_OPEN):]
    nodes.append(Reasoning(tuple(_render_segments(body.strip())), complete=False))
    return nodes


def _render_blocks(text: str) -> list[Node]:
    # Unpaired delimiters outside reasoning are plain text again
    text = text.replace(THINK_OPEN, _ESCAPED_OPEN).replace(THINK_CLOSE, _ESCAPED_CLOSE)

    nodes: list[Node] = []
    pos = 0
    for match in _CLOSED_FENCE.finditer(text):
        nodes.extend(_render_flow(text[pos:match.start()]))
        nodes.append(_code_block(match.group(1), match.group(2), closed=True))
        pos = match.end()

    rest = text[pos:]
    match = _OPEN_FENCE.search(rest)
    if match is None:
        nodes.extend(_render_flow(rest))
    else:
        nodes.extend(_render_flow(rest[:match.start()]))
        nodes.append(_code_block(match.group(1), match.group(2) or "", closed=False))
    return nodes


def _code_block(language: str, code: str, closed: bool) -> CodeBlock:
    return CodeBlock(
        code=code.strip("\n"),
        language=language,
        previewable=language.lower() in PREVIEWABLE_LANGUAGES,
        closed=closed,
    )


def _render_flow(text: str) -> list[Node]:
    """Paragraphs, headings and lists; blank lines separate chunks."""
    nodes: list[Node] = []
    for chunk in _BLANK_LINE.split(text):
        chunk = chunk.strip("\n")
        if chunk.strip():
            nodes.extend(_render_chunk(chunk))
    return nodes


def _render_chunk(chunk: str) -> list[Node]:
    nodes: list[Node] = []
    paragraph: list[str] = []
    items: list[ListItem] = []
    ordered = False

    def flush_paragraph() -> None:
        if not paragraph:
            return
        children: list[Node] = []
        for i, line in enumerate(paragraph):
            if i:
                children.append(LineBreak())
            children.extend(_render_inline(line))
        nodes.append(Paragraph(tuple(children)))
        paragraph.clear()

    def flush_list() -> None:
        if items:
            nodes.append(ListBlock(tuple(items), ordered=ordered))
            items.clear()

    for line in chunk.split("\n"):
        stripped = line.strip()
        if heading := _HEADING.match(stripped):
            flush_paragraph()
            flush_list()
            nodes.append(
                Heading(len(heading.group(1)), _render_inline(heading.group(2)))
            )
            continue

        bullet = _BULLET.match(stripped)
        numbered = None if bullet else _NUMBERED.match(stripped)
        if bullet or numbered:
            flush_paragraph()
            is_ordered = numbered is not None
            if items and is_ordered != ordered:
                flush_list()
            ordered = is_ordered
            item_text = (bullet or numbered).group(1)
            items.append(ListItem(_render_inline(item_text)))
            continue

        flush_list()
        paragraph.append(line)

    flush_paragraph()
    flush_list()
    return nodes


def _render_inline(text: str) -> tuple[Node, ...]:
    """Inline code spans first; emphasis and links only outside them."""
    nodes: list[Node] = []
    pos = 0
    for match in _CODE_SPAN.finditer(text):
        nodes.extend(_render_emphasis(text[pos:match.start()]))
        nodes.append(InlineCode(match.group(1)))
        pos = match.end()
    nodes.extend(_render_emphasis(text[pos:]))
    return tuple(nodes)


def _render_emphasis(text: str) -> list[Node]:
    nodes: list[Node] = []
    pos = 0
    for match in _INLINE.finditer(text):
        if match.start() > pos:
            nodes.append(Text(text[pos:match.start()]))

        if match.group("strong") is not None:
            nodes.append(Strong(tuple(_render_emphasis(match.group("strong")))))
        elif match.group("em") is not None:
            nodes.append(Emphasis(tuple(_render_emphasis(match.group("em")))))
        elif _SAFE_HREF.match(match.group("href")):
            label = tuple(_render_emphasis(match.group("label")))
            nodes.append(Link(match.group("href"), label))
        else:
            nodes.append(Text(match.group(0)))
        pos = match.end()

    if pos < len(text):
        nodes.append(Text(text[pos:]))
    return nodes
