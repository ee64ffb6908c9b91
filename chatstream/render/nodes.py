"""
Render tree node types.

Nodes are frozen dataclasses with tuple children, so two renders of the same
text compare equal. Text held in nodes is already HTML-escaped by the
renderer; ``to_html`` only adds structure.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Node:
    """Base render node."""

    def to_html(self) -> str:
        raise NotImplementedError


def _join(children: tuple[Node, ...]) -> str:
    return "".join(child.to_html() for child in children)


# ---- inline ----

@dataclass(frozen=True)
class Text(Node):
    text: str

    def to_html(self) -> str:
        return self.text


@dataclass(frozen=True)
class LineBreak(Node):
    def to_html(self) -> str:
        return "<br>"


@dataclass(frozen=True)
class InlineCode(Node):
    text: str

    def to_html(self) -> str:
        return f"<code>{self.text}</code>"


@dataclass(frozen=True)
class Strong(Node):
    children: tuple[Node, ...] = ()

    def to_html(self) -> str:
        return f"<strong>{_join(self.children)}</strong>"


@dataclass(frozen=True)
class Emphasis(Node):
    children: tuple[Node, ...] = ()

    def to_html(self) -> str:
        return f"<em>{_join(self.children)}</em>"


@dataclass(frozen=True)
class Link(Node):
    href: str
    children: tuple[Node, ...] = ()

    def to_html(self) -> str:
        href = self.href.replace('"', "&quot;")
        return (
            f'<a href="{href}" target="_blank" rel="noopener">'
            f"{_join(self.children)}</a>"
        )


# ---- blocks ----

@dataclass(frozen=True)
class Paragraph(Node):
    children: tuple[Node, ...] = ()

    def to_html(self) -> str:
        return f"<p>{_join(self.children)}</p>"


@dataclass(frozen=True)
class Heading(Node):
    level: int
    children: tuple[Node, ...] = ()

    def to_html(self) -> str:
        return f"<h{self.level}>{_join(self.children)}</h{self.level}>"


@dataclass(frozen=True)
class ListItem(Node):
    children: tuple[Node, ...] = ()

    def to_html(self) -> str:
        return f"<li>{_join(self.children)}</li>"


@dataclass(frozen=True)
class ListBlock(Node):
    items: tuple[ListItem, ...] = ()
    ordered: bool = False

    def to_html(self) -> str:
        tag = "ol" if self.ordered else "ul"
        return f"<{tag}>{_join(self.items)}</{tag}>"


@dataclass(frozen=True)
class CodeBlock(Node):
    """Fenced code; ``closed`` is False while the fence is still streaming."""
    code: str
    language: str = ""
    previewable: bool = False
    closed: bool = True

    def to_html(self) -> str:
        label = self.language or "code"
        classes = "code-block" if self.closed else "code-block streaming"
        preview = "true" if self.previewable else "false"
        return (
            f'<div class="{classes}" data-language="{label}" '
            f'data-previewable="{preview}">'
            f'<div class="code-block-header"><span>{label}</span></div>'
            f"<pre><code>{self.code}</code></pre></div>"
        )


@dataclass(frozen=True)
class Reasoning(Node):
    """
    Collapsible "thinking" section. ``complete`` is False while the closing
    delimiter has not arrived yet; such a section renders expanded.
    """
    children: tuple[Node, ...] = ()
    complete: bool = True

    @property
    def label(self) -> str:
        return "Reasoning Process" if self.complete else "Thinking..."

    def to_html(self) -> str:
        opened = "" if self.complete else " open"
        return (
            f'<details class="thinking-panel"{opened}>'
            f"<summary>{self.label}</summary>"
            f'<div class="thinking-content">{_join(self.children)}</div>'
            f"</details>"
        )


@dataclass(frozen=True)
class Document(Node):
    children: tuple[Node, ...] = ()

    def to_html(self) -> str:
        return _join(self.children)
