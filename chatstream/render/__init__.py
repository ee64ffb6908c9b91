"""
Display rendering for streamed answers.
"""

from .markdown import PREVIEWABLE_LANGUAGES, render, to_html
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

__all__ = [
    "PREVIEWABLE_LANGUAGES",
    "CodeBlock",
    "Document",
    "Emphasis",
    "Heading",
    "InlineCode",
    "LineBreak",
    "Link",
    "ListBlock",
    "ListItem",
    "Node",
    "Paragraph",
    "Reasoning",
    "Strong",
    "Text",
    "render",
    "to_html",
]
