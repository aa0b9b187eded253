"""Article body shapes: a plain string or a list of loosely typed blocks."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class Paragraph:
    text: str


@dataclass(frozen=True)
class Heading:
    text: str


@dataclass(frozen=True)
class ListBlock:
    items: tuple[str, ...]


@dataclass(frozen=True)
class UnknownBlock:
    block_type: str


Block = Union[Paragraph, Heading, ListBlock, UnknownBlock]


@dataclass(frozen=True)
class PlainContent:
    text: str


@dataclass(frozen=True)
class BlockContent:
    blocks: tuple[Block, ...]


Content = Union[PlainContent, BlockContent]


def parse_content(raw: Any) -> Content:
    if raw is None:
        return PlainContent("")
    if isinstance(raw, str):
        stripped = raw.lstrip()
        if stripped.startswith("["):
            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError:
                return PlainContent(raw)
            if isinstance(decoded, list):
                return parse_content(decoded)
        return PlainContent(raw)
    if isinstance(raw, dict):
        return BlockContent((_parse_block(raw),))
    if isinstance(raw, list):
        return BlockContent(tuple(_parse_block(item) for item in raw))
    return PlainContent("")


def _parse_block(raw: Any) -> Block:
    if not isinstance(raw, dict):
        return UnknownBlock(type(raw).__name__)
    block_type = str(raw.get("type") or "")
    if block_type == "paragraph":
        return Paragraph(_inline_text(raw.get("content")))
    if block_type == "heading":
        return Heading(_inline_text(raw.get("content")))
    if block_type == "list":
        items = raw.get("items")
        if not isinstance(items, list):
            return ListBlock(())
        return ListBlock(tuple(_inline_text(item) for item in items))
    return UnknownBlock(block_type or "untyped")


def _inline_text(value: Any) -> str:
    # Rich-text editors store runs as [{"text": ...}, ...]
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [_inline_text(item) for item in value]
        return " ".join(part for part in parts if part)
    if isinstance(value, dict):
        text = value.get("text")
        return text if isinstance(text, str) else ""
    return ""


def block_text(block: Block) -> str:
    if isinstance(block, (Paragraph, Heading)):
        return block.text
    if isinstance(block, ListBlock):
        return " ".join(item for item in block.items if item)
    return ""


def extract_text(content: Content) -> str:
    if isinstance(content, PlainContent):
        return content.text
    parts = [block_text(block) for block in content.blocks]
    return " ".join(part for part in parts if part)


def content_text(raw: Any) -> str:
    return extract_text(parse_content(raw))
