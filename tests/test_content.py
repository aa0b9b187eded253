from bulkenrich.content import (
    BlockContent,
    Heading,
    ListBlock,
    Paragraph,
    PlainContent,
    UnknownBlock,
    content_text,
    parse_content,
)


def test_plain_string_content():
    assert parse_content("Just text") == PlainContent("Just text")
    assert content_text(None) == ""


def test_block_content_extracts_known_blocks():
    raw = [
        {"type": "heading", "content": "Title"},
        {"type": "paragraph", "content": [{"text": "Hello"}, {"text": "world"}]},
        {"type": "list", "items": ["one", {"text": "two"}]},
        {"type": "image", "src": "x.png"},
    ]
    parsed = parse_content(raw)
    assert isinstance(parsed, BlockContent)
    assert parsed.blocks == (
        Heading("Title"),
        Paragraph("Hello world"),
        ListBlock(("one", "two")),
        UnknownBlock("image"),
    )
    assert content_text(raw) == "Title Hello world one two"


def test_json_encoded_block_string():
    raw = '[{"type": "paragraph", "content": "Encoded"}]'
    assert content_text(raw) == "Encoded"


def test_bracketed_text_that_is_not_json_stays_plain():
    raw = "[Updated] Regulators respond"
    assert parse_content(raw) == PlainContent(raw)


def test_single_block_dict_and_odd_values():
    assert content_text({"type": "paragraph", "content": "Solo"}) == "Solo"
    assert content_text([42, {"type": "list", "items": "bad"}]) == ""
    assert content_text(12) == ""
