from __future__ import annotations

from typing import Any

from ..config import LlmConfig
from ..content import content_text
from ..models import Article, TldrSnapshot
from ..llm import ToolSpec
from ..storage import update_article

OPERATION_TYPE = "tldr_context_update"

SYSTEM_PROMPT = """You are adding editorial context to an article TL;DR.

CRITICAL RULES:
- NEVER use em dashes
- Use British English spelling
- No emojis
- Be factual and restrained

Generate:
1. "whoShouldPayAttention": A short list of relevant audiences separated by vertical bars (|). Example: "Founders | Platform trust teams | Regulators". Keep under 20 words.
2. "whatChangesNext": One short sentence describing what to watch next or likely implications. Keep under 20 words. If you cannot confidently determine this, return an empty string. For opinion/commentary pieces, use "Debate is likely to intensify" if appropriate.

Article: "{title}"
{excerpt}Content: {content}"""

USER_PROMPT = "Generate the editorial context lines for this article."

CONTEXT_TOOL = ToolSpec(
    name="generate_context",
    description="Generate editorial context for an article",
    parameters={
        "type": "object",
        "properties": {
            "whoShouldPayAttention": {
                "type": "string",
                "description": "Short list of relevant audiences separated by vertical bars (|)",
            },
            "whatChangesNext": {
                "type": "string",
                "description": "One short sentence about what to watch next. Empty string if uncertain.",
            },
        },
        "required": ["whoShouldPayAttention", "whatChangesNext"],
        "additionalProperties": False,
    },
)


def has_context(article: Article) -> bool:
    snapshot = article.tldr_snapshot
    return isinstance(snapshot, dict) and bool(snapshot.get("whoShouldPayAttention"))


def build_prompts(article: Article, max_chars: int) -> tuple[str, str]:
    excerpt = f"Excerpt: {article.excerpt}\n" if article.excerpt else ""
    system = SYSTEM_PROMPT.format(
        title=article.title,
        excerpt=excerpt,
        content=content_text(article.content)[:max_chars],
    )
    return system, USER_PROMPT


def generate_context(article: Article, client, llm: LlmConfig) -> dict[str, str]:
    system, user = build_prompts(article, llm.max_input_chars)
    parsed = client.complete(system, user, CONTEXT_TOOL)
    return {
        "whoShouldPayAttention": parsed.get("whoShouldPayAttention") or "",
        "whatChangesNext": parsed.get("whatChangesNext") or "",
    }


def merge_context(existing: Any, result: dict[str, str]) -> TldrSnapshot:
    current = TldrSnapshot.from_raw(existing)
    return TldrSnapshot(
        bullets=list(current.bullets),
        who_should_pay_attention=result["whoShouldPayAttention"],
        what_changes_next=result["whatChangesNext"],
        extra=dict(current.extra),
    )


def apply_context(conn, article: Article, result: dict[str, str]) -> None:
    merged = merge_context(article.tldr_snapshot, result)
    update_article(conn, article.id, {"tldr_snapshot": merged.to_raw()})


def existing_snapshot(conn, article: Article) -> Any:
    return article.tldr_snapshot
