from __future__ import annotations

from typing import Any

from ..config import LlmConfig
from ..content import content_text
from ..models import Article
from ..llm import ToolSpec
from ..storage import get_article_enrichment, upsert_article_enrichment

OPERATION_TYPE = "article_enrichment"

ENTITY_TYPES = ["company", "person", "law", "region", "product", "concept"]

SYSTEM_PROMPT = """You are an AI content analyst. Extract structured metadata from articles about AI in Asia.
Extract:
1. entities: objects with a name and a type (company, person, law, region, product or concept)
2. keyphrases: 5-10 important keywords or phrases
3. topics: 1-3 high-level topic labels (e.g. "AI Regulation", "Enterprise AI", "AI Research")
4. summary: a 2-3 sentence internal summary (for metadata only, never published)"""

ENRICHMENT_TOOL = ToolSpec(
    name="extract_metadata",
    description="Extract structured metadata from an article",
    parameters={
        "type": "object",
        "properties": {
            "entities": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "type": {"type": "string", "enum": ENTITY_TYPES},
                    },
                    "required": ["name", "type"],
                    "additionalProperties": False,
                },
            },
            "keyphrases": {"type": "array", "items": {"type": "string"}},
            "topics": {"type": "array", "items": {"type": "string"}, "maxItems": 3},
            "summary": {"type": "string"},
        },
        "required": ["entities", "keyphrases", "topics", "summary"],
        "additionalProperties": False,
    },
)


def build_prompts(article: Article, max_chars: int) -> tuple[str, str]:
    full_text = f"{article.title}\n\n{article.excerpt or ''}\n\n{content_text(article.content)}"
    return SYSTEM_PROMPT, full_text.strip()[:max_chars]


def generate_enrichment(article: Article, client, llm: LlmConfig) -> dict[str, Any]:
    system, user = build_prompts(article, llm.enrichment_max_input_chars)
    parsed = client.complete(system, user, ENRICHMENT_TOOL)
    return {
        "entities": parsed.get("entities") or [],
        "keyphrases": parsed.get("keyphrases") or [],
        "topics": parsed.get("topics") or [],
        "summary": parsed.get("summary") or "",
    }


def is_enriched(conn, article: Article) -> bool:
    return get_article_enrichment(conn, article.id) is not None


def apply_enrichment(conn, article: Article, result: dict[str, Any]) -> None:
    upsert_article_enrichment(conn, article.id, article.title, result)


def existing_enrichment(conn, article: Article) -> Any:
    return get_article_enrichment(conn, article.id)
