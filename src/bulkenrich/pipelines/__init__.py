from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from ..config import LlmConfig
from ..errors import InvalidFilter
from ..models import Article, FilterCriteria
from . import article_enrichment, tldr_context


@dataclass(frozen=True)
class Operation:
    name: str
    is_complete: Callable[[Any, Article], bool]
    generate: Callable[[Article, Any, LlmConfig], dict[str, Any]]
    apply: Callable[[Any, Article, dict[str, Any]], None]
    existing_value: Callable[[Any, Article], Any]
    default_filter: FilterCriteria


OPERATIONS: dict[str, Operation] = {
    tldr_context.OPERATION_TYPE: Operation(
        name=tldr_context.OPERATION_TYPE,
        is_complete=lambda conn, article: tldr_context.has_context(article),
        generate=tldr_context.generate_context,
        apply=tldr_context.apply_context,
        existing_value=tldr_context.existing_snapshot,
        default_filter=FilterCriteria(require_snapshot=True),
    ),
    article_enrichment.OPERATION_TYPE: Operation(
        name=article_enrichment.OPERATION_TYPE,
        is_complete=article_enrichment.is_enriched,
        generate=article_enrichment.generate_enrichment,
        apply=article_enrichment.apply_enrichment,
        existing_value=article_enrichment.existing_enrichment,
        default_filter=FilterCriteria(statuses=("published",), require_snapshot=False),
    ),
}

DEFAULT_OPERATION = tldr_context.OPERATION_TYPE


def get_operation(name: str) -> Operation:
    operation = OPERATIONS.get(name)
    if operation is None:
        raise InvalidFilter(f"unknown operation_type {name}")
    return operation


__all__ = ["DEFAULT_OPERATION", "OPERATIONS", "Operation", "get_operation"]
