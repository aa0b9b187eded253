from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_CANCELLED = "cancelled"
JOB_FAILED = "failed"

TERMINAL_STATUSES = frozenset({JOB_COMPLETED, JOB_CANCELLED, JOB_FAILED})

ARTICLE_STATUSES = frozenset({"draft", "published", "scheduled", "archived"})

ITEM_UPDATED = "updated"
ITEM_SKIPPED = "skipped"
ITEM_FAILED = "failed"
ITEM_PREVIEW = "preview"


@dataclass(frozen=True)
class Article:
    id: str
    title: str
    excerpt: str | None
    status: str
    content: Any
    tldr_snapshot: Any
    slug: str | None = None


_SNAPSHOT_KEYS = frozenset({"bullets", "whoShouldPayAttention", "whatChangesNext"})


@dataclass(frozen=True)
class TldrSnapshot:
    bullets: list[str]
    who_should_pay_attention: str | None = None
    what_changes_next: str | None = None
    # keys written by other tools (signalImages etc.), carried through untouched
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, raw: Any) -> "TldrSnapshot":
        if isinstance(raw, list):
            return cls(bullets=[str(item) for item in raw])
        if isinstance(raw, dict):
            bullets = raw.get("bullets") or []
            return cls(
                bullets=[str(item) for item in bullets] if isinstance(bullets, list) else [],
                who_should_pay_attention=raw.get("whoShouldPayAttention"),
                what_changes_next=raw.get("whatChangesNext"),
                extra={key: value for key, value in raw.items() if key not in _SNAPSHOT_KEYS},
            )
        return cls(bullets=[])

    def to_raw(self) -> dict[str, Any]:
        raw: dict[str, Any] = dict(self.extra)
        raw["bullets"] = list(self.bullets)
        if self.who_should_pay_attention is not None:
            raw["whoShouldPayAttention"] = self.who_should_pay_attention
        if self.what_changes_next is not None:
            raw["whatChangesNext"] = self.what_changes_next
        return raw


@dataclass(frozen=True)
class FilterCriteria:
    statuses: tuple[str, ...] = ("published", "scheduled")
    require_snapshot: bool = True
    limit: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "statuses": list(self.statuses),
            "require_snapshot": self.require_snapshot,
            "limit": self.limit,
        }


@dataclass(frozen=True)
class JobOptions:
    force: bool = False
    dry_run: bool = False

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "JobOptions":
        raw = raw or {}
        return cls(force=bool(raw.get("force")), dry_run=bool(raw.get("dry_run")))


@dataclass(frozen=True)
class JobRecord:
    id: str
    operation_type: str
    status: str
    item_ids: list[str]
    total_items: int
    processed_items: int
    successful_items: int
    failed_items: int
    created_by: str
    created_at: str
    updated_at: str
    started_at: str | None = None
    completed_at: str | None = None
    last_error: str | None = None
    filter: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ItemOutcome:
    position: int
    article_id: str
    outcome: str
    error: str | None
    processed_at: str
