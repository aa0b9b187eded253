from __future__ import annotations

import dataclasses
import os

import pytest

from bulkenrich.config import default_config
from bulkenrich.llm import ToolSpec
from bulkenrich.models import Article
from bulkenrich.pipelines.tldr_context import CONTEXT_TOOL
from bulkenrich.storage import init_db, upsert_article


@pytest.fixture(autouse=True)
def _isolate_env(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("BE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("BE_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "state.sqlite3")


@pytest.fixture
def conn(db_path):
    connection = init_db(db_path)
    yield connection
    connection.close()


@pytest.fixture
def config():
    return make_config()


def make_config(**jobs_overrides):
    base = default_config()
    overrides = {"item_delay_seconds": 0.0, "batch_delay_seconds": 0.0}
    overrides.update(jobs_overrides)
    jobs = dataclasses.replace(base.jobs, **overrides)
    return dataclasses.replace(base, jobs=jobs)


def article_id(index: int) -> str:
    return f"art-{index:02d}"


def seed_articles(conn, count: int, *, status: str = "published", snapshot=None, start: int = 1):
    ids = []
    for index in range(start, start + count):
        ident = article_id(index)
        upsert_article(
            conn,
            Article(
                id=ident,
                title=f"Story {ident}",
                excerpt=f"Excerpt for {ident}",
                status=status,
                content=[{"type": "paragraph", "content": f"Body of {ident}."}],
                tldr_snapshot=snapshot if snapshot is not None else ["First point", "Second point"],
            ),
        )
        ids.append(ident)
    return ids


class FakeClient:
    """Scripted completion client.

    ``failures`` maps an article id to the exception raised when that
    article's prompt comes through; ``on_call`` runs before each answer.
    """

    def __init__(self, failures=None, on_call=None):
        self.failures = dict(failures or {})
        self.on_call = on_call
        self.calls: list[str] = []

    def complete(self, system_prompt: str, user_prompt: str, tool: ToolSpec):
        ident = _find_article(system_prompt + "\n" + user_prompt)
        self.calls.append(ident)
        if self.on_call is not None:
            self.on_call(ident)
        if ident in self.failures:
            raise self.failures[ident]
        if tool.name == CONTEXT_TOOL.name:
            return {
                "whoShouldPayAttention": f"Founders | Regulators | {ident}",
                "whatChangesNext": "Watch for the follow-up vote.",
            }
        return {
            "entities": [{"name": "Acme", "type": "company"}],
            "keyphrases": ["ai policy", ident],
            "topics": ["AI Regulation"],
            "summary": f"Summary of {ident}.",
        }


def _find_article(prompt: str) -> str:
    marker = "Story "
    start = prompt.find(marker)
    if start == -1:
        return "unknown"
    return prompt[start + len(marker) :].split()[0].strip('"')


@pytest.fixture
def fake_client():
    return FakeClient()
