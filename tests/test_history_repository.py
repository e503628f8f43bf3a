from __future__ import annotations

import sqlite3
import time
from pathlib import Path

import allure

from playbook_runner.batch.models import HistoryEntry, HistoryEntryType, UsageStats
from playbook_runner.history import SQLiteHistoryStore

pytestmark = [
    allure.epic("History"),
    allure.feature("SQLite History Store"),
]


def _entry(summary: str, *, session_id: str = "s1", offset: float = 0.0, **kwargs) -> HistoryEntry:
    values = {
        "type": HistoryEntryType.AUTO,
        "timestamp": 1_760_000_000.0 + offset,
        "summary": summary,
        "full_response": f"{summary}\n\nDetails.",
        "project_path": "/repo/project",
        "session_id": session_id,
        "success": True,
        "elapsed_time_ms": 1500,
    }
    values.update(kwargs)
    return HistoryEntry(**values)


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "history.db"
    store = SQLiteHistoryStore(db_path)
    store.init_schema()
    store.init_schema()
    store.close()

    connection = sqlite3.connect(db_path)
    try:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchone()
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    finally:
        connection.close()
    assert version == ("20261019_0001",)
    assert "history_entries" in tables


def test_entries_round_trip_newest_first(tmp_path: Path) -> None:
    store = SQLiteHistoryStore(tmp_path / "history.db")
    store.init_schema()
    try:
        store.add_history_entry(
            _entry(
                "first",
                agent_session_id="agent-1",
                usage_stats=UsageStats(input_tokens=10, output_tokens=5, total_cost_usd=0.25),
            ),
        )
        store.add_history_entry(_entry("second", offset=60, success=False))

        entries = store.list_entries()
    finally:
        store.close()

    assert [entry.summary for entry in entries] == ["second", "first"]
    first = entries[1]
    assert first.type is HistoryEntryType.AUTO
    assert first.timestamp == 1_760_000_000.0
    assert first.full_response == "first\n\nDetails."
    assert first.agent_session_id == "agent-1"
    assert first.usage_stats == UsageStats(input_tokens=10, output_tokens=5, total_cost_usd=0.25)
    assert entries[0].success is False
    assert entries[0].usage_stats is None


def test_list_entries_filters_and_limits(tmp_path: Path) -> None:
    store = SQLiteHistoryStore(tmp_path / "nested" / "history.db")
    store.init_schema()
    try:
        now = time.time()
        store.add_history_entry(_entry("a", session_id="s1", timestamp=now))
        store.add_history_entry(_entry("b", session_id="s2", timestamp=now + 1))
        store.add_history_entry(
            _entry(
                "Loop 1 completed: 2 tasks accomplished",
                session_id="s1",
                timestamp=now + 2,
                type=HistoryEntryType.LOOP_SUMMARY,
            ),
        )

        by_session = store.list_entries(session_id="s1")
        loops = store.list_entries(entry_type=HistoryEntryType.LOOP_SUMMARY)
        limited = store.list_entries(limit=1)
    finally:
        store.close()

    assert [entry.summary for entry in by_session] == [
        "Loop 1 completed: 2 tasks accomplished",
        "a",
    ]
    assert [entry.session_id for entry in loops] == ["s1"]
    assert len(limited) == 1
