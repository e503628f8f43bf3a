"""History persistence facade backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from sqlmodel import Session, col, create_engine, select

from playbook_runner.batch.models import HistoryEntry, HistoryEntryType, UsageStats
from playbook_runner.history.alembic_runner import upgrade_head
from playbook_runner.history.sqlmodel_models import HistoryEntryRow

logger = logging.getLogger(__name__)


class SQLiteHistoryStore:
    """Append-only store of batch history entries."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def add_history_entry(self, entry: HistoryEntry) -> None:
        row = HistoryEntryRow(
            entry_id=str(uuid4()),
            entry_type=entry.type.value,
            created_at=datetime.fromtimestamp(entry.timestamp, tz=UTC),
            session_id=entry.session_id,
            project_path=entry.project_path,
            summary=entry.summary,
            full_response=entry.full_response,
            success=entry.success,
            elapsed_time_ms=entry.elapsed_time_ms,
            agent_session_id=entry.agent_session_id,
            usage_json=json.dumps(asdict(entry.usage_stats)) if entry.usage_stats else None,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
        logger.debug("Stored %s history entry for session %s", entry.type.value, entry.session_id)

    def list_entries(
        self,
        *,
        session_id: str | None = None,
        entry_type: HistoryEntryType | None = None,
        limit: int = 50,
    ) -> list[HistoryEntry]:
        """List recent entries, newest first."""

        with Session(self.engine) as session:
            statement = (
                select(HistoryEntryRow)
                .order_by(col(HistoryEntryRow.created_at).desc())
                .limit(limit)
            )
            if session_id is not None:
                statement = statement.where(HistoryEntryRow.session_id == session_id)
            if entry_type is not None:
                statement = statement.where(HistoryEntryRow.entry_type == entry_type.value)
            rows = session.exec(statement).all()
        return [_to_history_entry(row) for row in rows]


def _to_history_entry(row: HistoryEntryRow) -> HistoryEntry:
    created_at = row.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    usage = UsageStats(**json.loads(row.usage_json)) if row.usage_json else None
    return HistoryEntry(
        type=HistoryEntryType(row.entry_type),
        timestamp=created_at.timestamp(),
        summary=row.summary,
        full_response=row.full_response,
        project_path=row.project_path,
        session_id=row.session_id,
        success=row.success,
        elapsed_time_ms=row.elapsed_time_ms,
        agent_session_id=row.agent_session_id,
        usage_stats=usage,
    )
