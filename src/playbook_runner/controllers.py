"""Controllers for playbook-runner CLI commands."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from playbook_runner.backend import CliAgentSpawner
from playbook_runner.batch.collaborators import HistoryStore, NullHistoryStore
from playbook_runner.batch.models import (
    BatchCompleteInfo,
    BatchRunConfig,
    BatchRunOutcome,
    BatchRunState,
    DocumentEntry,
    HistoryEntry,
    HistoryEntryType,
    PRResultInfo,
    SessionInfo,
    WorktreeConfig,
)
from playbook_runner.batch.processor import BatchProcessor
from playbook_runner.batch.tasks import count_checked_tasks, count_unfinished_tasks
from playbook_runner.config import Settings
from playbook_runner.documents import FileDocumentStore
from playbook_runner.git_service import GitCliService
from playbook_runner.history import SQLiteHistoryStore
from playbook_runner.notification import CommandNotifier

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIX = ".md"


@dataclass(slots=True)
class RunPlaybookCommand:
    """CLI input for a batch run over a playbook folder."""

    folder: Path
    documents: tuple[str, ...]
    reset_documents: tuple[str, ...] = ()
    prompt: str | None = None
    loop_enabled: bool = False
    max_loops: int | None = None
    worktree_path: Path | None = None
    branch: str | None = None
    create_pr: bool = False
    pr_target: str | None = None
    session_id: str | None = None
    db_path: Path | None = None
    dry_run: bool = False
    no_history: bool = False
    output_json: bool = False
    repo_root: Path | None = None


@dataclass(slots=True)
class TasksCommand:
    """CLI input for per-document task counts."""

    folder: Path
    documents: tuple[str, ...]
    output_json: bool = False


@dataclass(slots=True)
class HistoryListCommand:
    """CLI input for history listing."""

    db_path: Path | None
    session_id: str | None
    entry_type: str | None
    limit: int
    output_json: bool = False


@dataclass(slots=True)
class BatchRunReport:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class _ProgressPrinter:
    """Turns state publications into one line per task-count change."""

    echo: Callable[[str], None]
    output_json: bool
    _last: tuple[int, int, int] | None = field(default=None)

    def __call__(self, session_id: str, state: BatchRunState) -> None:
        if not state.is_running:
            return
        key = (
            state.loop_iteration,
            state.completed_tasks_across_all_docs,
            state.total_tasks_across_all_docs,
        )
        if key == self._last:
            return
        self._last = key
        document = (
            state.documents[state.current_document_index]
            if state.current_document_index < len(state.documents)
            else ""
        )
        if self.output_json:
            self.echo(
                _json_event(
                    "progress",
                    session_id=session_id,
                    document=document,
                    loop_iteration=state.loop_iteration,
                    completed=state.completed_tasks_across_all_docs,
                    total=state.total_tasks_across_all_docs,
                ),
            )
            return
        self.echo(
            f"[{session_id}] loop={state.loop_iteration + 1} document={document} "
            f"completed={state.completed_tasks_across_all_docs}"
            f"/{state.total_tasks_across_all_docs}",
        )


class BatchCliController:
    """Coordinates batch runs, task inspection, and history CLI operations."""

    def __init__(self, *, echo: Callable[[str], None] | None = None) -> None:
        self.echo = echo

    def run(self, command: RunPlaybookCommand) -> BatchRunReport:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()

        folder = command.folder.resolve()
        documents = _document_entries(
            folder=folder,
            names=command.documents,
            reset_names=command.reset_documents,
        )
        if command.dry_run:
            return BatchRunReport(
                lines=_task_count_lines(folder, documents, output_json=command.output_json),
                success=True,
            )

        session = SessionInfo(
            session_id=command.session_id or settings.batch.session_id,
            cwd=str((command.repo_root or Path.cwd()).resolve()),
        )
        config = BatchRunConfig(
            documents=tuple(documents),
            prompt=command.prompt or settings.batch.default_prompt,
            loop_enabled=command.loop_enabled,
            max_loops=command.max_loops,
            worktree=_worktree_config(command),
        )

        lines: list[str] = []

        def on_complete(info: BatchCompleteInfo) -> None:
            if command.output_json:
                lines.append(_json_event("complete", **asdict(info)))
                return
            lines.append(
                "Batch summary: "
                f"completed={info.completed_tasks} total={info.total_tasks} "
                f"stopped={str(info.was_stopped).lower()} "
                f"elapsed={info.elapsed_time_ms / 1000:.1f}s",
            )

        def on_pr_result(info: PRResultInfo) -> None:
            if command.output_json:
                lines.append(_json_event("pull_request", **asdict(info)))
            elif info.success:
                lines.append(f"Pull request: {info.pr_url or '(url unavailable)'}")
            else:
                lines.append(f"Pull request failed: {info.error}")

        with _history_store(settings, disabled=command.no_history) as history_store:
            processor = BatchProcessor(
                document_store=FileDocumentStore(),
                agent_spawner=CliAgentSpawner(
                    command_template=settings.agent.command_template,
                    resume_flag=settings.agent.resume_flag,
                    timeout_seconds=settings.agent.timeout_seconds,
                    cwd_by_session={session.session_id: session.cwd},
                ),
                git=GitCliService(
                    git_executable=settings.git.git_executable,
                    gh_executable=settings.git.gh_executable,
                ),
                history_store=history_store,
                notifier=CommandNotifier(),
                on_complete=on_complete,
                on_pr_result=on_pr_result,
                audio_feedback_command=(
                    settings.notification.audio_feedback_command
                    if settings.notification.audio_feedback_enabled
                    else None
                ),
                fallback_base_branch=settings.git.fallback_base_branch,
                max_consecutive_no_progress=settings.batch.max_consecutive_no_progress,
            )
            processor.register_session(session)
            if self.echo is not None:
                processor.state_store.subscribe(
                    _ProgressPrinter(echo=self.echo, output_json=command.output_json),
                )

            with _stop_on_signals(processor, session.session_id):
                outcome = asyncio.run(
                    _run_batch(processor, session.session_id, config, str(folder)),
                )

        if not outcome.started:
            if command.output_json:
                lines.append(_json_event("aborted", reason=outcome.abort_reason))
            else:
                lines.append(f"Batch aborted: {outcome.abort_reason}")
            return BatchRunReport(lines=lines, success=False)
        return BatchRunReport(lines=lines, success=True)

    def tasks(self, command: TasksCommand) -> list[str]:
        """Show unchecked and checked task counts per document."""

        folder = command.folder.resolve()
        documents = _document_entries(folder=folder, names=command.documents, reset_names=())
        return _task_count_lines(folder, documents, output_json=command.output_json)

    def list_history(self, command: HistoryListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        entry_type = HistoryEntryType(command.entry_type) if command.entry_type else None
        with _repository(settings) as repository:
            entries = repository.list_entries(
                session_id=command.session_id,
                entry_type=entry_type,
                limit=command.limit,
            )

        if command.output_json:
            return [_json_event("history", **_history_payload(entry)) for entry in entries]
        if not entries:
            return ["No history entries."]
        return [_history_line(entry) for entry in entries]


async def _run_batch(
    processor: BatchProcessor,
    session_id: str,
    config: BatchRunConfig,
    folder: str,
) -> BatchRunOutcome:
    outcome = await processor.start_batch_run(session_id, config, folder)
    await processor.wait_for_notifications()
    return outcome

def _document_entries(
    *,
    folder: Path,
    names: tuple[str, ...],
    reset_names: tuple[str, ...],
) -> list[DocumentEntry]:
    """Documents in the given order; reset names not listed are appended."""

    ordered = [_document_name(name) for name in names]
    if not ordered and not reset_names:
        ordered = sorted(path.stem for path in folder.glob(f"*{DOCUMENT_SUFFIX}"))
    resets = {_document_name(name) for name in reset_names}
    for name in reset_names:
        normalized = _document_name(name)
        if normalized not in ordered:
            ordered.append(normalized)
    return [
        DocumentEntry(filename=name, reset_on_completion=name in resets)
        for name in dict.fromkeys(ordered)
    ]


def _document_name(name: str) -> str:
    return name.strip().removesuffix(DOCUMENT_SUFFIX)


def _worktree_config(command: RunPlaybookCommand) -> WorktreeConfig | None:
    if command.worktree_path is None:
        return None
    return WorktreeConfig(
        enabled=True,
        path=str(command.worktree_path.resolve()),
        branch_name=command.branch or "",
        create_pr_on_completion=command.create_pr,
        pr_target_branch=command.pr_target,
    )


def _task_count_lines(
    folder: Path,
    documents: list[DocumentEntry],
    *,
    output_json: bool,
) -> list[str]:
    lines: list[str] = []
    total = 0
    for document in documents:
        path = folder / f"{document.filename}{DOCUMENT_SUFFIX}"
        try:
            content = path.read_text("utf-8")
        except OSError as error:
            logger.warning("Failed to read document %s: %s", path, error)
            content = ""
        unchecked = count_unfinished_tasks(content)
        checked = count_checked_tasks(content)
        total += unchecked
        if output_json:
            lines.append(
                _json_event(
                    "document",
                    document=document.filename,
                    unchecked=unchecked,
                    checked=checked,
                    reset_on_completion=document.reset_on_completion,
                ),
            )
        else:
            reset_marker = " reset" if document.reset_on_completion else ""
            lines.append(
                f"{document.filename}: unchecked={unchecked} checked={checked}{reset_marker}",
            )
    if not output_json:
        lines.append(f"Total unchecked: {total}")
    return lines


def _history_payload(entry: HistoryEntry) -> dict[str, object]:
    payload = asdict(entry)
    payload["type"] = entry.type.value
    payload["timestamp"] = _format_timestamp(entry.timestamp)
    return payload


def _history_line(entry: HistoryEntry) -> str:
    status = "ok" if entry.success else "failed"
    return (
        f"{_format_timestamp(entry.timestamp)} {entry.type.value} "
        f"session={entry.session_id} status={status} "
        f"elapsed={entry.elapsed_time_ms}ms {entry.summary}"
    )


def _format_timestamp(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=UTC).isoformat(timespec="seconds")


def _json_event(event: str, **payload: object) -> str:
    return json.dumps({"event": event, **payload}, ensure_ascii=False, sort_keys=True)


@contextmanager
def _repository(settings: Settings) -> Iterator[SQLiteHistoryStore]:
    repository = SQLiteHistoryStore(db_path=settings.history.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _history_store(settings: Settings, *, disabled: bool) -> Iterator[HistoryStore]:
    if disabled or not settings.history.enabled:
        yield NullHistoryStore()
        return
    with _repository(settings) as repository:
        yield repository


@contextmanager
def _stop_on_signals(processor: BatchProcessor, session_id: str) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s, stopping after the current task", name)
        processor.stop_batch_run(session_id)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
