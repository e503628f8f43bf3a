"""Batch execution loop: drives the agent through playbook documents."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from playbook_runner.batch.collaborators import (
    AgentSpawner,
    DocumentStore,
    GitService,
    HistoryStore,
    NotificationService,
)
from playbook_runner.batch.completion import (
    CompleteCallback,
    CompletionHandler,
    PRResultCallback,
    RunResult,
)
from playbook_runner.batch.models import (
    SCRATCHPAD_PLACEHOLDER,
    AgentRunResult,
    BatchRunConfig,
    BatchRunOutcome,
    BatchRunState,
    DocumentEntry,
    HistoryEntry,
    HistoryEntryType,
    SessionInfo,
)
from playbook_runner.batch.reporting import LoopTotals, loop_details_text, loop_summary_text
from playbook_runner.batch.state import RunStateStore, StopSignals
from playbook_runner.batch.synopsis import (
    BATCH_SYNOPSIS_PROMPT,
    ParsedSynopsis,
    parse_synopsis,
)
from playbook_runner.batch.tasks import (
    count_checked_tasks,
    count_unfinished_tasks,
    uncheck_all_tasks,
)
from playbook_runner.batch.worktree import prepare_worktree

logger = logging.getLogger(__name__)

ABORT_SESSION_NOT_FOUND = "session_not_found"
ABORT_ALREADY_RUNNING = "already_running"
ABORT_NO_DOCUMENTS = "no_documents"
ABORT_NO_TASKS = "no_unfinished_tasks"

SessionOriginHook = Callable[[str, str, str], None]


@dataclass(slots=True)
class _Run:
    """Mutable bookkeeping of one run, owned by its execution task."""

    session: SessionInfo
    config: BatchRunConfig
    folder_path: str
    effective_cwd: str
    worktree_active: bool
    start_time: float
    initial_total_tasks: int = 0
    completed_tasks: int = 0
    loop_iteration: int = 0
    agent_session_ids: list[str] = field(default_factory=list)
    loop_totals: LoopTotals = field(default_factory=LoopTotals)
    loop_started_at: float = field(default_factory=time.monotonic)
    # Verified completions (file deltas) in the current pass, for the safety exit.
    pass_completed: int = 0

    @property
    def session_id(self) -> str:
        return self.session.session_id


@dataclass(slots=True)
class _Attempt:
    """One agent invocation and what the loop learned from it."""

    result: AgentRunResult | None
    elapsed_ms: int
    completed: int = 0
    fresh_remaining: int | None = None
    error: str | None = None


class BatchProcessor:
    """Runs playbooks for any number of sessions, one asyncio task per session.

    Sessions never share mutable state: each has its own `BatchRunState` entry
    and its own stop flag. Within a session documents and tasks are processed
    strictly in order with at most one agent call outstanding.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        document_store: DocumentStore,
        agent_spawner: AgentSpawner,
        git: GitService,
        history_store: HistoryStore,
        notifier: NotificationService | None = None,
        state_store: RunStateStore | None = None,
        stop_signals: StopSignals | None = None,
        on_complete: CompleteCallback | None = None,
        on_pr_result: PRResultCallback | None = None,
        audio_feedback_command: str | None = None,
        fallback_base_branch: str = "main",
        max_consecutive_no_progress: int = 3,
        register_session_origin: SessionOriginHook | None = None,
        synopsis_prompt: str = BATCH_SYNOPSIS_PROMPT,
    ) -> None:
        self.document_store = document_store
        self.agent_spawner = agent_spawner
        self.git = git
        self.history_store = history_store
        self.notifier = notifier
        self.state_store = state_store or RunStateStore()
        self.stop_signals = stop_signals or StopSignals()
        self.audio_feedback_command = audio_feedback_command
        self.max_consecutive_no_progress = max(1, max_consecutive_no_progress)
        self.register_session_origin = register_session_origin
        self.synopsis_prompt = synopsis_prompt
        self.completion = CompletionHandler(
            git=git,
            state_store=self.state_store,
            fallback_base_branch=fallback_base_branch,
            on_complete=on_complete,
            on_pr_result=on_pr_result,
        )
        self.custom_prompts: dict[str, str] = {}
        self._sessions: dict[str, SessionInfo] = {}
        self._active_runs: set[str] = set()
        self._background: set[asyncio.Task[None]] = set()

    def register_session(self, session: SessionInfo) -> None:
        self._sessions[session.session_id] = session

    def get_batch_state(self, session_id: str) -> BatchRunState:
        return self.state_store.get(session_id)

    @property
    def has_any_active_batch(self) -> bool:
        return self.state_store.has_any_active_batch()

    @property
    def active_batch_session_ids(self) -> list[str]:
        return self.state_store.active_session_ids()

    def set_custom_prompt(self, session_id: str, prompt: str) -> None:
        self.custom_prompts[session_id] = prompt

    async def wait_for_notifications(self) -> None:
        """Wait until queued audio notifications have been spoken."""

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def stop_batch_run(self, session_id: str) -> None:
        """Ask the session's run to stop once the in-flight task finishes."""

        self.stop_signals.request(session_id)
        if self.state_store.get(session_id).is_running:
            self.state_store.update(session_id, is_stopping=True)

    async def measure_progress(self, folder_path: str, filename: str) -> int:
        """Number of unfinished tasks the document currently holds."""

        content = await self._read_document(folder_path, filename)
        return count_unfinished_tasks(content) if content is not None else 0

    async def start_batch_run(
        self,
        session_id: str,
        config: BatchRunConfig,
        folder_path: str,
    ) -> BatchRunOutcome:
        """Run the playbook to completion for the session.

        Setup problems (unknown session, a run already in flight, failing
        worktree preparation, nothing to do) abort before any task runs and are
        reported through the returned outcome. Once started, the run always
        ends with exactly one `on_complete` callback.
        """

        session = self._sessions.get(session_id)
        if session is None:
            logger.error("Session not found for batch processing: %s", session_id)
            return BatchRunOutcome(started=False, abort_reason=ABORT_SESSION_NOT_FOUND)
        if session_id in self._active_runs or self.state_store.get(session_id).is_running:
            logger.warning("Batch run already in progress for session %s", session_id)
            return BatchRunOutcome(started=False, abort_reason=ABORT_ALREADY_RUNNING)
        if not config.documents:
            logger.warning("No documents provided for batch processing: %s", session_id)
            return BatchRunOutcome(started=False, abort_reason=ABORT_NO_DOCUMENTS)

        self._active_runs.add(session_id)
        try:
            return await self._execute(session, config, folder_path)
        finally:
            self._active_runs.discard(session_id)

    async def _execute(
        self,
        session: SessionInfo,
        config: BatchRunConfig,
        folder_path: str,
    ) -> BatchRunOutcome:
        session_id = session.session_id
        logger.info(
            "Starting batch for session %s with documents: %s",
            session_id,
            [(doc.filename, doc.reset_on_completion) for doc in config.documents],
        )
        start_time = time.time()
        self.stop_signals.clear(session_id)

        worktree = await prepare_worktree(
            git=self.git,
            repo_root=session.cwd,
            worktree=config.worktree,
        )
        if not worktree.ok:
            return BatchRunOutcome(started=False, abort_reason=worktree.abort_reason)

        initial_total = 0
        for document in config.documents:
            task_count = await self.measure_progress(folder_path, document.filename)
            logger.info("Document %s: %d tasks", document.filename, task_count)
            initial_total += task_count
        if initial_total == 0:
            logger.warning(
                "No unchecked tasks found across all documents for session %s",
                session_id,
            )
            return BatchRunOutcome(started=False, abort_reason=ABORT_NO_TASKS)

        self.state_store.publish(
            session_id,
            BatchRunState(
                is_running=True,
                documents=[document.filename for document in config.documents],
                total_tasks_across_all_docs=initial_total,
                loop_enabled=config.loop_enabled,
                max_loops=config.max_loops,
                folder_path=folder_path,
                worktree_active=worktree.active,
                worktree_path=worktree.path,
                worktree_branch=worktree.branch,
                total_tasks=initial_total,
                custom_prompt=config.prompt or None,
                start_time=start_time,
            ),
        )
        self.custom_prompts[session_id] = config.prompt

        run = _Run(
            session=session,
            config=config,
            folder_path=folder_path,
            effective_cwd=worktree.effective_cwd,
            worktree_active=worktree.active,
            start_time=start_time,
            initial_total_tasks=initial_total,
        )
        try:
            await self._run_loop(run)
        except Exception:  # noqa: BLE001
            logger.exception("Batch run for session %s ended with an unexpected error", session_id)

        completion = await self.completion.finish(
            RunResult(
                session=session,
                documents=config.documents,
                worktree=config.worktree,
                worktree_active=run.worktree_active,
                effective_cwd=run.effective_cwd,
                completed_tasks=run.completed_tasks,
                initial_total_tasks=run.initial_total_tasks,
                was_stopped=self._stop_requested(session_id),
                agent_session_ids=run.agent_session_ids,
                start_time=start_time,
            ),
        )
        return BatchRunOutcome(started=True, completion=completion)

    async def _run_loop(self, run: _Run) -> None:
        while True:
            if self._stop_requested(run.session_id):
                logger.info("Batch run stopped by user for session %s", run.session_id)
                return

            run.pass_completed = 0
            for doc_index, document in enumerate(run.config.documents):
                if self._stop_requested(run.session_id):
                    logger.info(
                        "Batch run stopped by user at document %d for session %s",
                        doc_index,
                        run.session_id,
                    )
                    break
                await self._process_document(run, doc_index, document)

            if not await self.should_continue_looping(run):
                return
            await self._start_next_loop(run)

    async def _process_document(self, run: _Run, doc_index: int, document: DocumentEntry) -> None:
        content = await self._read_document(run.folder_path, document.filename)
        if content is None:
            logger.warning("Skipping document %s: it could not be read", document.filename)
            return
        remaining = count_unfinished_tasks(content)

        if remaining == 0:
            if document.reset_on_completion and run.config.loop_enabled:
                checked = count_checked_tasks(content)
                if checked > 0:
                    logger.info(
                        "Document %s has %d checked tasks, resetting for next iteration",
                        document.filename,
                        checked,
                    )
                    await self._reset_document(run, document, content)
            logger.info("Skipping document %s: no unchecked tasks", document.filename)
            return

        logger.info("Processing document %s with %d tasks", document.filename, remaining)
        self.state_store.update(
            run.session_id,
            current_document_index=doc_index,
            current_doc_tasks_total=remaining,
            current_doc_tasks_completed=0,
        )

        doc_completed = 0
        stalled_attempts = 0
        while remaining > 0:
            if self._stop_requested(run.session_id):
                logger.info("Batch run stopped by user during document %s", document.filename)
                break

            attempt = await self._run_task(run, document, remaining)
            if attempt.fresh_remaining is None:
                # No usable answer or no measurement: count the task as consumed.
                remaining -= 1
            else:
                remaining = attempt.fresh_remaining
                if attempt.completed > 0:
                    stalled_attempts = 0
                else:
                    stalled_attempts += 1
            doc_completed += attempt.completed
            await self._record_attempt(run, document, attempt)
            logger.info("Document %s: %d tasks remaining", document.filename, remaining)

            if stalled_attempts >= self.max_consecutive_no_progress:
                logger.warning(
                    "Document %s: %d agent runs in a row closed no task, moving on",
                    document.filename,
                    stalled_attempts,
                )
                return

        if self._stop_requested(run.session_id):
            return
        if remaining > 0:
            return

        logger.info(
            "Document %s complete. reset_on_completion=%s, tasks completed=%d",
            document.filename,
            document.reset_on_completion,
            doc_completed,
        )
        if document.reset_on_completion and doc_completed > 0:
            current = await self._read_document(run.folder_path, document.filename)
            if current is None:
                logger.warning(
                    "Not resetting document %s: it could not be re-read",
                    document.filename,
                )
                return
            await self._reset_document(
                run,
                document,
                current,
                add_to_totals=run.config.loop_enabled,
            )

    async def _run_task(self, run: _Run, document: DocumentEntry, remaining: int) -> _Attempt:
        doc_path = f"{run.folder_path}/{document.filename}.md"
        prompt = run.config.prompt.replace(SCRATCHPAD_PLACEHOLDER, doc_path)
        cwd_override = run.effective_cwd if run.worktree_active else None

        started = time.monotonic()
        try:
            result = await self.agent_spawner.spawn_agent(run.session_id, prompt, cwd_override)
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Error running task in %s for session %s",
                document.filename,
                run.session_id,
            )
            return _Attempt(result=None, elapsed_ms=_elapsed_ms(started), error=str(error))
        elapsed_ms = _elapsed_ms(started)

        if not result.success:
            logger.warning("Agent reported failure for a task in %s", document.filename)
            return _Attempt(result=result, elapsed_ms=elapsed_ms)

        if result.agent_session_id:
            run.agent_session_ids.append(result.agent_session_id)
            self._register_origin(run, result.agent_session_id)

        content = await self._read_document(run.folder_path, document.filename)
        if content is None:
            logger.warning("Could not re-read %s after a task", document.filename)
            return _Attempt(result=result, elapsed_ms=elapsed_ms)
        fresh = count_unfinished_tasks(content)
        completed = max(0, remaining - fresh)
        if fresh > remaining:
            logger.info(
                "Document %s grew from %d to %d unfinished tasks",
                document.filename,
                remaining,
                fresh,
            )
        return _Attempt(
            result=result,
            elapsed_ms=elapsed_ms,
            completed=completed,
            fresh_remaining=fresh,
        )

    async def _record_attempt(self, run: _Run, document: DocumentEntry, attempt: _Attempt) -> None:
        result = attempt.result
        run.completed_tasks += attempt.completed
        run.pass_completed += attempt.completed
        run.loop_totals.tasks_completed += attempt.completed
        if result is not None:
            run.loop_totals.add_usage(result.usage_stats)

        current = self.state_store.get(run.session_id)
        self.state_store.update(
            run.session_id,
            current_doc_tasks_completed=current.current_doc_tasks_completed + attempt.completed,
            completed_tasks_across_all_docs=run.completed_tasks,
            completed_tasks=run.completed_tasks,
            current_task_index=run.completed_tasks,
            session_ids=list(run.agent_session_ids),
        )

        short_summary = f"[{document.filename}] Task completed"
        full_synopsis = short_summary
        if result is None or not result.success:
            short_summary = f"[{document.filename}] Task failed"
            full_synopsis = (
                f"{short_summary}\n\n{attempt.error}" if attempt.error else short_summary
            )
        elif result.agent_session_id:
            synopsis = await self._request_synopsis(run, result.agent_session_id)
            if synopsis is not None:
                if synopsis.nothing_to_report:
                    logger.info("Agent had nothing to report for a task in %s", document.filename)
                    return
                short_summary = synopsis.short_summary
                full_synopsis = synopsis.full_synopsis

        await self._add_history(
            HistoryEntry(
                type=HistoryEntryType.AUTO,
                timestamp=time.time(),
                summary=short_summary,
                full_response=full_synopsis,
                agent_session_id=result.agent_session_id if result is not None else None,
                project_path=run.session.cwd,
                session_id=run.session_id,
                success=result is not None and result.success,
                usage_stats=result.usage_stats if result is not None else None,
                elapsed_time_ms=attempt.elapsed_ms,
            ),
        )
        self._speak(short_summary)

    async def _request_synopsis(
        self,
        run: _Run,
        agent_session_id: str,
    ) -> ParsedSynopsis | None:
        try:
            synopsis = await self.agent_spawner.spawn_synopsis(
                run.session_id,
                run.effective_cwd,
                agent_session_id,
                self.synopsis_prompt,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Synopsis generation failed for session %s", run.session_id)
            return None
        if not synopsis.success or not synopsis.response:
            return None
        return parse_synopsis(synopsis.response)

    async def should_continue_looping(self, run: _Run) -> bool:
        """Decide, after a full pass, whether another pass over the documents is due."""

        config = run.config
        if not config.loop_enabled:
            return False
        if config.max_loops is not None and run.loop_iteration + 1 >= config.max_loops:
            logger.info("Reached max loop limit (%d), exiting loop", config.max_loops)
            return False
        if self._stop_requested(run.session_id):
            return False

        non_reset_documents = [doc for doc in config.documents if not doc.reset_on_completion]
        if not non_reset_documents:
            # Reset documents refill themselves; without a finite document there
            # is nothing that could ever end the loop.
            logger.info("All documents are reset-on-completion, exiting after one pass")
            return False

        any_remaining = False
        for document in non_reset_documents:
            if await self.measure_progress(run.folder_path, document.filename) > 0:
                any_remaining = True
                break
        if not any_remaining:
            logger.info("All non-reset documents completed, exiting loop")
            return False

        if run.pass_completed == 0:
            logger.warning(
                "No task was completed in a full pass but documents still have tasks, "
                "exiting to avoid an infinite loop (session %s)",
                run.session_id,
            )
            return False
        return True

    async def _start_next_loop(self, run: _Run) -> None:
        new_total = 0
        for document in run.config.documents:
            new_total += await self.measure_progress(run.folder_path, document.filename)

        loop_elapsed_ms = _elapsed_ms(run.loop_started_at)
        loop_number = run.loop_iteration + 1
        totals = run.loop_totals
        await self._add_history(
            HistoryEntry(
                type=HistoryEntryType.LOOP_SUMMARY,
                timestamp=time.time(),
                summary=loop_summary_text(loop_number=loop_number, totals=totals),
                full_response=loop_details_text(
                    loop_number=loop_number,
                    totals=totals,
                    elapsed_ms=loop_elapsed_ms,
                    tasks_discovered=new_total,
                ),
                project_path=run.session.cwd,
                session_id=run.session_id,
                success=True,
                usage_stats=totals.usage_stats(),
                elapsed_time_ms=loop_elapsed_ms,
            ),
        )

        run.loop_totals = LoopTotals()
        run.loop_started_at = time.monotonic()
        run.loop_iteration += 1
        logger.info(
            "Starting loop iteration %d: %d tasks across all documents",
            run.loop_iteration + 1,
            new_total,
        )
        current = self.state_store.get(run.session_id)
        self.state_store.update(
            run.session_id,
            loop_iteration=run.loop_iteration,
            total_tasks_across_all_docs=new_total + current.completed_tasks_across_all_docs,
            total_tasks=new_total + current.completed_tasks,
        )

    async def _reset_document(
        self,
        run: _Run,
        document: DocumentEntry,
        content: str,
        *,
        add_to_totals: bool = True,
    ) -> None:
        if self._stop_requested(run.session_id):
            return
        reset_content = uncheck_all_tasks(content)
        written = await self.document_store.write_doc(
            run.folder_path,
            f"{document.filename}.md",
            reset_content,
        )
        if not written:
            logger.warning("Failed to write reset document %s", document.filename)
            return
        logger.info("Reset document %s (reset-on-completion enabled)", document.filename)
        if add_to_totals:
            self.state_store.add_to_totals(run.session_id, count_unfinished_tasks(reset_content))

    async def _read_document(self, folder_path: str, filename: str) -> str | None:
        """Document text, or None when the store could not read it."""

        result = await self.document_store.read_doc(folder_path, f"{filename}.md")
        if not result.success:
            return None
        return result.content or ""

    async def _add_history(self, entry: HistoryEntry) -> None:
        try:
            await asyncio.to_thread(self.history_store.add_history_entry, entry)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Failed to store %s history entry for session %s",
                entry.type.value,
                entry.session_id,
            )

    def _stop_requested(self, session_id: str) -> bool:
        return self.stop_signals.is_set(session_id)

    def _register_origin(self, run: _Run, agent_session_id: str) -> None:
        if self.register_session_origin is None:
            return
        try:
            self.register_session_origin(run.session.cwd, agent_session_id, "auto")
        except Exception:  # noqa: BLE001
            logger.exception("Failed to register session origin for %s", agent_session_id)

    def _speak(self, text: str) -> None:
        if self.notifier is None or not self.audio_feedback_command or not text:
            return
        task = asyncio.get_running_loop().create_task(
            _speak_quietly(self.notifier, text, self.audio_feedback_command),
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)


async def _speak_quietly(notifier: NotificationService, text: str, command: str) -> None:
    try:
        await notifier.speak(text, command)
    except Exception:  # noqa: BLE001
        logger.warning("Failed to speak synopsis", exc_info=True)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
