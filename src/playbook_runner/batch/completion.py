"""Pull request creation and terminal state reset after a batch run."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from playbook_runner.batch.collaborators import GitService
from playbook_runner.batch.models import (
    BatchCompleteInfo,
    DocumentEntry,
    PRResultInfo,
    SessionInfo,
    WorktreeConfig,
)
from playbook_runner.batch.reporting import pr_body, pr_title
from playbook_runner.batch.state import RunStateStore

logger = logging.getLogger(__name__)

CompleteCallback = Callable[[BatchCompleteInfo], None]
PRResultCallback = Callable[[PRResultInfo], None]


@dataclass(slots=True)
class RunResult:
    """Everything the completion step needs to know about a finished loop."""

    session: SessionInfo
    documents: Sequence[DocumentEntry]
    worktree: WorktreeConfig | None
    worktree_active: bool
    effective_cwd: str
    completed_tasks: int
    initial_total_tasks: int
    was_stopped: bool
    agent_session_ids: list[str]
    start_time: float


class CompletionHandler:
    """Runs once per started batch run, whatever made the loop exit."""

    def __init__(
        self,
        *,
        git: GitService,
        state_store: RunStateStore,
        fallback_base_branch: str = "main",
        on_complete: CompleteCallback | None = None,
        on_pr_result: PRResultCallback | None = None,
    ) -> None:
        self.git = git
        self.state_store = state_store
        self.fallback_base_branch = fallback_base_branch
        self.on_complete = on_complete
        self.on_pr_result = on_pr_result

    async def finish(self, result: RunResult) -> BatchCompleteInfo:
        if self._should_create_pr(result):
            await self._create_pr(result)

        self.state_store.reset_to_idle(result.session.session_id, result.agent_session_ids)

        info = BatchCompleteInfo(
            session_id=result.session.session_id,
            session_name=result.session.display_name,
            completed_tasks=result.completed_tasks,
            total_tasks=result.initial_total_tasks,
            was_stopped=result.was_stopped,
            elapsed_time_ms=int((time.time() - result.start_time) * 1000),
        )
        if self.on_complete is not None:
            self.on_complete(info)
        return info

    def _should_create_pr(self, result: RunResult) -> bool:
        return (
            result.worktree_active
            and result.worktree is not None
            and result.worktree.create_pr_on_completion
            and not result.was_stopped
            and result.completed_tasks > 0
        )

    async def _create_pr(self, result: RunResult) -> None:
        session = result.session
        if result.worktree is None:
            raise RuntimeError("Pull request requested without worktree config.")
        logger.info("Creating PR from worktree branch %s", result.worktree.branch_name)
        try:
            base_branch = await self._resolve_base_branch(
                repo_root=session.cwd,
                target_branch=result.worktree.pr_target_branch,
            )
            created = await self.git.create_pr(
                result.effective_cwd,
                base_branch,
                pr_title(result.documents),
                pr_body(result.documents, result.completed_tasks),
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Error creating PR for session %s", session.session_id)
            self._report_pr(
                PRResultInfo(
                    session_id=session.session_id,
                    session_name=session.display_name,
                    success=False,
                    error=str(error) or "Unknown error",
                ),
            )
            return

        if created.success:
            logger.info("PR created successfully: %s", created.pr_url)
        else:
            logger.warning("PR creation failed: %s", created.error)
        self._report_pr(
            PRResultInfo(
                session_id=session.session_id,
                session_name=session.display_name,
                success=created.success,
                pr_url=created.pr_url if created.success else None,
                error=None if created.success else created.error,
            ),
        )

    async def _resolve_base_branch(self, *, repo_root: str, target_branch: str | None) -> str:
        if target_branch:
            return target_branch
        detected = await self.git.get_default_branch(repo_root)
        if detected.success and detected.branch:
            return detected.branch
        return self.fallback_base_branch

    def _report_pr(self, info: PRResultInfo) -> None:
        if self.on_pr_result is not None:
            self.on_pr_result(info)
