"""Domain models for batch runs, collaborator results, and history."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

SCRATCHPAD_PLACEHOLDER = "$$SCRATCHPAD$$"


class HistoryEntryType(str, Enum):
    """Kinds of audit records written by the execution loop."""

    AUTO = "AUTO"
    LOOP_SUMMARY = "LOOP_SUMMARY"


@dataclass(slots=True, frozen=True)
class DocumentEntry:
    """One Markdown document (filename without `.md`) in the run folder."""

    filename: str
    reset_on_completion: bool = False


@dataclass(slots=True, frozen=True)
class WorktreeConfig:
    """Isolated checkout to run in instead of the session working directory."""

    enabled: bool
    path: str
    branch_name: str
    create_pr_on_completion: bool = False
    pr_target_branch: str | None = None


@dataclass(slots=True, frozen=True)
class BatchRunConfig:
    """Immutable input for one batch run."""

    documents: tuple[DocumentEntry, ...]
    prompt: str
    loop_enabled: bool = False
    max_loops: int | None = None
    worktree: WorktreeConfig | None = None


@dataclass(slots=True, frozen=True)
class SessionInfo:
    """Session a batch run executes for."""

    session_id: str
    cwd: str
    name: str = ""

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        tail = self.cwd.rstrip("/").rsplit("/", 1)[-1]
        return tail or "Unknown"


@dataclass(slots=True)
class UsageStats:
    """Token and cost usage reported by the agent."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0
    total_cost_usd: float = 0.0
    context_window: int = 0


@dataclass(slots=True)
class BatchRunState:
    """UI-visible progress of one session's batch run."""

    is_running: bool = False
    is_stopping: bool = False
    documents: list[str] = field(default_factory=list)
    current_document_index: int = 0
    current_doc_tasks_total: int = 0
    current_doc_tasks_completed: int = 0
    total_tasks_across_all_docs: int = 0
    completed_tasks_across_all_docs: int = 0
    loop_enabled: bool = False
    loop_iteration: int = 0
    max_loops: int | None = None
    folder_path: str = ""
    worktree_active: bool = False
    worktree_path: str | None = None
    worktree_branch: str | None = None
    # Legacy aggregate mirrors of the multi-document counters.
    total_tasks: int = 0
    completed_tasks: int = 0
    current_task_index: int = 0
    custom_prompt: str | None = None
    session_ids: list[str] = field(default_factory=list)
    start_time: float | None = None


@dataclass(slots=True)
class HistoryEntry:
    """Append-only audit record for a task attempt or a loop iteration."""

    type: HistoryEntryType
    timestamp: float
    summary: str
    full_response: str
    project_path: str
    session_id: str
    success: bool
    elapsed_time_ms: int
    agent_session_id: str | None = None
    usage_stats: UsageStats | None = None


@dataclass(slots=True)
class BatchCompleteInfo:
    """Payload of the run-completion callback."""

    session_id: str
    session_name: str
    completed_tasks: int
    total_tasks: int
    was_stopped: bool
    elapsed_time_ms: int


@dataclass(slots=True)
class PRResultInfo:
    """Payload of the pull request callback."""

    session_id: str
    session_name: str
    success: bool
    pr_url: str | None = None
    error: str | None = None


@dataclass(slots=True)
class DocReadResult:
    success: bool
    content: str | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Outcome of one agent invocation."""

    success: bool
    response: str | None = None
    agent_session_id: str | None = None
    usage_stats: UsageStats | None = None


@dataclass(slots=True)
class SynopsisResult:
    success: bool
    response: str | None = None


@dataclass(slots=True)
class WorktreeSetupResult:
    success: bool
    branch_mismatch: bool = False
    error: str | None = None


@dataclass(slots=True)
class WorktreeCheckoutResult:
    success: bool
    has_uncommitted_changes: bool = False
    error: str | None = None


@dataclass(slots=True)
class DefaultBranchResult:
    success: bool
    branch: str | None = None


@dataclass(slots=True)
class PRCreateResult:
    success: bool
    pr_url: str | None = None
    error: str | None = None


@dataclass(slots=True)
class BatchRunOutcome:
    """What `start_batch_run` did: started (and finished) or aborted during setup."""

    started: bool
    abort_reason: str | None = None
    completion: BatchCompleteInfo | None = None
