"""Collaborator interfaces consumed by the batch execution loop."""

from __future__ import annotations

from typing import Protocol

from playbook_runner.batch.models import (
    AgentRunResult,
    DefaultBranchResult,
    DocReadResult,
    HistoryEntry,
    PRCreateResult,
    SynopsisResult,
    WorktreeCheckoutResult,
    WorktreeSetupResult,
)


class DocumentStore(Protocol):
    """Reads and writes playbook documents; filenames include the `.md` suffix."""

    async def read_doc(self, folder: str, filename: str) -> DocReadResult:
        """Read one document from the folder."""

    async def write_doc(self, folder: str, filename: str, content: str) -> bool:
        """Overwrite one document and report whether the write succeeded."""


class AgentSpawner(Protocol):
    """Runs the coding agent."""

    async def spawn_agent(
        self,
        session_id: str,
        prompt: str,
        cwd_override: str | None = None,
    ) -> AgentRunResult:
        """Run one agent turn for the prompt."""

    async def spawn_synopsis(
        self,
        session_id: str,
        cwd: str,
        agent_session_id: str,
        prompt: str,
    ) -> SynopsisResult:
        """Resume an agent conversation and ask it for a synopsis."""


class GitService(Protocol):
    """Worktree and pull request operations."""

    async def worktree_setup(
        self,
        repo_root: str,
        worktree_path: str,
        branch_name: str,
    ) -> WorktreeSetupResult:
        """Create a worktree or reuse an existing one."""

    async def worktree_checkout(
        self,
        worktree_path: str,
        branch_name: str,
        create_if_missing: bool,
    ) -> WorktreeCheckoutResult:
        """Switch an existing worktree to the branch."""

    async def get_default_branch(self, repo_root: str) -> DefaultBranchResult:
        """Detect the repository default branch."""

    async def create_pr(
        self,
        cwd: str,
        base_branch: str,
        title: str,
        body: str,
    ) -> PRCreateResult:
        """Push the current branch and open a pull request."""


class HistoryStore(Protocol):
    """Append-only audit log."""

    def add_history_entry(self, entry: HistoryEntry) -> None:
        """Append one entry."""


class NotificationService(Protocol):
    """Text-to-speech side channel."""

    async def speak(self, text: str, command: str) -> None:
        """Speak the text with the configured command."""


class NullHistoryStore:
    """History store that drops every entry."""

    def add_history_entry(self, entry: HistoryEntry) -> None:  # noqa: ARG002
        return


class MemoryHistoryStore:
    """History store keeping entries in memory, in append order."""

    def __init__(self) -> None:
        self.entries: list[HistoryEntry] = []

    def add_history_entry(self, entry: HistoryEntry) -> None:
        self.entries.append(entry)
