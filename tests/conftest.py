"""Shared test fixtures."""

from __future__ import annotations

import re
import sys
from collections.abc import Callable
from dataclasses import dataclass, field

import pytest

from playbook_runner.batch.collaborators import MemoryHistoryStore
from playbook_runner.batch.models import (
    AgentRunResult,
    DefaultBranchResult,
    DocReadResult,
    PRCreateResult,
    SessionInfo,
    SynopsisResult,
    UsageStats,
    WorktreeCheckoutResult,
    WorktreeSetupResult,
)
from playbook_runner.batch.processor import BatchProcessor

CHECKBOX_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m playbook_runner.backend.checkbox_agent {{resume_args}} -- {{prompt}}"
)

_DOC_PATH = re.compile(r"(\S+)\.md")
_FIRST_UNCHECKED = re.compile(r"^([ \t]*-[ \t]*)\[[ \t]*\]", re.MULTILINE)


def tick_first(content: str) -> str:
    return _FIRST_UNCHECKED.sub(r"\1[x]", content, count=1)


class MemoryDocumentStore:
    """Documents held in a dict keyed by filename (with `.md`); the folder is ignored."""

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self.documents = dict(documents or {})
        self.writes: list[tuple[str, str]] = []

    async def read_doc(self, folder: str, filename: str) -> DocReadResult:  # noqa: ARG002
        if filename not in self.documents:
            return DocReadResult(success=False)
        return DocReadResult(success=True, content=self.documents[filename])

    async def write_doc(self, folder: str, filename: str, content: str) -> bool:  # noqa: ARG002
        self.documents[filename] = content
        self.writes.append((filename, content))
        return True


AgentBehaviour = Callable[["ScriptedAgent", str, str], AgentRunResult]


def tick_behaviour(
    agent: ScriptedAgent,
    prompt: str,  # noqa: ARG001
    filename: str,
) -> AgentRunResult:
    agent.store.documents[filename] = tick_first(agent.store.documents[filename])
    return AgentRunResult(
        success=True,
        response="done",
        agent_session_id=f"agent-{len(agent.prompts)}",
        usage_stats=UsageStats(input_tokens=100, output_tokens=20, total_cost_usd=0.01),
    )


@dataclass
class ScriptedAgent:
    """Agent fake that edits the in-memory document named in the prompt."""

    store: MemoryDocumentStore
    behaviour: AgentBehaviour = tick_behaviour
    synopsis_response: str | None = (
        "**Summary:** Ticked a box.\n\n**Details:** Edited the playbook document."
    )
    prompts: list[str] = field(default_factory=list)
    cwd_overrides: list[str | None] = field(default_factory=list)
    synopsis_calls: list[tuple[str, str, str]] = field(default_factory=list)
    on_call: Callable[[int], None] | None = None

    async def spawn_agent(
        self,
        session_id: str,  # noqa: ARG002
        prompt: str,
        cwd_override: str | None = None,
    ) -> AgentRunResult:
        self.prompts.append(prompt)
        self.cwd_overrides.append(cwd_override)
        if self.on_call is not None:
            self.on_call(len(self.prompts))
        match = _DOC_PATH.search(prompt)
        assert match is not None
        filename = match.group(1).rsplit("/", 1)[-1] + ".md"
        return self.behaviour(self, prompt, filename)

    async def spawn_synopsis(
        self,
        session_id: str,
        cwd: str,
        agent_session_id: str,
        prompt: str,  # noqa: ARG002
    ) -> SynopsisResult:
        self.synopsis_calls.append((session_id, cwd, agent_session_id))
        if self.synopsis_response is None:
            return SynopsisResult(success=False)
        return SynopsisResult(success=True, response=self.synopsis_response)


@dataclass
class FakeGit:
    """Git fake with configurable results and a call log."""

    setup: WorktreeSetupResult = field(default_factory=lambda: WorktreeSetupResult(success=True))
    checkout: WorktreeCheckoutResult = field(
        default_factory=lambda: WorktreeCheckoutResult(success=True),
    )
    default_branch: DefaultBranchResult = field(
        default_factory=lambda: DefaultBranchResult(success=True, branch="develop"),
    )
    pr: PRCreateResult = field(
        default_factory=lambda: PRCreateResult(success=True, pr_url="https://example.com/pr/1"),
    )
    pr_error: Exception | None = None
    calls: list[tuple[str, tuple[object, ...]]] = field(default_factory=list)

    async def worktree_setup(
        self,
        repo_root: str,
        worktree_path: str,
        branch_name: str,
    ) -> WorktreeSetupResult:
        self.calls.append(("worktree_setup", (repo_root, worktree_path, branch_name)))
        return self.setup

    async def worktree_checkout(
        self,
        worktree_path: str,
        branch_name: str,
        create_if_missing: bool,
    ) -> WorktreeCheckoutResult:
        self.calls.append(("worktree_checkout", (worktree_path, branch_name, create_if_missing)))
        return self.checkout

    async def get_default_branch(self, repo_root: str) -> DefaultBranchResult:
        self.calls.append(("get_default_branch", (repo_root,)))
        return self.default_branch

    async def create_pr(
        self,
        cwd: str,
        base_branch: str,
        title: str,
        body: str,
    ) -> PRCreateResult:
        self.calls.append(("create_pr", (cwd, base_branch, title, body)))
        if self.pr_error is not None:
            raise self.pr_error
        return self.pr

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@dataclass
class Harness:
    """A processor wired to in-memory collaborators."""

    store: MemoryDocumentStore
    agent: ScriptedAgent
    git: FakeGit
    history: MemoryHistoryStore
    processor: BatchProcessor
    completions: list = field(default_factory=list)
    pr_results: list = field(default_factory=list)


SESSION = SessionInfo(session_id="session-1", cwd="/repo/project", name="Project")


@pytest.fixture()
def make_harness() -> Callable[..., Harness]:
    def _make(documents: dict[str, str], **processor_kwargs: object) -> Harness:
        store = MemoryDocumentStore(documents)
        agent = ScriptedAgent(store=store)
        git = FakeGit()
        history = MemoryHistoryStore()
        completions: list = []
        pr_results: list = []
        processor = BatchProcessor(
            document_store=store,
            agent_spawner=agent,
            git=git,
            history_store=history,
            on_complete=completions.append,
            on_pr_result=pr_results.append,
            **processor_kwargs,
        )
        processor.register_session(SESSION)
        return Harness(
            store=store,
            agent=agent,
            git=git,
            history=history,
            processor=processor,
            completions=completions,
            pr_results=pr_results,
        )

    return _make
