"""Git worktree and pull request operations through the git and gh CLIs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from playbook_runner.batch.models import (
    DefaultBranchResult,
    PRCreateResult,
    WorktreeCheckoutResult,
    WorktreeSetupResult,
)

logger = logging.getLogger(__name__)

_COMMAND_NOT_FOUND_EXIT_CODE = 127


@dataclass(slots=True)
class CommandResult:
    """Exit code and decoded output of one CLI call."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


CommandRunner = Callable[[list[str], str | None], Awaitable[CommandResult]]


async def run_command(args: list[str], cwd: str | None) -> CommandResult:
    """Run a command and capture its output without raising on failure."""

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return CommandResult(
            returncode=_COMMAND_NOT_FOUND_EXIT_CODE,
            stdout="",
            stderr=f"Command not found: {args[0]}",
        )
    stdout, stderr = await process.communicate()
    return CommandResult(
        returncode=process.returncode if process.returncode is not None else 1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


class GitCliService:
    """Worktree lifecycle and PR creation backed by `git` and `gh`."""

    def __init__(
        self,
        *,
        git_executable: str = "git",
        gh_executable: str = "gh",
        remote: str = "origin",
        runner: CommandRunner = run_command,
    ) -> None:
        self.git_executable = git_executable
        self.gh_executable = gh_executable
        self.remote = remote
        self._runner = runner

    async def worktree_setup(
        self,
        repo_root: str,
        worktree_path: str,
        branch_name: str,
    ) -> WorktreeSetupResult:
        if Path(worktree_path).exists():
            return await self._reuse_worktree(repo_root, worktree_path, branch_name)

        if await self._branch_exists(repo_root, branch_name):
            added = await self._git(repo_root, "worktree", "add", worktree_path, branch_name)
        else:
            added = await self._git(
                repo_root,
                "worktree",
                "add",
                "-b",
                branch_name,
                worktree_path,
            )
        if not added.ok:
            return WorktreeSetupResult(success=False, error=_error_text(added))
        logger.info("Created worktree %s on branch %s", worktree_path, branch_name)
        return WorktreeSetupResult(success=True)

    async def worktree_checkout(
        self,
        worktree_path: str,
        branch_name: str,
        create_if_missing: bool,
    ) -> WorktreeCheckoutResult:
        status = await self._git(worktree_path, "status", "--porcelain")
        if not status.ok:
            return WorktreeCheckoutResult(success=False, error=_error_text(status))
        if status.stdout.strip():
            return WorktreeCheckoutResult(
                success=False,
                has_uncommitted_changes=True,
                error="Worktree has uncommitted changes.",
            )

        if await self._branch_exists(worktree_path, branch_name):
            checkout = await self._git(worktree_path, "checkout", branch_name)
        elif create_if_missing:
            checkout = await self._git(worktree_path, "checkout", "-b", branch_name)
        else:
            return WorktreeCheckoutResult(
                success=False,
                error=f"Branch does not exist: {branch_name}",
            )
        if not checkout.ok:
            return WorktreeCheckoutResult(success=False, error=_error_text(checkout))
        return WorktreeCheckoutResult(success=True)

    async def get_default_branch(self, repo_root: str) -> DefaultBranchResult:
        remote_head = await self._git(
            repo_root,
            "symbolic-ref",
            "--short",
            f"refs/remotes/{self.remote}/HEAD",
        )
        if remote_head.ok and remote_head.stdout.strip():
            branch = remote_head.stdout.strip().removeprefix(f"{self.remote}/")
            return DefaultBranchResult(success=True, branch=branch)

        for candidate in ("main", "master"):
            if await self._branch_exists(repo_root, candidate):
                return DefaultBranchResult(success=True, branch=candidate)
        return DefaultBranchResult(success=False)

    async def create_pr(
        self,
        cwd: str,
        base_branch: str,
        title: str,
        body: str,
    ) -> PRCreateResult:
        head = await self._git(cwd, "rev-parse", "--abbrev-ref", "HEAD")
        if not head.ok:
            return PRCreateResult(success=False, error=_error_text(head))
        branch = head.stdout.strip()

        pushed = await self._git(cwd, "push", "--set-upstream", self.remote, branch)
        if not pushed.ok:
            return PRCreateResult(success=False, error=_error_text(pushed))

        created = await self._runner(
            [
                self.gh_executable,
                "pr",
                "create",
                "--base",
                base_branch,
                "--head",
                branch,
                "--title",
                title,
                "--body",
                body,
            ],
            cwd,
        )
        if not created.ok:
            return PRCreateResult(success=False, error=_error_text(created))
        lines = [line.strip() for line in created.stdout.splitlines() if line.strip()]
        return PRCreateResult(success=True, pr_url=lines[-1] if lines else None)

    async def _reuse_worktree(
        self,
        repo_root: str,
        worktree_path: str,
        branch_name: str,
    ) -> WorktreeSetupResult:
        worktree_dir = await self._git(
            worktree_path,
            "rev-parse",
            "--path-format=absolute",
            "--git-common-dir",
        )
        repo_dir = await self._git(
            repo_root,
            "rev-parse",
            "--path-format=absolute",
            "--git-common-dir",
        )
        if not worktree_dir.ok or not repo_dir.ok:
            return WorktreeSetupResult(
                success=False,
                error=f"Path exists but is not a git worktree: {worktree_path}",
            )
        if Path(worktree_dir.stdout.strip()).resolve() != Path(repo_dir.stdout.strip()).resolve():
            return WorktreeSetupResult(
                success=False,
                error=f"Worktree belongs to a different repository: {worktree_path}",
            )

        current = await self._git(worktree_path, "rev-parse", "--abbrev-ref", "HEAD")
        if not current.ok:
            return WorktreeSetupResult(success=False, error=_error_text(current))
        mismatch = current.stdout.strip() != branch_name
        logger.info(
            "Reusing worktree %s (branch %s, requested %s)",
            worktree_path,
            current.stdout.strip(),
            branch_name,
        )
        return WorktreeSetupResult(success=True, branch_mismatch=mismatch)

    async def _branch_exists(self, cwd: str, branch_name: str) -> bool:
        result = await self._git(
            cwd,
            "show-ref",
            "--verify",
            "--quiet",
            f"refs/heads/{branch_name}",
        )
        return result.ok

    async def _git(self, cwd: str, *args: str) -> CommandResult:
        return await self._runner([self.git_executable, *args], cwd)


def _error_text(result: CommandResult) -> str:
    return result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
