"""Worktree preparation at the start of a batch run."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from playbook_runner.batch.collaborators import GitService
from playbook_runner.batch.models import WorktreeConfig

logger = logging.getLogger(__name__)

ABORT_SETUP_FAILED = "worktree_setup_failed"
ABORT_UNCOMMITTED_CHANGES = "worktree_uncommitted_changes"
ABORT_CHECKOUT_FAILED = "worktree_checkout_failed"


@dataclass(slots=True)
class WorktreeOutcome:
    """Result of worktree preparation; `ok=False` aborts the run."""

    ok: bool
    effective_cwd: str
    active: bool = False
    path: str | None = None
    branch: str | None = None
    abort_reason: str | None = None
    error: str | None = None


async def prepare_worktree(
    *,
    git: GitService,
    repo_root: str,
    worktree: WorktreeConfig | None,
) -> WorktreeOutcome:
    """Set up or reuse the configured worktree and switch it to the requested branch.

    A missing, disabled, or incomplete config keeps `repo_root` as the working
    directory. Any setup or checkout failure is terminal for the run; a checkout
    refused because of uncommitted changes is reported separately so the caller
    can tell the user to clean up the worktree first.
    """

    if worktree is None or not worktree.enabled or not worktree.path or not worktree.branch_name:
        return WorktreeOutcome(ok=True, effective_cwd=repo_root)

    logger.info("Setting up worktree at %s with branch %s", worktree.path, worktree.branch_name)
    try:
        setup = await git.worktree_setup(repo_root, worktree.path, worktree.branch_name)
    except Exception as error:  # noqa: BLE001
        logger.exception("Error setting up worktree at %s", worktree.path)
        return _aborted(repo_root, ABORT_SETUP_FAILED, str(error))

    if not setup.success:
        logger.error("Failed to set up worktree: %s", setup.error)
        return _aborted(repo_root, ABORT_SETUP_FAILED, setup.error)

    if setup.branch_mismatch:
        logger.info(
            "Worktree exists with a different branch, checking out %s",
            worktree.branch_name,
        )
        try:
            checkout = await git.worktree_checkout(
                worktree.path,
                worktree.branch_name,
                True,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Error checking out %s in worktree", worktree.branch_name)
            return _aborted(repo_root, ABORT_CHECKOUT_FAILED, str(error))

        if not checkout.success:
            if checkout.has_uncommitted_changes:
                logger.error("Cannot checkout %s: worktree has uncommitted changes", worktree.path)
                return _aborted(repo_root, ABORT_UNCOMMITTED_CHANGES, checkout.error)
            logger.error("Failed to checkout branch %s: %s", worktree.branch_name, checkout.error)
            return _aborted(repo_root, ABORT_CHECKOUT_FAILED, checkout.error)

    logger.info("Worktree ready at %s", worktree.path)
    return WorktreeOutcome(
        ok=True,
        effective_cwd=worktree.path,
        active=True,
        path=worktree.path,
        branch=worktree.branch_name,
    )


def _aborted(repo_root: str, reason: str, error: str | None) -> WorktreeOutcome:
    return WorktreeOutcome(ok=False, effective_cwd=repo_root, abort_reason=reason, error=error)
