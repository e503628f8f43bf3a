"""CLI entrypoint for playbook-runner."""

import logging
from pathlib import Path

import rich_click as click

from playbook_runner import __version__
from playbook_runner.batch.models import HistoryEntryType
from playbook_runner.controllers import (
    BatchCliController,
    HistoryListCommand,
    RunPlaybookCommand,
    TasksCommand,
)

click.rich_click.USE_MARKDOWN = True
BATCH_CONTROLLER = BatchCliController(echo=click.echo)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="playbook-runner")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity (logs go to stderr).",
)
def playbook_runner(log_level: str) -> None:
    """Drive a coding agent through Markdown checkbox playbooks."""

    logging.basicConfig(level=log_level.upper(), format=_LOG_FORMAT)


@playbook_runner.command("run")
@click.argument(
    "folder",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
)
@click.option(
    "--doc",
    "documents",
    multiple=True,
    help="Playbook document name (with or without `.md`). Can be repeated; order is kept.",
)
@click.option(
    "--reset-doc",
    "reset_documents",
    multiple=True,
    help="Document to uncheck after it completes, so it supplies work to the next loop.",
)
@click.option("--prompt", default=None, help="Prompt template; `$$SCRATCHPAD$$` is the doc path.")
@click.option(
    "--prompt-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Read the prompt template from a file.",
)
@click.option(
    "--loop/--no-loop",
    "loop_enabled",
    default=False,
    show_default=True,
    help="Keep passing over the documents while work remains.",
)
@click.option(
    "--max-loops",
    type=click.IntRange(min=1),
    default=None,
    help="Upper bound on loop iterations.",
)
@click.option(
    "--worktree-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Run the agent inside this git worktree.",
)
@click.option("--branch", default=None, help="Worktree branch name.")
@click.option(
    "--create-pr",
    is_flag=True,
    default=False,
    help="Open a pull request from the worktree branch when the run completes.",
)
@click.option("--pr-target", default=None, help="Pull request base branch.")
@click.option("--session-id", default=None, help="Session id for state and history.")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Only report task counts, do not invoke the agent.",
)
@click.option("--no-history", is_flag=True, default=False, help="Do not record history entries.")
@click.option("--json", "output_json", is_flag=True, default=False, help="Emit JSON lines.")
def run_playbook(  # noqa: PLR0913
    folder: Path,
    documents: tuple[str, ...],
    reset_documents: tuple[str, ...],
    prompt: str | None,
    prompt_file: Path | None,
    loop_enabled: bool,
    max_loops: int | None,
    worktree_path: Path | None,
    branch: str | None,
    create_pr: bool,
    pr_target: str | None,
    session_id: str | None,
    db_path: Path | None,
    dry_run: bool,
    no_history: bool,
    output_json: bool,
) -> None:
    """Work through the unchecked tasks of the playbook documents in FOLDER."""

    if prompt is not None and prompt_file is not None:
        raise click.UsageError("Use either --prompt or --prompt-file, not both.")
    if worktree_path is not None and not branch:
        raise click.UsageError("--branch is required with --worktree-path.")
    if create_pr and worktree_path is None:
        raise click.UsageError("--create-pr requires --worktree-path.")
    if prompt_file is not None:
        prompt = prompt_file.read_text("utf-8")

    try:
        report = BATCH_CONTROLLER.run(
            RunPlaybookCommand(
                folder=folder,
                documents=documents,
                reset_documents=reset_documents,
                prompt=prompt,
                loop_enabled=loop_enabled,
                max_loops=max_loops,
                worktree_path=worktree_path,
                branch=branch,
                create_pr=create_pr,
                pr_target=pr_target,
                session_id=session_id,
                db_path=db_path,
                dry_run=dry_run,
                no_history=no_history,
                output_json=output_json,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error

    _emit_lines(report.lines)
    if not report.success:
        raise click.ClickException("Batch run did not start.")


@playbook_runner.command("tasks")
@click.argument(
    "folder",
    type=click.Path(path_type=Path, exists=True, file_okay=False),
)
@click.option(
    "--doc",
    "documents",
    multiple=True,
    help="Document name. Can be repeated. Defaults to every `.md` file in FOLDER.",
)
@click.option("--json", "output_json", is_flag=True, default=False, help="Emit JSON lines.")
def list_tasks(folder: Path, documents: tuple[str, ...], output_json: bool) -> None:
    """Show unchecked and checked task counts per document."""

    _emit_lines(
        BATCH_CONTROLLER.tasks(
            TasksCommand(folder=folder, documents=documents, output_json=output_json),
        ),
    )


@playbook_runner.group()
def history() -> None:
    """Batch history commands."""


@history.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--session-id", default=None, help="Only entries of this session.")
@click.option(
    "--type",
    "entry_type",
    type=click.Choice([entry_type.value for entry_type in HistoryEntryType]),
    default=None,
    help="Only entries of this type.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="How many latest entries to display.",
)
@click.option("--json", "output_json", is_flag=True, default=False, help="Emit JSON lines.")
def history_list(
    db_path: Path | None,
    session_id: str | None,
    entry_type: str | None,
    limit: int,
    output_json: bool,
) -> None:
    """List recent history entries, newest first."""

    _emit_lines(
        BATCH_CONTROLLER.list_history(
            HistoryListCommand(
                db_path=db_path,
                session_id=session_id,
                entry_type=entry_type,
                limit=limit,
                output_json=output_json,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    playbook_runner()
