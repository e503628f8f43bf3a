from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner

from conftest import CHECKBOX_AGENT_COMMAND_TEMPLATE
from playbook_runner.main import playbook_runner

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Batch Run Commands"),
]


def _playbook(tmp_path: Path) -> Path:
    folder = tmp_path / "playbook"
    folder.mkdir()
    (folder / "tasks.md").write_text("# Work\n\n- [ ] first\n- [ ] second\n", "utf-8")
    (folder / "done.md").write_text("- [x] shipped\n", "utf-8")
    return folder


def test_run_ticks_every_task_and_records_history(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PLAYBOOK_RUNNER_AGENT_COMMAND_TEMPLATE", CHECKBOX_AGENT_COMMAND_TEMPLATE)
    folder = _playbook(tmp_path)
    db_path = tmp_path / "history.db"
    runner = CliRunner()

    result = runner.invoke(
        playbook_runner,
        ["run", str(folder), "--doc", "tasks.md", "--db-path", str(db_path)],
    )

    assert result.exit_code == 0, result.output
    assert "Batch summary: completed=2 total=2 stopped=false" in result.output
    assert "[cli] loop=1 document=tasks" in result.output
    assert (folder / "tasks.md").read_text("utf-8") == "# Work\n\n- [x] first\n- [x] second\n"

    history = runner.invoke(playbook_runner, ["history", "list", "--db-path", str(db_path)])

    assert history.exit_code == 0, history.output
    lines = history.output.strip().splitlines()
    assert len(lines) == 2
    assert all(" AUTO session=cli status=ok " in line for line in lines)
    assert all(line.endswith("Ticked one checkbox task.") for line in lines)


def test_run_json_output_and_history_json(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PLAYBOOK_RUNNER_AGENT_COMMAND_TEMPLATE", CHECKBOX_AGENT_COMMAND_TEMPLATE)
    folder = _playbook(tmp_path)
    db_path = tmp_path / "history.db"
    runner = CliRunner()

    result = runner.invoke(
        playbook_runner,
        [
            "run",
            str(folder),
            "--doc",
            "tasks",
            "--session-id",
            "nightly",
            "--db-path",
            str(db_path),
            "--json",
        ],
    )

    assert result.exit_code == 0, result.output
    events = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
    assert events[0]["event"] == "progress"
    complete = events[-1]
    assert complete["event"] == "complete"
    assert complete["session_id"] == "nightly"
    assert complete["completed_tasks"] == 2
    assert complete["was_stopped"] is False

    history = runner.invoke(
        playbook_runner,
        ["history", "list", "--db-path", str(db_path), "--session-id", "nightly", "--json"],
    )

    entries = [json.loads(line) for line in history.output.splitlines()]
    assert [entry["type"] for entry in entries] == ["AUTO", "AUTO"]
    assert entries[0]["usage_stats"]["input_tokens"] == 10


def test_dry_run_reports_counts_without_running_agent(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PLAYBOOK_RUNNER_AGENT_COMMAND_TEMPLATE", "missing-agent-binary {prompt}")
    folder = _playbook(tmp_path)

    result = CliRunner().invoke(
        playbook_runner,
        ["run", str(folder), "--reset-doc", "done", "--doc", "tasks", "--dry-run"],
    )

    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == [
        "tasks: unchecked=2 checked=0",
        "done: unchecked=0 checked=1 reset",
        "Total unchecked: 2",
    ]
    assert "- [ ] first" in (folder / "tasks.md").read_text("utf-8")


def test_tasks_command_defaults_to_every_document(tmp_path: Path) -> None:
    folder = _playbook(tmp_path)

    result = CliRunner().invoke(playbook_runner, ["tasks", str(folder), "--json"])

    assert result.exit_code == 0, result.output
    documents = [json.loads(line) for line in result.output.splitlines()]
    assert [(doc["document"], doc["unchecked"], doc["checked"]) for doc in documents] == [
        ("done", 0, 1),
        ("tasks", 2, 0),
    ]


def test_run_without_open_tasks_is_aborted(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PLAYBOOK_RUNNER_AGENT_COMMAND_TEMPLATE", CHECKBOX_AGENT_COMMAND_TEMPLATE)
    folder = _playbook(tmp_path)
    db_path = tmp_path / "history.db"

    result = CliRunner().invoke(
        playbook_runner,
        ["run", str(folder), "--doc", "done", "--db-path", str(db_path), "--no-history"],
    )

    assert result.exit_code == 1
    assert "Batch aborted: no_unfinished_tasks" in result.output
    assert not db_path.exists()


def test_run_rejects_invalid_agent_template(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PLAYBOOK_RUNNER_AGENT_COMMAND_TEMPLATE", "agent --no-prompt")
    folder = _playbook(tmp_path)

    result = CliRunner().invoke(playbook_runner, ["run", str(folder), "--doc", "tasks"])

    assert result.exit_code == 1
    assert "must include {prompt}" in result.output


def test_run_option_conflicts_are_usage_errors(tmp_path: Path) -> None:
    folder = _playbook(tmp_path)
    runner = CliRunner()

    create_pr = runner.invoke(playbook_runner, ["run", str(folder), "--create-pr"])
    no_branch = runner.invoke(
        playbook_runner,
        ["run", str(folder), "--worktree-path", str(tmp_path / "wt")],
    )

    assert create_pr.exit_code == 2
    assert "--create-pr requires --worktree-path" in create_pr.output
    assert no_branch.exit_code == 2


def test_prompt_file_is_used_as_prompt(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PLAYBOOK_RUNNER_AGENT_COMMAND_TEMPLATE", CHECKBOX_AGENT_COMMAND_TEMPLATE)
    folder = _playbook(tmp_path)
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("Handle $$SCRATCHPAD$$ carefully.", "utf-8")

    result = CliRunner().invoke(
        playbook_runner,
        [
            "run",
            str(folder),
            "--doc",
            "tasks",
            "--prompt-file",
            str(prompt_file),
            "--no-history",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "- [ ]" not in (folder / "tasks.md").read_text("utf-8")


def test_history_list_on_empty_database(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        playbook_runner,
        ["history", "list", "--db-path", str(tmp_path / "empty.db")],
    )

    assert result.exit_code == 0, result.output
    assert result.output.strip() == "No history entries."
