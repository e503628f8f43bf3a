from __future__ import annotations

import asyncio

import allure

from conftest import SESSION, ScriptedAgent, tick_behaviour
from playbook_runner.batch.models import (
    AgentRunResult,
    BatchRunConfig,
    DocumentEntry,
    HistoryEntryType,
)

pytestmark = [
    allure.epic("Batch Runs"),
    allure.feature("Loop Mode"),
]

FOLDER = "/playbooks"
PROMPT = "Process $$SCRATCHPAD$$"


def _run_loop(harness, *documents: DocumentEntry, **kwargs: object):  # noqa: ANN001, ANN202
    config = BatchRunConfig(documents=documents, prompt=PROMPT, loop_enabled=True, **kwargs)
    return asyncio.run(harness.processor.start_batch_run(SESSION.session_id, config, FOLDER))


def _loop_summaries(harness) -> list:  # noqa: ANN001
    return [
        entry
        for entry in harness.history.entries
        if entry.type is HistoryEntryType.LOOP_SUMMARY
    ]


def test_reset_document_resupplies_work_for_one_more_loop(make_harness) -> None:
    harness = make_harness(
        {
            "backlog.md": "- [ ] backlog item\n",
            "generator.md": "- [ ] gen one\n- [ ] gen two\n",
        },
    )
    appended: list[bool] = []

    def _behaviour(agent: ScriptedAgent, prompt: str, filename: str) -> AgentRunResult:
        if filename == "generator.md" and not appended:
            appended.append(True)
            agent.store.documents["backlog.md"] += "- [ ] follow-up\n"
        return tick_behaviour(agent, prompt, filename)

    harness.agent.behaviour = _behaviour

    outcome = _run_loop(
        harness,
        DocumentEntry("backlog"),
        DocumentEntry("generator", reset_on_completion=True),
    )

    assert len(harness.agent.prompts) == 6
    assert harness.store.documents["generator.md"] == "- [ ] gen one\n- [ ] gen two\n"
    assert "- [ ]" not in harness.store.documents["backlog.md"]

    summaries = _loop_summaries(harness)
    assert len(summaries) == 1
    assert summaries[0].summary == "Loop 1 completed: 3 tasks accomplished"
    assert "- **Tasks Discovered for Next Loop:** 3" in summaries[0].full_response
    assert "- **Tokens:** 360 (300 in / 60 out)" in summaries[0].full_response
    assert summaries[0].usage_stats is not None
    assert summaries[0].usage_stats.input_tokens == 300

    assert outcome.completion is not None
    assert outcome.completion.completed_tasks == 6
    assert outcome.completion.total_tasks == 3


def test_loop_iteration_and_totals_grow_between_loops(make_harness) -> None:
    harness = make_harness(
        {
            "backlog.md": "- [ ] backlog item\n",
            "generator.md": "- [ ] gen one\n",
        },
    )
    appended: list[bool] = []
    iterations: list[int] = []
    totals: list[int] = []
    harness.processor.state_store.subscribe(
        lambda _session_id, state: (
            iterations.append(state.loop_iteration),
            totals.append(state.total_tasks_across_all_docs),
        ),
    )

    def _behaviour(agent: ScriptedAgent, prompt: str, filename: str) -> AgentRunResult:
        if filename == "generator.md" and not appended:
            appended.append(True)
            agent.store.documents["backlog.md"] += "- [ ] follow-up\n"
        return tick_behaviour(agent, prompt, filename)

    harness.agent.behaviour = _behaviour

    _run_loop(
        harness,
        DocumentEntry("backlog"),
        DocumentEntry("generator", reset_on_completion=True),
    )

    assert max(iterations) == 1
    assert max(totals) > 2


def test_reset_only_documents_stop_after_one_pass(make_harness) -> None:
    harness = make_harness({"routine.md": "- [ ] check logs\n- [x] rotate keys\n"})

    outcome = _run_loop(harness, DocumentEntry("routine", reset_on_completion=True))

    assert len(harness.agent.prompts) == 1
    assert harness.store.documents["routine.md"] == "- [ ] check logs\n- [ ] rotate keys\n"
    assert _loop_summaries(harness) == []
    assert outcome.completion is not None
    assert outcome.completion.completed_tasks == 1


def test_completed_reset_document_is_reset_when_loop_starts(make_harness) -> None:
    harness = make_harness(
        {
            "backlog.md": "- [ ] only task\n",
            "routine.md": "- [x] already done\n",
        },
    )

    _run_loop(harness, DocumentEntry("routine", reset_on_completion=True), DocumentEntry("backlog"))

    assert harness.store.documents["routine.md"] == "- [ ] already done\n"
    assert len(harness.agent.prompts) == 1


def test_reset_document_without_loop_is_reset_once(make_harness) -> None:
    harness = make_harness({"routine.md": "- [ ] step\n"})
    config = BatchRunConfig(
        documents=(DocumentEntry("routine", reset_on_completion=True),),
        prompt=PROMPT,
    )

    asyncio.run(harness.processor.start_batch_run(SESSION.session_id, config, FOLDER))

    assert harness.store.documents["routine.md"] == "- [ ] step\n"
    assert len(harness.agent.prompts) == 1


def test_loop_exits_when_non_reset_documents_are_finished(make_harness) -> None:
    harness = make_harness({"tasks.md": "- [ ] one\n- [ ] two\n"})

    outcome = _run_loop(harness, DocumentEntry("tasks"))

    assert len(harness.agent.prompts) == 2
    assert _loop_summaries(harness) == []
    assert outcome.completion is not None
    assert outcome.completion.completed_tasks == 2


def test_max_loops_bounds_the_number_of_passes(make_harness) -> None:
    harness = make_harness(
        {
            "backlog.md": "- [ ] backlog item\n",
            "generator.md": "- [ ] gen one\n- [ ] gen two\n",
        },
    )

    def _behaviour(agent: ScriptedAgent, prompt: str, filename: str) -> AgentRunResult:
        if filename == "generator.md":
            agent.store.documents["backlog.md"] += "- [ ] more work\n"
        return tick_behaviour(agent, prompt, filename)

    harness.agent.behaviour = _behaviour

    outcome = _run_loop(
        harness,
        DocumentEntry("backlog"),
        DocumentEntry("generator", reset_on_completion=True),
        max_loops=2,
    )

    assert len(harness.agent.prompts) == 7
    assert len(_loop_summaries(harness)) == 1
    assert outcome.completion is not None
    assert outcome.completion.was_stopped is False


def test_always_failing_agent_terminates_in_loop_mode(make_harness) -> None:
    harness = make_harness({"tasks.md": "- [ ] one\n- [ ] two\n"})
    harness.agent.behaviour = lambda _agent, _prompt, _filename: AgentRunResult(success=False)

    outcome = _run_loop(harness, DocumentEntry("tasks"))

    assert len(harness.agent.prompts) == 2
    assert _loop_summaries(harness) == []
    assert outcome.completion is not None
    assert outcome.completion.completed_tasks == 0


def test_agent_that_never_closes_a_box_terminates_in_loop_mode(make_harness) -> None:
    harness = make_harness({"tasks.md": "- [ ] one\n"}, max_consecutive_no_progress=3)
    harness.agent.behaviour = lambda _agent, _prompt, _filename: AgentRunResult(
        success=True,
        agent_session_id="idle",
    )

    outcome = _run_loop(harness, DocumentEntry("tasks"))

    assert len(harness.agent.prompts) == 3
    assert outcome.completion is not None
    assert outcome.completion.completed_tasks == 0


def test_stop_during_last_task_skips_the_reset_write(make_harness) -> None:
    harness = make_harness({"routine.md": "- [ ] step\n", "backlog.md": "- [ ] item\n"})
    harness.agent.on_call = lambda _call: harness.processor.stop_batch_run(SESSION.session_id)

    outcome = _run_loop(
        harness,
        DocumentEntry("routine", reset_on_completion=True),
        DocumentEntry("backlog"),
    )

    assert len(harness.agent.prompts) == 1
    assert harness.store.writes == []
    assert harness.store.documents["routine.md"] == "- [x] step\n"
    assert outcome.completion is not None
    assert outcome.completion.was_stopped is True
    assert outcome.completion.completed_tasks == 1
