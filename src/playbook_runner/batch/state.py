"""Per-session batch run state and stop signals."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import replace

from playbook_runner.batch.models import BatchRunState

logger = logging.getLogger(__name__)

StateListener = Callable[[str, BatchRunState], None]


class RunStateStore:
    """Session id -> `BatchRunState`, the single source of truth for run progress.

    Every change publishes a new state object, so snapshots handed out earlier
    never change under the observer. Entries are reset to idle at the end of a
    run but never removed.
    """

    def __init__(self) -> None:
        self._states: dict[str, BatchRunState] = {}
        self._listeners: list[StateListener] = []

    def get(self, session_id: str) -> BatchRunState:
        state = self._states.get(session_id)
        return state if state is not None else BatchRunState()

    def publish(self, session_id: str, state: BatchRunState) -> BatchRunState:
        self._states[session_id] = state
        self._notify(session_id, state)
        return state

    def update(self, session_id: str, **changes: object) -> BatchRunState:
        """Publish a copy of the current state with the given fields replaced."""

        return self.publish(session_id, replace(self.get(session_id), **changes))

    def add_to_totals(self, session_id: str, count: int) -> BatchRunState:
        """Grow the multi-document total and its legacy mirror together."""

        current = self.get(session_id)
        return self.update(
            session_id,
            total_tasks_across_all_docs=current.total_tasks_across_all_docs + count,
            total_tasks=current.total_tasks + count,
        )

    def reset_to_idle(self, session_id: str, session_ids: list[str]) -> BatchRunState:
        """Publish the idle shape, keeping the agent session ids collected by the run."""

        return self.publish(session_id, BatchRunState(session_ids=list(session_ids)))

    def items(self) -> dict[str, BatchRunState]:
        return dict(self._states)

    def has_any_active_batch(self) -> bool:
        return any(state.is_running for state in self._states.values())

    def active_session_ids(self) -> list[str]:
        return [session_id for session_id, state in self._states.items() if state.is_running]

    def subscribe(self, listener: StateListener) -> None:
        """Call `listener(session_id, state)` after every publication."""

        self._listeners.append(listener)

    def _notify(self, session_id: str, state: BatchRunState) -> None:
        for listener in self._listeners:
            try:
                listener(session_id, state)
            except Exception:  # noqa: BLE001
                logger.exception("Run state listener failed for session %s", session_id)


class StopSignals:
    """Stop flags keyed by session id, shared with the running loops.

    The flags live outside `BatchRunState` so that a stop requested after a
    run started (from another task, thread, or a signal handler) is seen by
    the loop at its next checkpoint.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._flags: dict[str, bool] = {}

    def request(self, session_id: str) -> None:
        with self._lock:
            self._flags[session_id] = True

    def clear(self, session_id: str) -> None:
        with self._lock:
            self._flags[session_id] = False

    def is_set(self, session_id: str) -> bool:
        with self._lock:
            return self._flags.get(session_id, False)
