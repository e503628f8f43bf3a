"""Runtime configuration for batch runs and their collaborators."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_AGENT_COMMAND_TEMPLATE = (
    "claude --print --verbose --output-format stream-json "
    "--dangerously-skip-permissions {resume_args} -- {prompt}"
)

DEFAULT_BATCH_PROMPT = (
    "Read the task document at $$SCRATCHPAD$$. Pick the first unchecked task "
    "(`- [ ]`), complete it, then mark it as done (`- [x]`) in that document. "
    "Work on exactly one task and stop."
)


@dataclass(slots=True)
class AgentSettings:
    """Agent CLI settings."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    resume_flag: str = "--resume"
    timeout_seconds: int = 3_600


@dataclass(slots=True)
class GitSettings:
    """Git and pull request tooling settings."""

    git_executable: str = "git"
    gh_executable: str = "gh"
    fallback_base_branch: str = "main"


@dataclass(slots=True)
class HistorySettings:
    """History store settings."""

    db_path: Path = Path(".playbook_runner.db")
    enabled: bool = True


@dataclass(slots=True)
class NotificationSettings:
    """Audio feedback settings."""

    audio_feedback_enabled: bool = False
    audio_feedback_command: str = "say"


@dataclass(slots=True)
class BatchSettings:
    """Execution loop settings.

    `max_consecutive_no_progress` abandons a document after that many successful
    agent runs in a row that tick no checkbox, instead of retrying it until stopped.
    """

    default_prompt: str = DEFAULT_BATCH_PROMPT
    session_id: str = "cli"
    max_consecutive_no_progress: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    agent: AgentSettings = field(default_factory=AgentSettings)
    git: GitSettings = field(default_factory=GitSettings)
    history: HistorySettings = field(default_factory=HistorySettings)
    notification: NotificationSettings = field(default_factory=NotificationSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults suitable for local use."""

        return cls(
            agent=AgentSettings(
                command_template=os.getenv(
                    "PLAYBOOK_RUNNER_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                resume_flag=os.getenv("PLAYBOOK_RUNNER_AGENT_RESUME_FLAG", "--resume"),
                timeout_seconds=int(os.getenv("PLAYBOOK_RUNNER_AGENT_TIMEOUT_SECONDS", "3600")),
            ),
            git=GitSettings(
                git_executable=os.getenv("PLAYBOOK_RUNNER_GIT_EXECUTABLE", "git"),
                gh_executable=os.getenv("PLAYBOOK_RUNNER_GH_EXECUTABLE", "gh"),
                fallback_base_branch=os.getenv("PLAYBOOK_RUNNER_FALLBACK_BASE_BRANCH", "main"),
            ),
            history=HistorySettings(
                db_path=db_path
                or Path(os.getenv("PLAYBOOK_RUNNER_DB_PATH", ".playbook_runner.db")),
                enabled=_env_bool("PLAYBOOK_RUNNER_HISTORY_ENABLED", default=True),
            ),
            notification=NotificationSettings(
                audio_feedback_enabled=_env_bool(
                    "PLAYBOOK_RUNNER_AUDIO_FEEDBACK_ENABLED",
                    default=False,
                ),
                audio_feedback_command=os.getenv(
                    "PLAYBOOK_RUNNER_AUDIO_FEEDBACK_COMMAND",
                    "say",
                ),
            ),
            batch=BatchSettings(
                default_prompt=os.getenv("PLAYBOOK_RUNNER_DEFAULT_PROMPT", DEFAULT_BATCH_PROMPT),
                session_id=os.getenv("PLAYBOOK_RUNNER_SESSION_ID", "cli"),
                max_consecutive_no_progress=int(
                    os.getenv("PLAYBOOK_RUNNER_MAX_CONSECUTIVE_NO_PROGRESS", "3"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runner cannot work with."""

        template = self.agent.command_template.strip()
        if not template:
            raise ValueError("PLAYBOOK_RUNNER_AGENT_COMMAND_TEMPLATE must not be empty.")
        if "{prompt}" not in template:
            raise ValueError("PLAYBOOK_RUNNER_AGENT_COMMAND_TEMPLATE must include {prompt}.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("PLAYBOOK_RUNNER_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.batch.max_consecutive_no_progress <= 0:
            raise ValueError("PLAYBOOK_RUNNER_MAX_CONSECUTIVE_NO_PROGRESS must be > 0.")
        if not self.batch.session_id.strip():
            raise ValueError("PLAYBOOK_RUNNER_SESSION_ID must not be empty.")
        if self.notification.audio_feedback_enabled and not (
            self.notification.audio_feedback_command.strip()
        ):
            raise ValueError(
                "PLAYBOOK_RUNNER_AUDIO_FEEDBACK_COMMAND is required when audio feedback is on.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
