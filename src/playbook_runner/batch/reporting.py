"""Human-readable texts for loop summaries and pull requests."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from playbook_runner.batch.models import DocumentEntry, UsageStats


@dataclass(slots=True)
class LoopTotals:
    """Counters accumulated during one pass over all documents."""

    tasks_completed: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_cost_usd: float = 0.0

    def add_usage(self, usage: UsageStats | None) -> None:
        if usage is None:
            return
        self.input_tokens += usage.input_tokens or 0
        self.output_tokens += usage.output_tokens or 0
        self.total_cost_usd += usage.total_cost_usd or 0.0

    @property
    def has_tokens(self) -> bool:
        return self.input_tokens > 0 or self.output_tokens > 0

    def usage_stats(self) -> UsageStats | None:
        if not self.has_tokens:
            return None
        return UsageStats(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_cost_usd=self.total_cost_usd,
        )


def format_loop_duration(ms: int) -> str:
    """Format a duration as `850ms`, `42s`, `3m 5s`, or `2h 10m`."""

    if ms < 1000:
        return f"{ms}ms"
    seconds = ms // 1000
    if seconds < 60:
        return f"{seconds}s"
    minutes, remaining_seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"
    hours, remaining_minutes = divmod(minutes, 60)
    return f"{hours}h {remaining_minutes}m"


def loop_summary_text(*, loop_number: int, totals: LoopTotals) -> str:
    plural = "" if totals.tasks_completed == 1 else "s"
    return f"Loop {loop_number} completed: {totals.tasks_completed} task{plural} accomplished"


def loop_details_text(
    *,
    loop_number: int,
    totals: LoopTotals,
    elapsed_ms: int,
    tasks_discovered: int,
) -> str:
    lines = [
        f"**Loop {loop_number} Summary**",
        "",
        f"- **Tasks Accomplished:** {totals.tasks_completed}",
        f"- **Duration:** {format_loop_duration(elapsed_ms)}",
    ]
    if totals.has_tokens:
        tokens = totals.input_tokens + totals.output_tokens
        lines.append(
            f"- **Tokens:** {tokens:,} "
            f"({totals.input_tokens:,} in / {totals.output_tokens:,} out)",
        )
    if totals.total_cost_usd > 0:
        lines.append(f"- **Cost:** ${totals.total_cost_usd:.4f}")
    lines.append(f"- **Tasks Discovered for Next Loop:** {tasks_discovered}")
    return "\n".join(lines)


def pr_title(documents: Sequence[DocumentEntry]) -> str:
    return f"Auto Run: {len(documents)} document(s) processed"


def pr_body(documents: Sequence[DocumentEntry], completed_tasks: int) -> str:
    doc_list = "\n".join(f"- {document.filename}" for document in documents)
    return (
        "## Auto Run Summary\n"
        "\n"
        "**Documents processed:**\n"
        f"{doc_list}\n"
        "\n"
        f"**Total tasks completed:** {completed_tasks}\n"
        "\n"
        "---\n"
        "*This PR was automatically created by playbook-runner.*"
    )
