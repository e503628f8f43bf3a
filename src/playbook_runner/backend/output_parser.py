"""Parse agent CLI output into response text, conversation id, and usage."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from playbook_runner.batch.models import UsageStats

_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TOKENS_USED = re.compile(r"tokens used\s*[\r\n ]+\s*([\d,]+)", re.IGNORECASE)
_SESSION_ID = re.compile(r"session[_ ]id\s*[:=]\s*([0-9a-zA-Z-]{8,})", re.IGNORECASE)


@dataclass(slots=True)
class ParsedAgentOutput:
    """Normalized view of one agent run's stdout."""

    response: str
    agent_session_id: str | None
    usage_stats: UsageStats | None
    is_error: bool = False


def parse_agent_output(stdout: str) -> ParsedAgentOutput:
    """Parse stream-json (JSON lines) output, falling back to plain text.

    Stream-json messages are scanned for `session_id`, the final `result`
    message text, its `usage` block, and `total_cost_usd`. Lines that are not
    JSON are kept as plain text and used as the response when no `result`
    message was seen.
    """

    session_id: str | None = None
    result_text: str | None = None
    is_error = False
    usage: UsageStats | None = None
    assistant_parts: list[str] = []
    plain_lines: list[str] = []

    for line in stdout.splitlines():
        message = _load_json_line(line)
        if message is None:
            if line.strip():
                plain_lines.append(line)
            continue

        session_id = message.get("session_id") or session_id
        message_type = message.get("type")
        if message_type == "result":
            if isinstance(message.get("result"), str):
                result_text = message["result"]
            is_error = bool(message.get("is_error", False))
            usage = _usage_from_message(message) or usage
        elif message_type == "assistant":
            assistant_parts.append(_assistant_text(message))
        elif "usage" in message or "total_cost_usd" in message:
            usage = _usage_from_message(message) or usage

    if result_text is None:
        joined_assistant = "".join(part for part in assistant_parts if part)
        result_text = joined_assistant or "\n".join(plain_lines)

    if usage is None:
        usage = _usage_from_text(stdout)
    if session_id is None:
        match = _SESSION_ID.search("\n".join(plain_lines))
        session_id = match.group(1) if match else None

    return ParsedAgentOutput(
        response=result_text.strip(),
        agent_session_id=session_id,
        usage_stats=usage,
        is_error=is_error,
    )


def _load_json_line(line: str) -> dict[str, Any] | None:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        payload = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def _assistant_text(message: dict[str, Any]) -> str:
    content = (message.get("message") or {}).get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def _usage_from_message(message: dict[str, Any]) -> UsageStats | None:
    raw_usage = message.get("usage")
    cost = message.get("total_cost_usd")
    if not isinstance(raw_usage, dict) and cost is None:
        return None

    usage = UsageStats(total_cost_usd=float(cost or 0.0))
    if isinstance(raw_usage, dict):
        usage.input_tokens = int(raw_usage.get("input_tokens") or 0)
        usage.output_tokens = int(raw_usage.get("output_tokens") or 0)
        usage.cache_read_input_tokens = int(raw_usage.get("cache_read_input_tokens") or 0)
        usage.cache_creation_input_tokens = int(
            raw_usage.get("cache_creation_input_tokens") or 0,
        )

    model_usage = message.get("modelUsage")
    if isinstance(model_usage, dict):
        windows = [
            int(stats.get("contextWindow") or 0)
            for stats in model_usage.values()
            if isinstance(stats, dict)
        ]
        usage.context_window = max(windows, default=0)
    return usage


def _usage_from_text(text: str) -> UsageStats | None:
    input_tokens = _extract_int(_INPUT_TOKENS, text)
    output_tokens = _extract_int(_OUTPUT_TOKENS, text)
    if input_tokens is None and output_tokens is None:
        tokens_used = _extract_int(_TOKENS_USED, text)
        if tokens_used is None:
            return None
        return UsageStats(input_tokens=tokens_used)
    return UsageStats(input_tokens=input_tokens or 0, output_tokens=output_tokens or 0)


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
