"""Local deterministic agent for CLI integration tests.

Ticks the first unchecked box of the Markdown document referenced in the
prompt and reports in stream-json, like the real agent CLI does. When resumed
it answers with a synopsis of the last ticked task.
"""

from __future__ import annotations

import argparse
import json
import re
import sys
import uuid
from pathlib import Path

_DOCUMENT_PATH = re.compile(r"(\S+\.md)\b")
_UNCHECKED_LINE = re.compile(r"^([ \t]*-[ \t]*)\[[ \t]*\]([ \t]*\S.*)$", re.MULTILINE)


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic agent turn."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--resume", default=None)
    parser.add_argument("prompt")
    args = parser.parse_args(argv)

    if args.resume:
        _emit_result(
            session_id=args.resume,
            text=(
                "**Summary:** Ticked one checkbox task.\n\n"
                "**Details:** The checkbox agent marked the first open task as done."
            ),
        )
        return 0

    session_id = str(uuid.uuid4())
    _emit({"type": "system", "subtype": "init", "session_id": session_id})

    match = _DOCUMENT_PATH.search(args.prompt)
    if match is None:
        _emit_result(session_id=session_id, text="No document path in prompt.", is_error=True)
        return 1

    document = Path(match.group(1))
    content = document.read_text("utf-8")
    ticked, count = _UNCHECKED_LINE.subn(r"\1[x]\2", content, count=1)
    if count:
        document.write_text(ticked, "utf-8")
    _emit_result(
        session_id=session_id,
        text=f"Ticked {count} task(s) in {document.name}.",
    )
    return 0


def _emit_result(*, session_id: str, text: str, is_error: bool = False) -> None:
    _emit(
        {
            "type": "result",
            "session_id": session_id,
            "result": text,
            "is_error": is_error,
            "usage": {"input_tokens": 10, "output_tokens": 5},
            "total_cost_usd": 0.0001,
        },
    )


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
