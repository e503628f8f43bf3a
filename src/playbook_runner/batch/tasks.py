"""Checkbox task-list helpers over Markdown text."""

from __future__ import annotations

import re

_UNCHECKED_TASK = re.compile(r"^[ \t]*-[ \t]*\[[ \t]*\][ \t]*\S.*$", re.MULTILINE)
_CHECKED_TASK = re.compile(r"^[ \t]*-[ \t]*\[x\](?=[ \t]*\S)", re.MULTILINE | re.IGNORECASE)
_CHECKED_TASK_PREFIX = re.compile(
    r"^([ \t]*-[ \t]*)\[x\](?=[ \t]*\S)",
    re.MULTILINE | re.IGNORECASE,
)


def count_unfinished_tasks(content: str) -> int:
    """Count `- [ ] task` lines in the document."""

    return len(_UNCHECKED_TASK.findall(content))


def count_checked_tasks(content: str) -> int:
    """Count `- [x] task` lines in the document, case-insensitively."""

    return len(_CHECKED_TASK.findall(content))


def uncheck_all_tasks(content: str) -> str:
    """Turn every `- [x]` checkbox into `- [ ]`, keeping the bullet prefix intact."""

    return _CHECKED_TASK_PREFIX.sub(r"\1[ ]", content)
