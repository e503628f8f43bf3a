"""Synopsis prompt and response parsing for completed batch tasks."""

from __future__ import annotations

import re
from dataclasses import dataclass

NOTHING_TO_REPORT = "NOTHING_TO_REPORT"
DEFAULT_SHORT_SUMMARY = "Task completed"

BATCH_SYNOPSIS_PROMPT = """\
Provide a brief synopsis of what you just accomplished in this task using this exact format:

**Summary:** [1-2 sentences describing the key outcome]

**Details:** [A paragraph with more specifics about what was done, files changed, etc.]

Rules:
- Be specific about what was actually accomplished, not what was attempted.
- Focus only on meaningful work that was done. Omit filler phrases like "the task is complete", \
"no further action needed", "everything is working", etc.
- If nothing meaningful was accomplished, respond with only: NOTHING_TO_REPORT"""

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")
_BOX_RULE = re.compile(r"─+")
_BOX_CHARS = re.compile(r"[│┌┐└┘├┤┬┴┼]")
_SUMMARY = re.compile(r"\*\*Summary:\*\*\s*(.+?)(?=\*\*Details:\*\*|$)", re.IGNORECASE | re.DOTALL)
_DETAILS = re.compile(r"\*\*Details:\*\*\s*(.+?)$", re.IGNORECASE | re.DOTALL)

_TEMPLATE_PLACEHOLDERS = (
    re.compile(r"^\[.*sentences.*\]$", re.IGNORECASE),
    re.compile(r"^\[.*paragraph.*\]$", re.IGNORECASE),
    re.compile(r"^\.\.\.\s*\("),
    re.compile(r"^\.\.\.\s*then\s+blank", re.IGNORECASE),
    re.compile(r"^then\s+blank", re.IGNORECASE),
    re.compile(r"^\(1-2\s+sentences\)", re.IGNORECASE),
)

_CONVERSATIONAL_FILLER = (
    re.compile(
        r"^(excellent|perfect|great|awesome|wonderful|fantastic|good|nice|cool|done|ok|okay|"
        r"alright|sure|yes|yeah|yep|absolutely|certainly|definitely|indeed|affirmative)[\s!.]*$",
        re.IGNORECASE,
    ),
    re.compile(
        r"^(that's|that is|this is|it's|it is)\s+"
        r"(great|good|perfect|excellent|done|complete|finished)[\s!.]*$",
        re.IGNORECASE,
    ),
    re.compile(r"^(all\s+)?(set|done|ready|complete|finished|good\s+to\s+go)[\s!.]*$", re.I),
    re.compile(r"^(looks?\s+)?(good|great|perfect)[\s!.]*$", re.IGNORECASE),
    re.compile(r"^(here\s+you\s+go|there\s+you\s+go|there\s+we\s+go|here\s+it\s+is)[\s!.]*$", re.I),
    re.compile(r"^(got\s+it|understood|will\s+do|on\s+it|right\s+away)[\s!.]*$", re.IGNORECASE),
    re.compile(r"^(no\s+problem|no\s+worries|happy\s+to\s+help)[\s!.]*$", re.IGNORECASE),
)

# Lines of the synopsis prompt that models sometimes echo back verbatim.
_PROMPT_ECHO = (
    re.compile(r"^Rules:", re.IGNORECASE),
    re.compile(r"^-\s+Be specific", re.IGNORECASE),
    re.compile(r"^-\s+Focus only", re.IGNORECASE),
    re.compile(r"^-\s+If nothing", re.IGNORECASE),
    re.compile(r"^Provide a brief synopsis", re.IGNORECASE),
)


@dataclass(slots=True)
class ParsedSynopsis:
    """Short and full synopsis extracted from an agent response."""

    short_summary: str
    full_synopsis: str
    nothing_to_report: bool = False


def clean_response(raw: str) -> str:
    """Strip terminal escape sequences and box-drawing characters."""

    text = _ANSI_ESCAPE.sub("", raw)
    text = _BOX_RULE.sub("", text)
    return _BOX_CHARS.sub("", text).strip()


def is_nothing_to_report(raw: str) -> bool:
    """Return True when the agent answered with the NOTHING_TO_REPORT sentinel."""

    return NOTHING_TO_REPORT in clean_response(raw)


def parse_synopsis(raw: str) -> ParsedSynopsis:
    """Parse a `**Summary:** ... **Details:** ...` response.

    Falls back to the first meaningful line when the summary label is missing
    or holds a template placeholder / filler phrase, and to
    ``DEFAULT_SHORT_SUMMARY`` when the response has no usable text.
    """

    clean = clean_response(raw)
    if NOTHING_TO_REPORT in clean:
        return ParsedSynopsis(short_summary="", full_synopsis="", nothing_to_report=True)

    summary_match = _SUMMARY.search(clean)
    details_match = _DETAILS.search(clean)
    short_summary = summary_match.group(1).strip() if summary_match else ""
    details = details_match.group(1).strip() if details_match else ""

    if (
        not short_summary
        or _is_template_placeholder(short_summary)
        or _is_conversational_filler(short_summary)
    ):
        short_summary = _first_meaningful_line(clean) or DEFAULT_SHORT_SUMMARY

    if _is_template_placeholder(details):
        details = ""

    full_synopsis = f"{short_summary}\n\n{details}" if details else short_summary
    return ParsedSynopsis(short_summary=short_summary, full_synopsis=full_synopsis)


def _first_meaningful_line(clean: str) -> str | None:
    for line in clean.splitlines():
        candidate = line.strip()
        if not candidate or candidate.startswith("**"):
            continue
        if _is_template_placeholder(candidate) or _is_conversational_filler(candidate):
            continue
        if any(pattern.search(candidate) for pattern in _PROMPT_ECHO):
            continue
        return candidate
    return None


def _is_template_placeholder(text: str) -> bool:
    stripped = text.strip()
    return any(pattern.search(stripped) for pattern in _TEMPLATE_PLACEHOLDERS)


def _is_conversational_filler(text: str) -> bool:
    stripped = text.strip()
    return any(pattern.search(stripped) for pattern in _CONVERSATIONAL_FILLER)
