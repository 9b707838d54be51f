from __future__ import annotations

import re
from enum import StrEnum

COMPLETION_SENTINEL = "TASKLOOP_COMPLETE"
TIMEOUT_EXIT_STATUS = 124


class Outcome(StrEnum):
    RATE_LIMITED = "rate_limited"
    COMPLETE = "complete"
    ERROR = "error"
    SUCCESS = "success"

    @property
    def is_success(self) -> bool:
        return self in (Outcome.SUCCESS, Outcome.COMPLETE)


RATE_LIMIT_PATTERN = re.compile(
    r"hit your limit"
    r"|rate[ _-]?limit"
    r"|quota exceeded"
    r"|too many requests"
    r"|resets \d"
    r"|RESOURCE_EXHAUSTED"
    r"|RateLimitError"
    r"|premium request.*limit"
    r"|\b(?:status|error|code|http)[\s:=]*429\b",
    re.IGNORECASE,
)
COMPLETION_PATTERN = re.compile(rf"^[ \t]*{re.escape(COMPLETION_SENTINEL)}[ \t]*\r?$", re.MULTILINE)
ERROR_MARKER_PATTERN = re.compile(r'"is_error"\s*:\s*true|error_during_execution')

# First match wins; rows are in precedence order.
OUTCOME_RULES: tuple[tuple[re.Pattern[str], Outcome], ...] = (
    (RATE_LIMIT_PATTERN, Outcome.RATE_LIMITED),
    (COMPLETION_PATTERN, Outcome.COMPLETE),
    (ERROR_MARKER_PATTERN, Outcome.ERROR),
)


def classify(raw_output: str, exit_status: int, timed_out: bool = False) -> Outcome:
    if timed_out:
        return Outcome.ERROR
    for pattern, outcome in OUTCOME_RULES:
        if pattern.search(raw_output):
            return outcome
    return Outcome.SUCCESS if exit_status == 0 else Outcome.ERROR


def has_completion_sentinel(raw_output: str) -> bool:
    return COMPLETION_PATTERN.search(raw_output) is not None
