"""
Error classification for maintenance runs.

Every error an agent records is mapped to exactly one category. The rules are
checked in priority order and the first matching rule wins, so "429 Too Many
Requests (timeout)" is a rate limit, not a timeout.
"""

import math
import re
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from Database.base import utcnow


class ErrorCategory(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    AUTH = "AUTH"
    RESOURCE = "RESOURCE"
    VALIDATION = "VALIDATION"
    EXTERNAL_API = "EXTERNAL_API"
    DATABASE = "DATABASE"
    UNKNOWN = "UNKNOWN"


class ErrorRecord(BaseModel):
    """One error captured during a run (stored inside AgentRun.errors)"""
    message: str
    stack: Optional[str] = None
    item_id: Optional[str] = None
    item_name: Optional[str] = None
    phase: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class CondensedError(BaseModel):
    message: str
    category: ErrorCategory
    stack_first_line: Optional[str] = None
    timestamp: Optional[str] = None


class ErrorSummary(BaseModel):
    total_errors: int = 0
    by_category: Dict[str, int] = Field(default_factory=dict)
    dominant_category: ErrorCategory = ErrorCategory.UNKNOWN
    dominant_percentage: int = 0


# ==================== RULES ====================

# Priority order matters: first match wins
CLASSIFICATION_RULES = [
    (ErrorCategory.RATE_LIMIT, [r"rate.?limit", r"429", r"too many requests", r"quota exceeded", r"throttl"]),
    (ErrorCategory.TIMEOUT, [r"timeout", r"timed out", r"ETIMEDOUT", r"deadline exceeded"]),
    (ErrorCategory.NETWORK, [r"ECONNREFUSED", r"ECONNRESET", r"ENOTFOUND", r"network",
                             r"socket hang up", r"connection refused", r"DNS"]),
    (ErrorCategory.AUTH, [r"401", r"403", r"unauthorized", r"forbidden", r"api.?key", r"invalid.?token"]),
    (ErrorCategory.RESOURCE, [r"out of memory", r"ENOMEM", r"heap", r"disk.?full", r"MemoryError"]),
    (ErrorCategory.DATABASE, [r"sqlalchemy", r"database", r"postgresql", r"psycopg",
                              r"connection.?pool", r"deadlock"]),
    (ErrorCategory.VALIDATION, [r"validation", r"invalid", r"schema", r"parse.?error"]),
    (ErrorCategory.EXTERNAL_API, [r"500", r"502", r"503", r"504", r"service unavailable"]),
]

_COMPILED_RULES = [
    (category, re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE))
    for category, patterns in CLASSIFICATION_RULES
]

MAX_MESSAGE_LENGTH = 200
MAX_STACK_LINE_LENGTH = 80

_FRAME_LINE = re.compile(r'^\s*(File "|at )')
_VENDORED_PATH = re.compile(r"[^\s\"(]*/(site-packages|node_modules)/")

ErrorLike = Union[str, ErrorRecord, dict]


def _message_of(error: ErrorLike) -> str:
    if isinstance(error, ErrorRecord):
        return error.message or ""
    if isinstance(error, dict):
        return str(error.get("message") or "")
    return str(error or "")


def classify(error: ErrorLike) -> ErrorCategory:
    """Map an error message (or record) to its category. Pure."""
    message = _message_of(error)
    for category, pattern in _COMPILED_RULES:
        if pattern.search(message):
            return category
    return ErrorCategory.UNKNOWN


def summarize(errors: Iterable[ErrorLike]) -> ErrorSummary:
    """
    Count errors per category and pick the dominant one.

    Ties go to the category whose first error appears earliest in the list.
    """
    counts = {category.value: 0 for category in ErrorCategory}
    first_seen: List[ErrorCategory] = []

    total = 0
    for error in errors:
        category = classify(error)
        counts[category.value] += 1
        if category not in first_seen:
            first_seen.append(category)
        total += 1

    if total == 0:
        return ErrorSummary(total_errors=0, by_category=counts)

    # max() keeps the first maximal element, which is the earliest seen
    dominant = max(first_seen, key=lambda c: counts[c.value])
    percentage = int(math.floor(counts[dominant.value] * 100 / total + 0.5))

    return ErrorSummary(
        total_errors=total,
        by_category=counts,
        dominant_category=dominant,
        dominant_percentage=max(0, min(100, percentage)),
    )


def _stack_first_line(stack: Optional[str]) -> Optional[str]:
    if not stack:
        return None

    for line in stack.splitlines()[1:]:
        if _FRAME_LINE.match(line):
            frame = _VENDORED_PATH.sub(lambda m: f"{m.group(1)}/", line.strip())
            return frame[:MAX_STACK_LINE_LENGTH]
    return None


def condense_error(error: ErrorLike) -> CondensedError:
    """Short form of an error for check details and alerts"""
    if isinstance(error, dict):
        error = ErrorRecord(**{k: v for k, v in error.items() if k in ErrorRecord.model_fields and v is not None})
    elif not isinstance(error, ErrorRecord):
        error = ErrorRecord(message=str(error))

    return CondensedError(
        message=(error.message or "")[:MAX_MESSAGE_LENGTH],
        category=classify(error),
        stack_first_line=_stack_first_line(error.stack),
        timestamp=error.timestamp.isoformat() if error.timestamp else None,
    )
