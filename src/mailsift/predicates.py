"""Search predicate model.

A search predicate is either a leaf (a set of criteria on headers, dates,
flags, size and text, implicitly ANDed) or a combinator applying AND, OR
or NOT to child predicates. Both are immutable; predicates are built once
from a rule file, validated, and then handed to the compiler.

This module also owns the parsers for the string values a leaf carries
(dates, sizes, flag names), so that validation and compilation agree on
what is accepted.
"""

import email.utils
import logging
import re
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .exceptions import (
    ArityViolationError,
    ConflatedPredicateError,
    DateParseError,
    EmptyConditionListError,
    FlagError,
    RuleValidationError,
    SizeParseError,
    UnknownOperatorError,
)

logger = logging.getLogger(__name__)


class Operator(str, Enum):
    """Boolean operators a combinator can apply."""

    AND = "and"
    OR = "or"
    NOT = "not"


@dataclass(frozen=True)
class HeaderMatch:
    """Match an arbitrary header by name (substring semantics are the server's)."""
    name: str
    value: str


@dataclass(frozen=True)
class LeafPredicate:
    """A predicate matching directly against message attributes.

    Every attribute is optional. Attributes that are set are combined with
    AND; a leaf with nothing set matches every message.

    Attributes:
        since: Messages on or after this date (raw date string)
        before: Messages strictly before this date (raw date string)
        on: Messages on this calendar day (raw date string)
        within_days: Messages from the start of the day N days ago onwards
        from_: Substring of the From header
        to: Substring of the To header
        cc: Substring of the Cc header
        bcc: Substring of the Bcc header
        subject: Substring of the Subject header
        subject_contains: Substring of the Subject header
        header: Substring match on any named header
        body_contains: Substring of the message body
        text: Substring of headers or body
        flags_has: Flags the message must carry
        flags_not_has: Flags the message must not carry
        larger_than: Minimum size, e.g. "10K"
        smaller_than: Maximum size, e.g. "5M"
    """
    since: Optional[str] = None
    before: Optional[str] = None
    on: Optional[str] = None
    within_days: int = 0
    from_: Optional[str] = None
    to: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    subject: Optional[str] = None
    subject_contains: Optional[str] = None
    header: Optional[HeaderMatch] = None
    body_contains: Optional[str] = None
    text: Optional[str] = None
    flags_has: Tuple[str, ...] = ()
    flags_not_has: Tuple[str, ...] = ()
    larger_than: Optional[str] = None
    smaller_than: Optional[str] = None


@dataclass(frozen=True)
class Combinator:
    """AND/OR/NOT applied to an ordered sequence of child predicates.

    The operator is kept as given so that an unrecognised value can be
    reported by validation rather than at construction time.
    """
    operator: Union[Operator, str]
    conditions: Tuple["SearchPredicate", ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not isinstance(self.conditions, tuple):
            object.__setattr__(self, "conditions", tuple(self.conditions))


SearchPredicate = Union[LeafPredicate, Combinator]


# Value parsers

_DATE_FORMATS = (
    "%Y-%m-%dT%H:%M:%S%z",      # RFC3339
    "%Y-%m-%dT%H:%M:%S.%f%z",   # RFC3339 with fractional seconds
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%b %d, %Y",
    "%d %b %Y",
)

# RFC822 ("02 Jan 06 15:04 MST") and RFC1123 ("Mon, 02 Jan 2006 15:04:05 MST")
_RFC2822_PATTERN = re.compile(
    r"^(?:[A-Za-z]{3},\s+)?\d{1,2}\s+[A-Za-z]{3}\s+\d{2,4}\s+\d{1,2}:\d{2}(?::\d{2})?\s+\S+$"
)

_SIZE_PATTERN = re.compile(r"^(\d+)([BKMG])?$")

_SIZE_UNITS = {
    "": 1,
    "B": 1,
    "K": 1024,
    "M": 1024 * 1024,
    "G": 1024 * 1024 * 1024,
}

_STANDARD_FLAGS = {
    "seen": "\\Seen",
    "answered": "\\Answered",
    "flagged": "\\Flagged",
    "deleted": "\\Deleted",
    "draft": "\\Draft",
    "recent": "\\Recent",
    "important": "$Important",
}

_KEYWORD_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def parse_date(value: str, field_name: str = "date") -> datetime:
    """Parse a date criterion, trying each supported format in order.

    Supported formats: RFC3339, YYYY-MM-DD, YYYY/MM/DD, MM/DD/YYYY,
    DD/MM/YYYY, "Jan 2, 2006", "2 Jan 2006", RFC822 and RFC1123. The first
    format that parses wins, so "01/02/2024" is January 2nd.

    Raises:
        DateParseError: If no format matches
    """
    text = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    if _RFC2822_PATTERN.match(text):
        try:
            return email.utils.parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError) as e:
            logger.debug(f"RFC 2822 date {text!r} for {field_name} did not parse: {e!s}")

    raise DateParseError(field_name, value)


def start_of_day(moment: datetime) -> datetime:
    """Midnight of the same calendar day, keeping the timezone."""
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def parse_size(value: str, field_name: str = "size") -> int:
    """Parse a size such as "100B", "10K", "5M" or "1G" into bytes.

    The unit suffix is case-sensitive and optional (bytes).

    Raises:
        SizeParseError: If the value does not match the size format
    """
    match = _SIZE_PATTERN.match(value)
    if not match:
        raise SizeParseError(field_name, value)
    return int(match.group(1)) * _SIZE_UNITS[match.group(2) or ""]


def normalize_flag(flag: str) -> str:
    """Map a user-facing flag name to its IMAP form.

    Names already starting with a backslash or dollar sign are passed
    through; the standard names (seen, answered, flagged, deleted, draft,
    recent, important) map to their system flag; anything else is a
    custom keyword and passes through unchanged.
    """
    if flag.startswith("\\") or flag.startswith("$"):
        return flag
    return _STANDARD_FLAGS.get(flag.lower(), flag)


def is_valid_flag(flag: str) -> bool:
    """Check whether a flag name is a standard flag, system/custom flag or keyword."""
    if flag.lower() in _STANDARD_FLAGS:
        return True
    if flag.startswith("\\") or flag.startswith("$"):
        return len(flag) > 1
    return bool(_KEYWORD_PATTERN.match(flag))


def resolve_operator(operator: Union[Operator, str]) -> Operator:
    """Convert a raw operator value into an Operator.

    Raises:
        UnknownOperatorError: If the value is not and/or/not
    """
    if isinstance(operator, Operator):
        return operator
    try:
        return Operator(str(operator).strip().lower())
    except ValueError as e:
        raise UnknownOperatorError(str(operator)) from e


# Validation


def validate_predicate(predicate: SearchPredicate) -> None:
    """Validate a predicate tree before compilation.

    Checks combinator arity and operators, and that every date, size,
    flag and header criterion of every leaf can be parsed.

    Raises:
        PredicateValidationError: For the first problem found
    """
    if isinstance(predicate, Combinator):
        operator = resolve_operator(predicate.operator)
        if not predicate.conditions:
            raise EmptyConditionListError(operator.value)
        if operator is Operator.NOT and len(predicate.conditions) > 1:
            raise ArityViolationError(operator.value, len(predicate.conditions))
        for condition in predicate.conditions:
            validate_predicate(condition)
        return

    for name in ("since", "before", "on"):
        raw = getattr(predicate, name)
        if raw:
            parse_date(raw, name)

    if predicate.within_days < 0:
        raise RuleValidationError(f"within_days cannot be negative, got: {predicate.within_days}")

    if predicate.header is not None and not predicate.header.name:
        raise RuleValidationError("header name is required when using header search")

    for flag in predicate.flags_has:
        if not is_valid_flag(flag):
            raise FlagError("has", flag)
    for flag in predicate.flags_not_has:
        if not is_valid_flag(flag):
            raise FlagError("not_has", flag)

    if predicate.larger_than:
        parse_size(predicate.larger_than, "larger_than")
    if predicate.smaller_than:
        parse_size(predicate.smaller_than, "smaller_than")


# Parsing from rule file data

_COMBINATOR_KEYS = {"operator", "conditions"}

_LEAF_KEYS = {
    "since", "before", "on", "within_days",
    "from", "to", "cc", "bcc", "subject", "subject_contains", "header",
    "body_contains", "text",
    "flags", "size",
}


def _as_text(value: Any, key: str, path: str) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        # YAML turns unquoted dates into date objects
        return value.isoformat()
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return str(value)
    raise RuleValidationError(f"{path}.{key} must be a string, got {type(value).__name__}")


def _as_flag_list(value: Any, key: str, path: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return tuple(value)
    raise RuleValidationError(f"{path}.flags.{key} must be a list of flag names")


def _parse_leaf(data: Mapping[str, Any], path: str) -> LeafPredicate:
    header = None
    if data.get("header") is not None:
        header_data = data["header"]
        if not isinstance(header_data, Mapping):
            raise RuleValidationError(f"{path}.header must be a mapping with 'name' and 'value'")
        header = HeaderMatch(
            name=_as_text(header_data.get("name"), "header.name", path) or "",
            value=_as_text(header_data.get("value"), "header.value", path) or "",
        )

    flags = data.get("flags") or {}
    if not isinstance(flags, Mapping):
        raise RuleValidationError(f"{path}.flags must be a mapping with 'has' and/or 'not_has'")
    unknown_flag_keys = set(flags) - {"has", "not_has"}
    if unknown_flag_keys:
        raise RuleValidationError(f"unknown keys in {path}.flags: {', '.join(sorted(unknown_flag_keys))}")

    size = data.get("size") or {}
    if not isinstance(size, Mapping):
        raise RuleValidationError(f"{path}.size must be a mapping with 'larger_than' and/or 'smaller_than'")
    unknown_size_keys = set(size) - {"larger_than", "smaller_than"}
    if unknown_size_keys:
        raise RuleValidationError(f"unknown keys in {path}.size: {', '.join(sorted(unknown_size_keys))}")

    within_days = data.get("within_days") or 0
    if not isinstance(within_days, int) or isinstance(within_days, bool):
        raise RuleValidationError(f"{path}.within_days must be an integer")

    return LeafPredicate(
        since=_as_text(data.get("since"), "since", path),
        before=_as_text(data.get("before"), "before", path),
        on=_as_text(data.get("on"), "on", path),
        within_days=within_days,
        from_=_as_text(data.get("from"), "from", path),
        to=_as_text(data.get("to"), "to", path),
        cc=_as_text(data.get("cc"), "cc", path),
        bcc=_as_text(data.get("bcc"), "bcc", path),
        subject=_as_text(data.get("subject"), "subject", path),
        subject_contains=_as_text(data.get("subject_contains"), "subject_contains", path),
        header=header,
        body_contains=_as_text(data.get("body_contains"), "body_contains", path),
        text=_as_text(data.get("text"), "text", path),
        flags_has=_as_flag_list(flags.get("has"), "has", path),
        flags_not_has=_as_flag_list(flags.get("not_has"), "not_has", path),
        larger_than=_as_text(size.get("larger_than"), "larger_than", path),
        smaller_than=_as_text(size.get("smaller_than"), "smaller_than", path),
    )


def parse_predicate(data: Optional[Mapping[str, Any]], path: str = "search") -> SearchPredicate:
    """Build a predicate tree from the "search" mapping of a rule.

    A mapping with ``operator``/``conditions`` becomes a Combinator, any
    other mapping a LeafPredicate. A node may not be both.

    Raises:
        ConflatedPredicateError: If a node mixes an operator with leaf keys
        RuleValidationError: For unknown keys or badly typed values
    """
    if data is None:
        return LeafPredicate()
    if not isinstance(data, Mapping):
        raise RuleValidationError(f"{path} must be a mapping, got {type(data).__name__}")

    unknown_keys = set(data) - _LEAF_KEYS - _COMBINATOR_KEYS
    if unknown_keys:
        raise RuleValidationError(f"unknown keys in {path}: {', '.join(sorted(unknown_keys))}")

    combinator_keys = _COMBINATOR_KEYS & set(data)
    if not combinator_keys:
        return _parse_leaf(data, path)

    leaf_keys = sorted(set(data) & _LEAF_KEYS)
    if leaf_keys:
        raise ConflatedPredicateError(
            f"{path} sets both an operator and search criteria ({', '.join(leaf_keys)}); "
            f"move the criteria into a condition"
        )

    if "operator" not in data:
        raise RuleValidationError(f"{path}.conditions requires an operator")

    raw_conditions = data.get("conditions") or []
    if not isinstance(raw_conditions, list):
        raise RuleValidationError(f"{path}.conditions must be a list")

    conditions: List[SearchPredicate] = [
        parse_predicate(condition, f"{path}.conditions[{index}]")
        for index, condition in enumerate(raw_conditions)
    ]
    return Combinator(operator=data["operator"], conditions=tuple(conditions))


def describe_predicate(predicate: SearchPredicate) -> Dict[str, Any]:
    """Render a predicate as plain data, for debug logging."""
    if isinstance(predicate, Combinator):
        return {
            "operator": str(getattr(predicate.operator, "value", predicate.operator)),
            "conditions": [describe_predicate(c) for c in predicate.conditions],
        }
    return {f.name: getattr(predicate, f.name) for f in fields(predicate) if getattr(predicate, f.name)}
