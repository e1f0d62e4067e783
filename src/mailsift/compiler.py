"""Compile search predicates into IMAP search queries.

The compiled form is a SearchQuery: a flat set of IMAP search keys that
are implicitly ANDed, plus nested NOT and OR sub-queries. It renders to an
IMAP SEARCH string (to_imap) for logging, or to the argument tokens sent
on the wire (to_search_tokens).
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, List, Optional, Tuple

from .exceptions import (
    ArityViolationError,
    EmptyConditionListError,
    FlagError,
    PredicateValidationError,
)
from .predicates import (
    Combinator,
    HeaderMatch,
    LeafPredicate,
    Operator,
    SearchPredicate,
    is_valid_flag,
    normalize_flag,
    parse_date,
    parse_size,
    resolve_operator,
    start_of_day,
)
from .rules import PaginationSpec

logger = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_HEADER_KEYS = {
    "from": "FROM",
    "to": "TO",
    "cc": "CC",
    "bcc": "BCC",
    "subject": "SUBJECT",
}

# System flag -> (search key when set, search key when not set)
_SYSTEM_FLAG_KEYS = {
    "\\seen": ("SEEN", "UNSEEN"),
    "\\answered": ("ANSWERED", "UNANSWERED"),
    "\\flagged": ("FLAGGED", "UNFLAGGED"),
    "\\deleted": ("DELETED", "UNDELETED"),
    "\\draft": ("DRAFT", "UNDRAFT"),
    "\\recent": ("RECENT", "OLD"),
}

_NEEDS_QUOTING = re.compile(r'[\s()"\\*%{\]]')


def format_imap_date(value: date) -> str:
    """Format a date as an IMAP search date (15-Jan-2024), independent of locale."""
    return f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year:04d}"


def quote_imap_string(value: str) -> str:
    """Return value as an IMAP atom, or as a quoted string when it needs one."""
    if value and not _NEEDS_QUOTING.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass(frozen=True)
class UidRange:
    """Inclusive UID range; stop None means the highest UID (*)."""
    start: int
    stop: Optional[int] = None

    def to_imap(self) -> str:
        return f"{self.start}:{'*' if self.stop is None else self.stop}"


@dataclass(frozen=True)
class SearchOptions:
    """RETURN options of an extended (ESEARCH) search."""
    return_all: bool = False
    return_count: bool = False

    def return_items(self) -> List[str]:
        items = []
        if self.return_all:
            items.append("ALL")
        if self.return_count:
            items.append("COUNT")
        return items

    @property
    def is_extended(self) -> bool:
        return bool(self.return_items())


def _later(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None or b is None:
        return a or b
    return b if b.date() > a.date() else a


def _earlier(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None or b is None:
        return a or b
    return b if b.date() < a.date() else a


@dataclass(frozen=True)
class SearchQuery:
    """An IMAP search query.

    All keys set on one query must match. ``not_`` holds negated
    sub-queries and ``or_`` holds pairs of sub-queries of which at least
    one must match; each entry is one more ANDed condition.
    """
    since: Optional[datetime] = None
    before: Optional[datetime] = None
    headers: Tuple[HeaderMatch, ...] = ()
    body: Tuple[str, ...] = ()
    text: Tuple[str, ...] = ()
    flags: Tuple[str, ...] = ()
    not_flags: Tuple[str, ...] = ()
    larger: int = 0
    smaller: int = 0
    uid_ranges: Tuple[UidRange, ...] = ()
    not_: Tuple["SearchQuery", ...] = ()
    or_: Tuple[Tuple["SearchQuery", "SearchQuery"], ...] = field(default_factory=tuple)

    def _keys(self) -> List[Tuple[str, Any]]:
        """List (search key, argument) pairs in rendering order.

        Arguments are None for argument-less keys, a str, an int, a date, a
        HeaderMatch for HEADER, a UidRange, a SearchQuery for NOT, or a pair
        of SearchQuery for OR.
        """
        keys: List[Tuple[str, Any]] = []
        if self.since is not None:
            keys.append(("SINCE", self.since.date()))
        if self.before is not None:
            keys.append(("BEFORE", self.before.date()))
        for header in self.headers:
            key = _HEADER_KEYS.get(header.name.lower())
            if key:
                keys.append((key, header.value))
            else:
                keys.append(("HEADER", header))
        for value in self.body:
            keys.append(("BODY", value))
        for value in self.text:
            keys.append(("TEXT", value))
        for flag in self.flags:
            system = _SYSTEM_FLAG_KEYS.get(flag.lower())
            keys.append((system[0], None) if system else ("KEYWORD", flag))
        for flag in self.not_flags:
            system = _SYSTEM_FLAG_KEYS.get(flag.lower())
            keys.append((system[1], None) if system else ("UNKEYWORD", flag))
        if self.larger:
            keys.append(("LARGER", self.larger))
        if self.smaller:
            keys.append(("SMALLER", self.smaller))
        for uid_range in self.uid_ranges:
            keys.append(("UID", uid_range))
        for negated in self.not_:
            keys.append(("NOT", negated))
        for pair in self.or_:
            keys.append(("OR", pair))
        return keys

    def to_imap(self) -> str:
        """Render as an IMAP SEARCH criteria string."""
        keys = self._keys()
        if not keys:
            return "ALL"

        tokens = []
        for key, argument in keys:
            if argument is None:
                tokens.append(key)
            elif isinstance(argument, date):
                tokens.append(f"{key} {format_imap_date(argument)}")
            elif isinstance(argument, int):
                tokens.append(f"{key} {argument}")
            elif isinstance(argument, HeaderMatch):
                tokens.append(f"HEADER {quote_imap_string(argument.name)} {quote_imap_string(argument.value)}")
            elif isinstance(argument, UidRange):
                tokens.append(f"UID {argument.to_imap()}")
            elif isinstance(argument, SearchQuery):
                tokens.append(f"NOT ({argument.to_imap()})")
            elif isinstance(argument, tuple):
                left, right = argument
                tokens.append(f"OR ({left.to_imap()}) ({right.to_imap()})")
            else:
                tokens.append(f"{key} {quote_imap_string(argument)}")
        return " ".join(tokens)

    def to_search_tokens(self) -> List[bytes]:
        """Render as the argument tokens of a SEARCH command.

        ASCII tokens go on the command line separated by spaces. A value
        with non-ASCII characters is left as raw UTF-8 so that imapclient
        sends it as a literal; the command then needs CHARSET UTF-8.
        Parentheses of NOT and OR groups are attached to the first and
        last token of the group.
        """
        keys = self._keys()
        if not keys:
            return [b"ALL"]

        tokens: List[bytes] = []
        for key, argument in keys:
            tokens.append(key.encode("ascii"))
            if argument is None:
                continue
            if isinstance(argument, date):
                tokens.append(format_imap_date(argument).encode("ascii"))
            elif isinstance(argument, int):
                tokens.append(str(argument).encode("ascii"))
            elif isinstance(argument, HeaderMatch):
                tokens.extend([_value_token(argument.name), _value_token(argument.value)])
            elif isinstance(argument, UidRange):
                tokens.append(argument.to_imap().encode("ascii"))
            elif isinstance(argument, SearchQuery):
                tokens.extend(_group(argument.to_search_tokens()))
            elif isinstance(argument, tuple):
                left, right = argument
                tokens.extend(_group(left.to_search_tokens()))
                tokens.extend(_group(right.to_search_tokens()))
            else:
                tokens.append(_value_token(argument))
        return tokens


def _value_token(value: str) -> bytes:
    if value.isascii():
        return quote_imap_string(value).encode("ascii")
    return value.encode("utf-8")


def _group(tokens: List[bytes]) -> List[bytes]:
    """Parenthesise a token list.

    A literal cannot carry the closing parenthesis, so a group that ends in
    a non-ASCII value is closed with an ALL key, which matches every message.
    """
    if not tokens[-1].isascii():
        tokens = tokens + [b"ALL"]
    grouped = list(tokens)
    grouped[0] = b"(" + grouped[0]
    grouped[-1] = grouped[-1] + b")"
    return grouped


def combine_and(base: SearchQuery, other: SearchQuery) -> SearchQuery:
    """Conjunction of two queries, merged field by field.

    The later since bound and the earlier before bound win, the larger
    lower size bound and the smaller upper size bound win, and every list
    of conditions is concatenated.
    """
    smaller = min(v for v in (base.smaller, other.smaller) if v) if (base.smaller or other.smaller) else 0
    return SearchQuery(
        since=_later(base.since, other.since),
        before=_earlier(base.before, other.before),
        headers=base.headers + other.headers,
        body=base.body + other.body,
        text=base.text + other.text,
        flags=base.flags + other.flags,
        not_flags=base.not_flags + other.not_flags,
        larger=max(base.larger, other.larger),
        smaller=smaller,
        uid_ranges=base.uid_ranges + other.uid_ranges,
        not_=base.not_ + other.not_,
        or_=base.or_ + other.or_,
    )


def uid_range_for(pagination: PaginationSpec) -> Optional[UidRange]:
    """Translate exclusive after/before UID bounds into an inclusive UID range."""
    if pagination.after_uid and pagination.before_uid:
        return UidRange(pagination.after_uid + 1, pagination.before_uid - 1)
    if pagination.after_uid:
        return UidRange(pagination.after_uid + 1, None)
    if pagination.before_uid:
        return UidRange(1, pagination.before_uid - 1)
    return None


def compile_search(
    predicate: SearchPredicate,
    pagination: Optional[PaginationSpec] = None,
    *,
    now: Optional[datetime] = None,
) -> Tuple[SearchQuery, SearchOptions]:
    """Compile a predicate tree and pagination into a query and search options.

    Pagination only applies at the top level: a limit asks the server for
    the full match list and a count, and UID bounds add a UID range that is
    ANDed with the compiled predicate.

    Args:
        predicate: Root of the predicate tree
        pagination: Window of the rule, if any
        now: Reference time for within_days, defaults to the current local time

    Returns:
        Tuple of (SearchQuery, SearchOptions)

    Raises:
        PredicateValidationError: If the tree is invalid; nothing is returned
    """
    query = _compile(predicate, now or datetime.now())
    options = SearchOptions()

    if pagination is not None:
        if pagination.limit > 0:
            options = SearchOptions(return_all=True, return_count=True)
        uid_range = uid_range_for(pagination)
        if uid_range is not None:
            query = combine_and(query, SearchQuery(uid_ranges=(uid_range,)))

    logger.debug(f"Compiled search: {query.to_imap()} (return {options.return_items() or 'default'})")
    return query, options


def _compile(predicate: SearchPredicate, now: datetime) -> SearchQuery:
    if isinstance(predicate, Combinator):
        return _compile_combinator(predicate, now)
    return _compile_leaf(predicate, now)


def _compile_combinator(predicate: Combinator, now: datetime) -> SearchQuery:
    operator = resolve_operator(predicate.operator)
    conditions = predicate.conditions
    if not conditions:
        raise EmptyConditionListError(operator.value)

    if operator is Operator.AND:
        query = _compile(conditions[0], now)
        for condition in conditions[1:]:
            query = combine_and(query, _compile(condition, now))
        return query

    if operator is Operator.OR:
        if len(conditions) == 1:
            return _compile(conditions[0], now)
        pairs = []
        for index in range(0, len(conditions), 2):
            left = _compile(conditions[index], now)
            if index + 1 < len(conditions):
                right = _compile(conditions[index + 1], now)
            else:
                # odd trailing condition is paired with itself
                right = left
            pairs.append((left, right))
        return SearchQuery(or_=tuple(pairs))

    if len(conditions) > 1:
        raise ArityViolationError(operator.value, len(conditions))
    return SearchQuery(not_=(_compile(conditions[0], now),))


def _compile_leaf(leaf: LeafPredicate, now: datetime) -> SearchQuery:
    since = None
    before = None

    if leaf.since:
        since = parse_date(leaf.since, "since")
    if leaf.before:
        before = parse_date(leaf.before, "before")
    if leaf.on:
        day = start_of_day(parse_date(leaf.on, "on"))
        since = day
        before = day + timedelta(days=1)
    if leaf.within_days > 0:
        since = start_of_day(now - timedelta(days=leaf.within_days))

    headers = []
    for name, value in (
        ("From", leaf.from_),
        ("To", leaf.to),
        ("Cc", leaf.cc),
        ("Bcc", leaf.bcc),
        ("Subject", leaf.subject),
        ("Subject", leaf.subject_contains),
    ):
        if value:
            headers.append(HeaderMatch(name, value))
    if leaf.header is not None:
        if not leaf.header.name:
            raise PredicateValidationError("header name is required when using header search")
        headers.append(leaf.header)

    for flag in leaf.flags_has:
        if not is_valid_flag(flag):
            raise FlagError("has", flag)
    for flag in leaf.flags_not_has:
        if not is_valid_flag(flag):
            raise FlagError("not_has", flag)

    return SearchQuery(
        since=since,
        before=before,
        headers=tuple(headers),
        body=(leaf.body_contains,) if leaf.body_contains else (),
        text=(leaf.text,) if leaf.text else (),
        flags=tuple(normalize_flag(flag) for flag in leaf.flags_has),
        not_flags=tuple(normalize_flag(flag) for flag in leaf.flags_not_has),
        larger=parse_size(leaf.larger_than, "larger_than") if leaf.larger_than else 0,
        smaller=parse_size(leaf.smaller_than, "smaller_than") if leaf.smaller_than else 0,
    )
