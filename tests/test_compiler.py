"""Unit tests for compiling predicates into IMAP search queries."""

import unittest
from datetime import date, datetime, timedelta

from mailsift.compiler import (
    SearchOptions,
    SearchQuery,
    UidRange,
    combine_and,
    compile_search,
    format_imap_date,
    quote_imap_string,
)
from mailsift.exceptions import (
    ArityViolationError,
    DateParseError,
    EmptyConditionListError,
    SizeParseError,
    UnknownOperatorError,
)
from mailsift.predicates import Combinator, HeaderMatch, LeafPredicate, Operator
from mailsift.rules import PaginationSpec

NOW = datetime(2024, 3, 10, 15, 45)


def compile_only(predicate, pagination=None):
    query, _ = compile_search(predicate, pagination, now=NOW)
    return query


class TestLeafCompilation(unittest.TestCase):
    """Test translation of leaf criteria."""

    def test_empty_leaf_matches_all(self):
        query = compile_only(LeafPredicate())
        self.assertEqual(query, SearchQuery())
        self.assertEqual(query.to_imap(), "ALL")
        self.assertEqual(query.to_search_tokens(), [b"ALL"])

    def test_headers(self):
        query = compile_only(LeafPredicate(
            from_="alice@example.com",
            to="bob@example.com",
            subject="Weekly",
            subject_contains="report",
            header=HeaderMatch("X-Mailer", "Thunderbird"),
        ))
        self.assertEqual(query.headers, (
            HeaderMatch("From", "alice@example.com"),
            HeaderMatch("To", "bob@example.com"),
            HeaderMatch("Subject", "Weekly"),
            HeaderMatch("Subject", "report"),
            HeaderMatch("X-Mailer", "Thunderbird"),
        ))
        self.assertEqual(
            query.to_imap(),
            "FROM alice@example.com TO bob@example.com SUBJECT Weekly SUBJECT report HEADER X-Mailer Thunderbird",
        )

    def test_body_text_and_sizes(self):
        query = compile_only(LeafPredicate(
            body_contains="invoice due",
            text="urgent",
            larger_than="10K",
            smaller_than="5M",
        ))
        self.assertEqual(query.body, ("invoice due",))
        self.assertEqual(query.text, ("urgent",))
        self.assertEqual(query.larger, 10240)
        self.assertEqual(query.smaller, 5242880)
        self.assertEqual(query.to_imap(), 'BODY "invoice due" TEXT urgent LARGER 10240 SMALLER 5242880')

    def test_flags_are_normalized(self):
        query = compile_only(LeafPredicate(flags_has=("seen", "CustomTag"), flags_not_has=("flagged", "recent")))
        self.assertEqual(query.flags, ("\\Seen", "CustomTag"))
        self.assertEqual(query.not_flags, ("\\Flagged", "\\Recent"))
        self.assertEqual(query.to_imap(), "SEEN KEYWORD CustomTag UNFLAGGED OLD")

    def test_since_and_before(self):
        query = compile_only(LeafPredicate(since="2024-01-01", before="2024-02-01"))
        self.assertEqual(query.since, datetime(2024, 1, 1))
        self.assertEqual(query.before, datetime(2024, 2, 1))
        self.assertEqual(query.to_imap(), "SINCE 01-Jan-2024 BEFORE 01-Feb-2024")

    def test_on_spans_the_whole_day(self):
        query = compile_only(LeafPredicate(on="2024-02-29T18:00:00+05:00"))
        self.assertEqual(query.since.date(), date(2024, 2, 29))
        self.assertEqual((query.since.hour, query.since.minute), (0, 0))
        self.assertEqual(query.before - query.since, timedelta(days=1))
        self.assertEqual(query.since.utcoffset(), timedelta(hours=5))

    def test_on_overrides_since_and_before(self):
        query = compile_only(LeafPredicate(since="2023-01-01", before="2025-01-01", on="2024-01-15"))
        self.assertEqual(query.since, datetime(2024, 1, 15))
        self.assertEqual(query.before, datetime(2024, 1, 16))

    def test_within_days(self):
        query = compile_only(LeafPredicate(within_days=7))
        self.assertEqual(query.since, datetime(2024, 3, 3))
        self.assertIsNone(query.before)

    def test_invalid_date_and_size(self):
        with self.assertRaises(DateParseError):
            compile_search(LeafPredicate(since="someday"))
        with self.assertRaises(SizeParseError):
            compile_search(LeafPredicate(larger_than="10KB"))


class TestDateFormatEquivalence(unittest.TestCase):
    """Every supported spelling of the same day compiles to the same day bounds."""

    def test_on_bounds_match_across_formats(self):
        spellings = (
            "2024-01-15",
            "2024/01/15",
            "01/15/2024",
            "15/01/2024",
            "Jan 15, 2024",
            "15 Jan 2024",
            "2024-01-15T09:00:00Z",
            "Mon, 15 Jan 2024 09:00:00 GMT",
            "15 Jan 24 09:00 GMT",
        )
        reference = compile_only(LeafPredicate(on="2024-01-15"))
        for spelling in spellings:
            with self.subTest(spelling=spelling):
                query = compile_only(LeafPredicate(on=spelling))
                self.assertEqual(query.since.date(), reference.since.date())
                self.assertEqual(query.before.date(), reference.before.date())
                self.assertEqual(query.to_imap(), "SINCE 15-Jan-2024 BEFORE 16-Jan-2024")

    def test_date_only_formats_give_identical_bounds(self):
        bounds = {
            compile_only(LeafPredicate(since=value, before=value)).since
            for value in ("2024-01-15", "2024/01/15", "01/15/2024", "15/01/2024", "Jan 15, 2024", "15 Jan 2024")
        }
        self.assertEqual(bounds, {datetime(2024, 1, 15)})


class TestCombinators(unittest.TestCase):
    """Test AND, OR and NOT compilation."""

    def test_and_merges_conditions(self):
        a = LeafPredicate(from_="alice@example.com", since="2024-01-01", larger_than="1K")
        b = LeafPredicate(subject="report", since="2024-02-01", larger_than="2K", flags_has=("seen",))
        query = compile_only(Combinator(Operator.AND, (a, b)))

        self.assertEqual(query.headers, (HeaderMatch("From", "alice@example.com"), HeaderMatch("Subject", "report")))
        self.assertEqual(query.since, datetime(2024, 2, 1))
        self.assertEqual(query.larger, 2048)
        self.assertEqual(query.flags, ("\\Seen",))
        self.assertEqual(query, combine_and(compile_only(a), compile_only(b)))

    def test_and_keeps_every_condition_of_both_sides(self):
        a = compile_only(LeafPredicate(before="2024-05-01", smaller_than="1M", body_contains="x"))
        b = compile_only(LeafPredicate(before="2024-04-01", smaller_than="2M", body_contains="y"))
        merged = combine_and(a, b)
        self.assertEqual(merged.before, datetime(2024, 4, 1))
        self.assertEqual(merged.smaller, 1024 * 1024)
        self.assertEqual(merged.body, ("x", "y"))

    def test_and_of_one(self):
        leaf = LeafPredicate(text="hello")
        self.assertEqual(compile_only(Combinator(Operator.AND, (leaf,))), compile_only(leaf))

    def test_or_of_one_collapses(self):
        leaf = LeafPredicate(from_="a@example.com")
        self.assertEqual(compile_only(Combinator(Operator.OR, (leaf,))), compile_only(leaf))

    def test_or_pairs_children(self):
        a = LeafPredicate(from_="a@example.com")
        b = LeafPredicate(from_="b@example.com")
        c = LeafPredicate(from_="c@example.com")
        query = compile_only(Combinator(Operator.OR, (a, b, c)))

        self.assertEqual(len(query.or_), 2)
        self.assertEqual(query.or_[0], (compile_only(a), compile_only(b)))
        self.assertEqual(query.or_[1], (compile_only(c), compile_only(c)))
        self.assertEqual(
            query.to_imap(),
            "OR (FROM a@example.com) (FROM b@example.com) OR (FROM c@example.com) (FROM c@example.com)",
        )
        self.assertEqual(query.to_search_tokens(), [
            b"OR", b"(FROM", b"a@example.com)", b"(FROM", b"b@example.com)",
            b"OR", b"(FROM", b"c@example.com)", b"(FROM", b"c@example.com)",
        ])

    def test_or_with_even_children(self):
        leaves = tuple(LeafPredicate(subject=str(i)) for i in range(4))
        query = compile_only(Combinator(Operator.OR, leaves))
        self.assertEqual(len(query.or_), 2)
        self.assertEqual(query.or_[1][0].headers, (HeaderMatch("Subject", "2"),))
        self.assertEqual(query.or_[1][1].headers, (HeaderMatch("Subject", "3"),))

    def test_not_wraps_child(self):
        leaf = LeafPredicate(subject="spam")
        query = compile_only(Combinator(Operator.NOT, (leaf,)))
        self.assertEqual(query.not_, (compile_only(leaf),))
        self.assertEqual(query.to_imap(), "NOT (SUBJECT spam)")

    def test_not_with_two_children_fails(self):
        with self.assertRaises(ArityViolationError):
            compile_search(Combinator(Operator.NOT, (LeafPredicate(from_="a"), LeafPredicate(from_="b"))))

    def test_not_without_children_fails(self):
        with self.assertRaises(EmptyConditionListError) as ctx:
            compile_search(Combinator(Operator.NOT, ()))
        self.assertIn("NOT", str(ctx.exception))

    def test_empty_and_or(self):
        for operator in (Operator.AND, Operator.OR):
            with self.subTest(operator=operator):
                with self.assertRaises(EmptyConditionListError):
                    compile_search(Combinator(operator, ()))

    def test_unknown_operator(self):
        with self.assertRaises(UnknownOperatorError):
            compile_search(Combinator("nand", (LeafPredicate(),)))

    def test_nested_error_aborts_compilation(self):
        tree = Combinator(Operator.AND, (
            LeafPredicate(from_="a"),
            Combinator(Operator.OR, (LeafPredicate(since="garbage"), LeafPredicate(to="b"))),
        ))
        with self.assertRaises(DateParseError):
            compile_search(tree)

    def test_nested_structure_renders(self):
        tree = Combinator(Operator.AND, (
            LeafPredicate(flags_not_has=("seen",)),
            Combinator(Operator.OR, (
                LeafPredicate(from_="boss@example.com"),
                Combinator(Operator.NOT, (LeafPredicate(subject="newsletter"),)),
            )),
        ))
        query = compile_only(tree)
        self.assertEqual(query.to_imap(), "UNSEEN OR (FROM boss@example.com) (NOT (SUBJECT newsletter))")


class TestPagination(unittest.TestCase):
    """Test search options and UID ranges derived from pagination."""

    def test_no_pagination(self):
        _, options = compile_search(LeafPredicate(), None)
        self.assertEqual(options, SearchOptions())
        self.assertFalse(options.is_extended)

    def test_limit_requests_all_and_count(self):
        _, options = compile_search(LeafPredicate(), PaginationSpec(limit=10))
        self.assertTrue(options.return_all)
        self.assertTrue(options.return_count)
        self.assertEqual(options.return_items(), ["ALL", "COUNT"])

    def test_zero_limit_uses_plain_search(self):
        _, options = compile_search(LeafPredicate(), PaginationSpec(offset=5))
        self.assertFalse(options.is_extended)

    def test_uid_ranges(self):
        cases = (
            (PaginationSpec(after_uid=100, before_uid=200), UidRange(101, 199), "UID 101:199"),
            (PaginationSpec(after_uid=100), UidRange(101, None), "UID 101:*"),
            (PaginationSpec(before_uid=200), UidRange(1, 199), "UID 1:199"),
        )
        for pagination, expected, rendered in cases:
            with self.subTest(pagination=pagination):
                query = compile_only(LeafPredicate(), pagination)
                self.assertEqual(query.uid_ranges, (expected,))
                self.assertEqual(query.to_imap(), rendered)

    def test_uid_range_is_anded_with_search(self):
        query = compile_only(LeafPredicate(from_="a@example.com"), PaginationSpec(after_uid=5))
        self.assertEqual(query.to_imap(), "FROM a@example.com UID 6:*")

    def test_uid_range_applies_only_at_top_level(self):
        tree = Combinator(Operator.OR, (LeafPredicate(from_="a"), LeafPredicate(from_="b")))
        query = compile_only(tree, PaginationSpec(after_uid=5))
        self.assertEqual(query.uid_ranges, (UidRange(6, None),))
        for left, right in query.or_:
            self.assertEqual(left.uid_ranges, ())
            self.assertEqual(right.uid_ranges, ())


class TestRendering(unittest.TestCase):

    def test_format_imap_date(self):
        self.assertEqual(format_imap_date(date(2024, 9, 5)), "05-Sep-2024")

    def test_quoting(self):
        self.assertEqual(quote_imap_string("simple"), "simple")
        self.assertEqual(quote_imap_string("two words"), '"two words"')
        self.assertEqual(quote_imap_string('say "hi"'), '"say \\"hi\\""')
        self.assertEqual(quote_imap_string(""), '""')

    def test_search_tokens(self):
        query = SearchQuery(
            since=datetime(2024, 1, 1),
            headers=(HeaderMatch("X-Tag", "a b"),),
            flags=("\\Answered",),
            larger=1024,
            uid_ranges=(UidRange(11),),
            not_=(SearchQuery(text=("x",)),),
        )
        self.assertEqual(query.to_search_tokens(), [
            b"SINCE", b"01-Jan-2024",
            b"HEADER", b"X-Tag", b'"a b"',
            b"ANSWERED",
            b"LARGER", b"1024",
            b"UID", b"11:*",
            b"NOT", b"(TEXT", b"x)",
        ])

    def test_single_key_group(self):
        query = SearchQuery(not_=(SearchQuery(flags=("\\Seen",)),))
        self.assertEqual(query.to_search_tokens(), [b"NOT", b"(SEEN)"])

    def test_non_ascii_values_stay_separate_tokens(self):
        query = SearchQuery(headers=(HeaderMatch("From", "bob"), HeaderMatch("Subject", "Grüße")))
        self.assertEqual(query.to_search_tokens(), [b"FROM", b"bob", b"SUBJECT", "Grüße".encode("utf-8")])

    def test_group_ending_in_non_ascii_value_is_closed_with_all(self):
        query = SearchQuery(or_=((
            SearchQuery(headers=(HeaderMatch("Subject", "Grüße"),)),
            SearchQuery(text=("café",), flags=("\\Flagged",)),
        ),))
        self.assertEqual(query.to_search_tokens(), [
            b"OR",
            b"(SUBJECT", "Grüße".encode("utf-8"), b"ALL)",
            b"(TEXT", "café".encode("utf-8"), b"FLAGGED)",
        ])


if __name__ == '__main__':
    unittest.main()
