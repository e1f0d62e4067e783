"""Exception hierarchy for rule validation, mailbox access and actions.

Validation errors are raised before any network call is made. Mailbox
errors wrap the underlying protocol exception with the pipeline stage
that failed. Action errors name the action that could not be completed.
"""


class MailsiftError(Exception):
    """Base class for all errors raised by mailsift."""

    pass


# Validation errors


class RuleValidationError(MailsiftError):
    """Raised when a rule definition is malformed.

    This includes missing names, unknown keys, invalid output projections
    and invalid action blocks.
    """

    pass


class PredicateValidationError(RuleValidationError):
    """Raised when a search predicate cannot be compiled."""

    pass


class EmptyConditionListError(PredicateValidationError):
    """Raised when an AND/OR/NOT combinator has no conditions."""

    def __init__(self, operator: str) -> None:
        self.operator = operator
        super().__init__(f"empty conditions list for {operator.upper()} operator")


class ArityViolationError(PredicateValidationError):
    """Raised when a NOT combinator has more than one condition."""

    def __init__(self, operator: str, count: int) -> None:
        self.operator = operator
        self.count = count
        super().__init__(
            f"operator '{operator}' can only have one condition, but {count} were provided"
        )


class UnknownOperatorError(PredicateValidationError):
    """Raised when a combinator uses an operator other than and/or/not."""

    def __init__(self, operator: str) -> None:
        self.operator = operator
        super().__init__(f"invalid operator: {operator} (must be 'and', 'or', or 'not')")


class ConflatedPredicateError(PredicateValidationError):
    """Raised when a search node sets both an operator and leaf criteria."""

    pass


class DateParseError(PredicateValidationError):
    """Raised when a date criterion matches none of the supported formats."""

    def __init__(self, field: str, value: str) -> None:
        self.field = field
        self.value = value
        super().__init__(f"invalid '{field}' date: could not parse date: {value}")


class SizeParseError(PredicateValidationError):
    """Raised when a size criterion is not of the form 100B, 10K, 5M or 1G."""

    def __init__(self, field: str, value: str) -> None:
        self.field = field
        self.value = value
        super().__init__(
            f"invalid '{field}' size: {value} (expected format: 100B, 10K, 5M, 1G)"
        )


class FlagError(PredicateValidationError):
    """Raised when a flag name is neither a known flag nor a valid keyword."""

    def __init__(self, field: str, value: str) -> None:
        self.field = field
        self.value = value
        super().__init__(f"invalid flag in '{field}' list: {value}")


class OutputConfigError(RuleValidationError):
    """Raised when the output section of a rule is invalid."""

    pass


class ActionConfigError(RuleValidationError):
    """Raised when the actions section of a rule is invalid."""

    pass


# Protocol errors


class MailboxError(MailsiftError):
    """Base class for failures talking to the mailbox."""

    pass


class MailboxConnectionError(MailboxError):
    """Raised when IMAP connection, login or mailbox selection fails.

    This includes network connectivity issues, invalid credentials,
    server unavailability, or SSL/TLS handshake failures.
    """

    pass


class SearchBuildError(MailboxError):
    """Raised when the search criteria of a rule cannot be built."""

    pass


class SearchExecutionError(MailboxError):
    """Raised when the IMAP SEARCH round trip fails."""

    pass


class FetchError(MailboxError):
    """Raised when a structure, UID or content fetch fails."""

    pass


class ActionError(MailsiftError):
    """Raised when a post-match action (flag, copy, move, delete, export) fails."""

    pass
