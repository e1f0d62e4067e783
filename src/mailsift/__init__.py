"""mailsift - declarative YAML rules for searching and processing IMAP mail.

Rules compile into IMAP searches; matches are paged newest-first, fetched
in two batched round trips (structure, then content) and rendered or acted
upon.
"""

from . import cli
from .compiler import SearchOptions, SearchQuery, compile_search
from .processor import fetch_messages, process_rule
from .rules import Rule, load_rules


def main() -> None:
    """Main entry point for the package."""
    cli.main()


__all__ = [
    'main',
    'cli',
    'Rule',
    'SearchOptions',
    'SearchQuery',
    'compile_search',
    'fetch_messages',
    'load_rules',
    'process_rule',
]
