"""Run a rule against a mailbox session.

compile -> search -> window -> fetch (structure, then batched content)
-> assemble. Each step is awaited in turn; a failure aborts the rule
with an error naming the stage that failed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from . import actions
from .assembler import DomainMessage
from .compiler import compile_search
from .exceptions import FetchError, SearchBuildError, SearchExecutionError
from .fetcher import fetch_messages_for_window
from .output import render_messages
from .rules import Rule, describe_rule
from .session import MailboxSession
from .windower import resolve_window

logger = logging.getLogger(__name__)


@dataclass
class RuleOutcome:
    """What processing one rule produced."""
    rule: Rule
    messages: List[DomainMessage] = field(default_factory=list)
    rendered: str = ""
    actions_executed: bool = False


async def fetch_messages(session: MailboxSession, rule: Rule) -> List[DomainMessage]:
    """Fetch the messages a rule selects, newest first.

    Returns an empty list when the search matches nothing.

    Raises:
        SearchBuildError: If the search criteria cannot be compiled
        SearchExecutionError: If the SEARCH round trip fails
        FetchError: If the UID, structure or content fetch fails
    """
    logger.debug(f"Processing rule: {describe_rule(rule)}")
    try:
        query, options = compile_search(rule.search, rule.pagination)
    except Exception as e:
        raise SearchBuildError(f"failed to build search criteria: {e!s}") from e

    loop = asyncio.get_event_loop()
    try:
        matches = await loop.run_in_executor(None, lambda: session.search(query, options))
    except Exception as e:
        logger.error(f"Search for rule {rule.name!r} failed", exc_info=True)
        raise SearchExecutionError(f"failed to execute search: {e!s}") from e

    logger.info(
        f"Rule {rule.name!r}: server reported {matches.count} matches, listed {len(matches.seq_nums)}"
    )

    try:
        window = await resolve_window(session, matches, rule.pagination)
        if window is None:
            return []
        return await fetch_messages_for_window(session, window, rule.output)
    except Exception as e:
        raise FetchError(f"failed to fetch messages: {e!s}") from e


async def process_rule(
    session: MailboxSession,
    rule: Rule,
    *,
    execute_actions: bool = False,
    output_format: Optional[str] = None,
) -> RuleOutcome:
    """Fetch, render and optionally act on the messages of one rule.

    Args:
        session: Connected mailbox session
        rule: Rule to process
        execute_actions: Run the rule's actions on the fetched messages
        output_format: Override the rule's output format

    Returns:
        RuleOutcome with the messages and their rendering
    """
    messages = await fetch_messages(session, rule)
    logger.info(f"Rule {rule.name!r}: fetched {len(messages)} messages")

    outcome = RuleOutcome(
        rule=rule,
        messages=messages,
        rendered=render_messages(messages, rule.output.with_format(output_format)),
    )

    if rule.actions.is_empty() or not messages:
        return outcome
    if not execute_actions:
        logger.info(f"Rule {rule.name!r} has actions; enable write operations to execute them")
        return outcome

    await actions.execute_actions(session, messages, rule.actions)
    outcome.actions_executed = True
    return outcome
