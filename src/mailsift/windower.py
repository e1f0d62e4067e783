"""Select the page of search matches to fetch.

Sequence numbers are assigned in arrival order, while pagination counts
from the most recent message: offset 0 is the newest match. A window is
therefore taken from the end of the ascending match list and returned
newest first.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .rules import PaginationSpec
from .session import MailboxSession, SearchResult

logger = logging.getLogger(__name__)

# What the windower consumes: listed sequence numbers and/or a reported count
RawMatchResult = SearchResult


@dataclass(frozen=True)
class MessageWindow:
    """Sequence numbers to fetch, newest first, and the total number of matches."""
    seq_nums: Tuple[int, ...]
    total_found: int


def total_found(matches: RawMatchResult) -> int:
    """The server-reported count when positive, else the number of listed matches."""
    if matches.count is not None and matches.count > 0:
        return matches.count
    return len(matches.seq_nums)


def window_sequence_numbers(seq_nums: Sequence[int], pagination: PaginationSpec) -> List[int]:
    """Apply limit and offset to an ascending list of sequence numbers.

    Returns the selected sequence numbers newest first. An offset beyond
    the end of the list is clamped, which yields an empty window.

    >>> window_sequence_numbers(list(range(1, 21)), PaginationSpec(limit=5, offset=3))
    [17, 16, 15, 14, 13]
    """
    length = len(seq_nums)
    limit = min(pagination.limit or length, length)

    offset = pagination.offset
    if offset > length:
        logger.warning(f"Offset {offset} exceeds {length} matches, no messages will be fetched")
        offset = length

    start_index = length - 1 - offset
    end_index = max(0, start_index - limit + 1)

    if not 0 <= start_index < length:
        logger.warning(
            f"Invalid start index {start_index} for {length} matches (offset {offset}), "
            f"no messages will be fetched"
        )
        return []

    logger.debug(f"Window indices {start_index}..{end_index}, will fetch {start_index - end_index + 1}")
    return [seq_nums[index] for index in range(start_index, end_index - 1, -1)]


async def resolve_window(
    session: MailboxSession,
    matches: RawMatchResult,
    pagination: PaginationSpec,
) -> Optional[MessageWindow]:
    """Turn a search result into the window of messages to fetch.

    Returns None when nothing matched or the window is empty. When the
    server reported a count but listed no sequence numbers, the window is
    computed as a sequence range ending at the newest match and the
    sequence numbers are materialised with a UID-only fetch.
    """
    found = total_found(matches)
    if found == 0:
        logger.info("Search matched no messages")
        return None

    if not matches.seq_nums:
        return await _count_only_window(session, found, pagination)

    seq_nums = window_sequence_numbers(sorted(matches.seq_nums), pagination)
    if not seq_nums:
        return None
    return MessageWindow(seq_nums=tuple(seq_nums), total_found=found)


async def _count_only_window(
    session: MailboxSession,
    found: int,
    pagination: PaginationSpec,
) -> Optional[MessageWindow]:
    limit = min(pagination.limit or found, found)
    offset = pagination.offset
    if offset >= found:
        logger.warning(f"Offset {offset} exceeds {found} matches, no messages will be fetched")
        return None

    high_seq = found - offset
    low_seq = max(1, high_seq - limit + 1)
    logger.debug(f"Server reported {found} matches without listing them, fetching UIDs for {low_seq}:{high_seq}")

    loop = asyncio.get_event_loop()
    pairs = await loop.run_in_executor(None, lambda: session.fetch_uids(low_seq, high_seq))

    seq_nums = [seq_num for seq_num, _uid in sorted(pairs, reverse=True)]
    if not seq_nums:
        return None
    return MessageWindow(seq_nums=tuple(seq_nums), total_found=found)
