"""Two-phase message retrieval.

Phase 1 fetches envelope, flags and body structure for the whole window
in one round trip. The structure of each message then decides which MIME
parts the output projection needs, and phase 2 fetches the union of those
parts for all messages in a single round trip. Returned fragments are
matched back to their message by (sequence number, section).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .assembler import DomainMessage, assemble_message
from .exceptions import FetchError
from .rules import ContentField, OutputProjection
from .session import BodyStructure, MailboxSession
from .windower import MessageWindow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartRequirement:
    """A MIME part whose content has to be fetched."""
    path: Tuple[int, ...]
    type: str
    subtype: str
    filename: str = ""
    charset: str = ""
    encoding: str = ""

    @property
    def section(self) -> str:
        """IMAP body section of the part, e.g. "2.1"."""
        return ".".join(str(index) for index in self.path)

    @property
    def media_type(self) -> str:
        return f"{self.type}/{self.subtype}"


def _requirement(path: Tuple[int, ...], leaf: BodyStructure) -> PartRequirement:
    return PartRequirement(
        path=path,
        type=leaf.type.lower(),
        subtype=leaf.subtype.lower(),
        filename=leaf.filename,
        charset=leaf.charset,
        encoding=leaf.encoding,
    )


def compute_part_requirements(
    structure: Optional[BodyStructure],
    projection: OutputProjection,
) -> List[PartRequirement]:
    """Select the parts of one message that the projection needs.

    The body field takes the first part of its media type (text/plain by
    default). The mime_parts field takes the first text/plain part in
    text_only mode, every part in full mode, and parts matching its type
    list in filter mode. Parts selected by both fields are fetched once;
    the result follows structure order.
    """
    if structure is None or not projection.wants_content:
        return []

    leaves = list(structure.walk_leaves())
    selected = set()

    body = projection.get_field("body")
    if body is not None:
        wanted = (body.content.type if body.content and body.content.type else "text/plain").lower()
        matcher = ContentField(mode="filter", types=(wanted,))
        for path, leaf in leaves:
            if matcher.should_include(leaf.media_type):
                selected.add(path)
                break

    mime_parts = projection.get_field("mime_parts")
    if mime_parts is not None:
        content = mime_parts.content or ContentField(mode="full")
        if content.mode == "text_only":
            for path, leaf in leaves:
                if leaf.media_type == "text/plain":
                    selected.add(path)
                    break
        else:
            for path, leaf in leaves:
                if content.should_include(leaf.media_type):
                    selected.add(path)

    return [_requirement(path, leaf) for path, leaf in leaves if path in selected]


def _section_key(section: str) -> Tuple[int, ...]:
    return tuple(int(index) for index in section.split("."))


async def fetch_messages_for_window(
    session: MailboxSession,
    window: MessageWindow,
    projection: OutputProjection,
) -> List[DomainMessage]:
    """Fetch and assemble every message of a window, newest first.

    Raises:
        FetchError: If the structure fetch or the batched content fetch fails
    """
    loop = asyncio.get_event_loop()
    seq_nums = list(window.seq_nums)

    try:
        records = await loop.run_in_executor(None, lambda: session.fetch_structure(seq_nums))
    except Exception as e:
        logger.error(f"Structure fetch failed: {e!s}", exc_info=True)
        raise FetchError(f"failed to fetch message structure: {e!s}") from e
    logger.debug(f"Fetched structure of {len(records)} messages")

    records_by_seq = {record.seq_num: record for record in records}
    requirements: Dict[int, List[PartRequirement]] = {}
    for seq_num in seq_nums:
        record = records_by_seq.get(seq_num)
        if record is None:
            logger.warning(f"Server returned no structure for message {seq_num}, skipping it")
            continue
        requirements[seq_num] = compute_part_requirements(record.body_structure, projection)

    needs_content = [seq_num for seq_num in seq_nums if requirements.get(seq_num)]
    content: Dict[Tuple[int, str], bytes] = {}
    if needs_content:
        sections = sorted(
            {requirement.section for seq_num in needs_content for requirement in requirements[seq_num]},
            key=_section_key,
        )
        logger.debug(f"Fetching sections {', '.join(sections)} for {len(needs_content)} messages")
        try:
            fragments = await loop.run_in_executor(
                None, lambda: session.fetch_content_sections(needs_content, sections)
            )
        except Exception as e:
            logger.error(f"Content fetch failed: {e!s}", exc_info=True)
            raise FetchError(f"failed to fetch message content: {e!s}") from e

        for fragment in fragments:
            content[(fragment.seq_num, fragment.section)] = fragment.data

    messages = []
    for seq_num in seq_nums:
        if seq_num not in requirements:
            continue
        parts = []
        for requirement in requirements[seq_num]:
            data = content.get((seq_num, requirement.section))
            if data is None:
                logger.warning(f"Missing content for part {requirement.section} of message {seq_num}")
                data = b""
            parts.append((requirement, data))
        messages.append(assemble_message(records_by_seq[seq_num], parts, window.total_found))
    return messages
