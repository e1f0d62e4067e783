"""Execute rule actions on fetched messages.

Actions run in a fixed order: add flags, remove flags, copy, export, then
either move or delete. A move already removes the messages from the
mailbox, so delete is skipped when both are configured. All mutations
address the messages by one UID list built up front.
"""

import asyncio
import logging
import mailbox
import re
from pathlib import Path
from typing import Dict, List, Sequence

from .assembler import DomainMessage
from .exceptions import ActionError
from .predicates import normalize_flag
from .rules import ActionConfig, ExportConfig, MoveToTrash, PermanentDelete
from .session import MailboxSession

logger = logging.getLogger(__name__)

DEFAULT_EML_TEMPLATE = "message-{uid}.eml"
DEFAULT_MBOX_FILENAME = "messages.mbox"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w.@+-]+")


async def execute_actions(
    session: MailboxSession,
    messages: Sequence[DomainMessage],
    actions: ActionConfig,
) -> None:
    """Apply the configured actions to the given messages.

    Raises:
        ActionError: Naming the first action that failed
    """
    if actions.is_empty() or not messages:
        return

    uids = [message.uid for message in messages]
    loop = asyncio.get_event_loop()
    logger.info(f"Executing actions on {len(uids)} messages")

    if actions.flags_add:
        flags = [normalize_flag(flag) for flag in actions.flags_add]
        logger.debug(f"Adding flags {flags}")
        await _run(loop, "add flags", lambda: session.add_flags(uids, flags))

    if actions.flags_remove:
        flags = [normalize_flag(flag) for flag in actions.flags_remove]
        logger.debug(f"Removing flags {flags}")
        await _run(loop, "remove flags", lambda: session.remove_flags(uids, flags))

    if actions.copy_to:
        logger.debug(f"Copying messages to {actions.copy_to}")
        await _run(loop, f"copy to {actions.copy_to}", lambda: session.copy(uids, actions.copy_to))

    if actions.export is not None:
        raw_messages = await _run(loop, "fetch messages for export", lambda: session.fetch_full_messages(uids))
        try:
            export_messages(messages, raw_messages, actions.export)
        except OSError as e:
            logger.error(f"Export failed: {e!s}", exc_info=True)
            raise ActionError(f"failed to export messages: {e!s}") from e

    if actions.move_to:
        logger.debug(f"Moving messages to {actions.move_to}")
        await _run(loop, f"move to {actions.move_to}", lambda: session.move(uids, actions.move_to))
        if actions.delete is not None:
            logger.info("Messages were moved, skipping delete")
        return

    if isinstance(actions.delete, MoveToTrash):
        trash = await _run(loop, "find trash mailbox", session.trash_mailbox)
        logger.debug(f"Moving messages to trash mailbox {trash}")
        await _run(loop, f"move to {trash}", lambda: session.move(uids, trash))
    elif isinstance(actions.delete, PermanentDelete):
        logger.debug("Deleting messages permanently")
        await _run(loop, "delete", lambda: session.delete(uids))


async def _run(loop, action: str, call):
    try:
        return await loop.run_in_executor(None, call)
    except Exception as e:
        logger.error(f"Action {action} failed: {e!s}", exc_info=True)
        raise ActionError(f"failed to {action}: {e!s}") from e


def export_filename(message: DomainMessage, template: str) -> str:
    """Expand a filename template using {uid}, {seq}, {subject} and {date}."""
    values = {
        "uid": message.uid,
        "seq": message.seq_num,
        "subject": _UNSAFE_FILENAME_CHARS.sub("_", message.subject).strip("_") or "no-subject",
        "date": message.date.strftime("%Y-%m-%d") if message.date else "undated",
    }
    try:
        filename = template.format_map(values)
    except (KeyError, IndexError, ValueError) as e:
        raise ActionError(f"invalid export filename template {template!r}: {e!s}") from e
    return filename.replace("/", "_")


def export_messages(
    messages: Sequence[DomainMessage],
    raw_messages: Dict[int, bytes],
    config: ExportConfig,
) -> List[Path]:
    """Write messages to disk as .eml files or into one mbox file.

    Messages whose source could not be fetched are skipped with a warning.

    Returns:
        Paths written
    """
    directory = Path(config.directory)
    directory.mkdir(parents=True, exist_ok=True)

    exportable = []
    for message in messages:
        raw = raw_messages.get(message.uid)
        if not raw:
            logger.warning(f"Message UID {message.uid} has no content, skipping export")
            continue
        exportable.append((message, raw))

    if config.format == "mbox":
        path = directory / (config.filename_template or DEFAULT_MBOX_FILENAME)
        box = mailbox.mbox(str(path))
        box.lock()
        try:
            for _message, raw in exportable:
                box.add(raw)
            box.flush()
        finally:
            box.unlock()
            box.close()
        logger.info(f"Exported {len(exportable)} messages to {path}")
        return [path]

    written = []
    for message, raw in exportable:
        path = directory / export_filename(message, config.filename_template or DEFAULT_EML_TEMPLATE)
        path.write_bytes(raw)
        logger.debug(f"Exported message UID {message.uid} to {path}")
        written.append(path)
    logger.info(f"Exported {len(written)} messages to {directory}")
    return written
