"""Mailbox session interface and its IMAP implementation.

The pipeline talks to the mailbox through MailboxSession. Every method is
a single blocking round trip; the async pipeline runs them one at a time
in an executor. ImapMailboxSession implements the interface over
imapclient and converts its ENVELOPE and BODYSTRUCTURE responses into the
plain records defined here, so nothing past this module depends on the
protocol library.
"""

import email.errors
import email.header
import logging
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from imapclient import IMAPClient
from imapclient.response_parser import parse_message_list

from .compiler import SearchOptions, SearchQuery
from .config import ConnectionSettings
from .exceptions import MailboxConnectionError

logger = logging.getLogger(__name__)

# Server capabilities we're interested in logging
INTERESTING_CAPABILITIES = [
    'ESEARCH', 'MOVE', 'UIDPLUS', 'SPECIAL-USE', 'CONDSTORE', 'SORT', 'LITERAL+'
]

DEFAULT_TRASH_MAILBOX = "Trash"


# Protocol records


@dataclass(frozen=True)
class SearchResult:
    """Outcome of a SEARCH round trip.

    Attributes:
        seq_nums: Matching sequence numbers, ascending; may be empty when
            the server only reports a count
        count: Server-reported match count, None when not reported
    """
    seq_nums: Tuple[int, ...] = ()
    count: Optional[int] = None


@dataclass(frozen=True)
class Address:
    name: str = ""
    mailbox: str = ""
    host: str = ""

    @property
    def email(self) -> str:
        if self.host:
            return f"{self.mailbox}@{self.host}"
        return self.mailbox

    def formatted(self) -> str:
        if self.name:
            return f"{self.name} <{self.email}>"
        return self.email


@dataclass(frozen=True)
class Envelope:
    date: Optional[datetime] = None
    subject: str = ""
    from_: Tuple[Address, ...] = ()
    to: Tuple[Address, ...] = ()
    cc: Tuple[Address, ...] = ()
    bcc: Tuple[Address, ...] = ()
    message_id: str = ""


@dataclass(frozen=True)
class BodyStructure:
    """One node of a MIME structure tree.

    Multipart nodes have children and no encoding or size of their own;
    leaf nodes (including message/rfc822 parts, which are not descended
    into) have no children.
    """
    type: str
    subtype: str
    params: Mapping[str, str] = field(default_factory=dict)
    encoding: str = "7bit"
    size: int = 0
    disposition: str = ""
    filename: str = ""
    children: Tuple["BodyStructure", ...] = ()

    @property
    def media_type(self) -> str:
        return f"{self.type}/{self.subtype}".lower()

    @property
    def is_multipart(self) -> bool:
        return self.type.lower() == "multipart"

    @property
    def charset(self) -> str:
        return self.params.get("charset", "")

    def walk_leaves(self, path: Tuple[int, ...] = ()) -> Iterator[Tuple[Tuple[int, ...], "BodyStructure"]]:
        """Yield (part path, leaf) for every leaf in structure order.

        The root of a single-part message is part 1; children of a
        multipart are numbered from 1 below their parent's path.
        """
        if not self.is_multipart:
            yield (path or (1,)), self
            return
        for index, child in enumerate(self.children, start=1):
            yield from child.walk_leaves(path + (index,))


@dataclass(frozen=True)
class StructureRecord:
    """Envelope, flags and structure of one message, without content."""
    seq_num: int
    uid: int
    envelope: Envelope = field(default_factory=Envelope)
    flags: Tuple[str, ...] = ()
    size: int = 0
    body_structure: Optional[BodyStructure] = None


@dataclass(frozen=True)
class ContentFragment:
    """Raw bytes of one body section of one message."""
    seq_num: int
    section: str
    data: bytes


# Interface


class MailboxSession(ABC):
    """A connected, authenticated session with one selected mailbox.

    Search and fetch methods address messages by sequence number. Mutation
    methods address them by UID.
    """

    @abstractmethod
    def search(self, query: SearchQuery, options: SearchOptions) -> SearchResult:
        pass

    @abstractmethod
    def fetch_structure(self, seq_nums: Sequence[int]) -> List[StructureRecord]:
        """Fetch UID, flags, size, envelope and body structure; no content."""
        pass

    @abstractmethod
    def fetch_content_sections(self, seq_nums: Sequence[int], sections: Sequence[str]) -> List[ContentFragment]:
        """Fetch every given body section of every given message in one round trip."""
        pass

    @abstractmethod
    def fetch_uids(self, low_seq: int, high_seq: int) -> List[Tuple[int, int]]:
        """Return (sequence number, UID) pairs for an inclusive sequence range, ascending."""
        pass

    @abstractmethod
    def fetch_full_messages(self, uids: Sequence[int]) -> Dict[int, bytes]:
        """Return the complete RFC822 source of each message by UID."""
        pass

    @abstractmethod
    def add_flags(self, uids: Sequence[int], flags: Sequence[str]) -> None:
        pass

    @abstractmethod
    def remove_flags(self, uids: Sequence[int], flags: Sequence[str]) -> None:
        pass

    @abstractmethod
    def copy(self, uids: Sequence[int], mailbox: str) -> None:
        pass

    @abstractmethod
    def move(self, uids: Sequence[int], mailbox: str) -> None:
        pass

    @abstractmethod
    def delete(self, uids: Sequence[int]) -> None:
        """Mark messages \\Deleted and expunge them."""
        pass

    @abstractmethod
    def trash_mailbox(self) -> str:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


# imapclient response conversion


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def decode_header_value(value: Any) -> str:
    """Decode an RFC 2047 encoded header value into text."""
    raw = _text(value)
    if "=?" not in raw:
        return raw
    try:
        return str(email.header.make_header(email.header.decode_header(raw)))
    except (email.errors.HeaderParseError, LookupError, UnicodeDecodeError) as e:
        logger.warning(f"Could not decode header value {raw!r}: {e!s}")
        return raw


def convert_addresses(addresses: Any) -> Tuple[Address, ...]:
    if not addresses:
        return ()
    converted = []
    for address in addresses:
        # group syntax markers carry no host
        if address.host is None:
            continue
        converted.append(Address(
            name=decode_header_value(address.name),
            mailbox=_text(address.mailbox),
            host=_text(address.host),
        ))
    return tuple(converted)


def convert_envelope(envelope: Any) -> Envelope:
    if envelope is None:
        return Envelope()
    return Envelope(
        date=envelope.date,
        subject=decode_header_value(envelope.subject),
        from_=convert_addresses(envelope.from_),
        to=convert_addresses(envelope.to),
        cc=convert_addresses(envelope.cc),
        bcc=convert_addresses(envelope.bcc),
        message_id=_text(envelope.message_id),
    )


def _params(raw: Any) -> Dict[str, str]:
    """Convert a flat (name, value, name, value, ...) parameter list to a dict."""
    if not raw or not isinstance(raw, (list, tuple)):
        return {}
    items = list(raw)
    return {_text(items[i]).lower(): decode_header_value(items[i + 1]) for i in range(0, len(items) - 1, 2)}


def _disposition(raw: Any) -> Tuple[str, Dict[str, str]]:
    if not raw or not isinstance(raw, (list, tuple)) or not raw[0]:
        return "", {}
    params = _params(raw[1]) if len(raw) > 1 else {}
    return _text(raw[0]).lower(), params


def convert_body_structure(raw: Any) -> BodyStructure:
    """Convert an imapclient BODYSTRUCTURE response into a BodyStructure tree."""
    if isinstance(raw[0], list):
        children = tuple(convert_body_structure(child) for child in raw[0])
        subtype = _text(raw[1]).lower() if len(raw) > 1 else "mixed"
        params = _params(raw[2]) if len(raw) > 2 else {}
        disposition, _ = _disposition(raw[3]) if len(raw) > 3 else ("", {})
        return BodyStructure(
            type="multipart",
            subtype=subtype,
            params=params,
            encoding="",
            disposition=disposition,
            children=children,
        )

    part_type = _text(raw[0]).lower()
    subtype = _text(raw[1]).lower()
    params = _params(raw[2])

    # Extension data follows the type-specific fields
    if part_type == "text":
        disposition_index = 9
    elif part_type == "message" and subtype == "rfc822":
        disposition_index = 11
    else:
        disposition_index = 8
    disposition, disposition_params = (
        _disposition(raw[disposition_index]) if len(raw) > disposition_index else ("", {})
    )

    return BodyStructure(
        type=part_type,
        subtype=subtype,
        params=params,
        encoding=_text(raw[5]).lower() if len(raw) > 5 and raw[5] else "7bit",
        size=int(raw[6]) if len(raw) > 6 and isinstance(raw[6], int) else 0,
        disposition=disposition,
        filename=disposition_params.get("filename") or params.get("name", ""),
    )


def expand_sequence_set(sequence_set: str) -> List[int]:
    """Expand an IMAP sequence set such as "1:3,7" into [1, 2, 3, 7]."""
    numbers: List[int] = []
    for item in sequence_set.split(","):
        item = item.strip()
        if not item:
            continue
        if ":" in item:
            low, high = (int(part) for part in item.split(":", 1))
            if low > high:
                low, high = high, low
            numbers.extend(range(low, high + 1))
        else:
            numbers.append(int(item))
    return sorted(set(numbers))


def parse_esearch_response(data: Sequence[Any]) -> SearchResult:
    """Parse the untagged ESEARCH response data of SEARCH RETURN (...)."""
    text = " ".join(_text(item) for item in data if item is not None)

    count = re.search(r"\bCOUNT\s+(\d+)", text)
    all_match = re.search(r"\bALL\s+([\d:,]+)", text)

    return SearchResult(
        seq_nums=tuple(expand_sequence_set(all_match.group(1))) if all_match else (),
        count=int(count.group(1)) if count else None,
    )


class ImapMailboxSession(MailboxSession):
    """MailboxSession over an imapclient connection.

    Search and fetch run in sequence-number mode; mutations temporarily
    switch the client to UID mode.
    """

    def __init__(self, client: IMAPClient, mailbox: str = "INBOX") -> None:
        self.client = client
        self.mailbox = mailbox
        self._trash_mailbox: Optional[str] = None

    @classmethod
    def connect(cls, settings: ConnectionSettings) -> "ImapMailboxSession":
        """Open, authenticate and select the configured mailbox.

        Raises:
            MailboxConnectionError: If connection, login or selection fails
        """
        try:
            logger.info(f"Connecting to IMAP server: {settings.server}:{settings.port}")
            client = IMAPClient(
                settings.server,
                port=settings.port,
                use_uid=False,
                ssl=settings.use_ssl,
                timeout=settings.timeout,
            )
            client.login(settings.username, settings.password)
            logger.info("IMAP login successful")
        except Exception as e:
            logger.error("IMAP connection/login failed", exc_info=True)
            raise MailboxConnectionError(f"Failed to connect to IMAP server: {e!s}") from e

        session = cls(client, settings.mailbox)
        try:
            session._log_capabilities()
            result = client.select_folder(settings.mailbox)
            logger.info(f"Selected mailbox {settings.mailbox}: {result.get(b'EXISTS', 0)} messages")
        except Exception as e:
            logger.error(f"Selecting mailbox {settings.mailbox} failed", exc_info=True)
            session.close()
            raise MailboxConnectionError(f"Failed to select mailbox {settings.mailbox}: {e!s}") from e
        return session

    def _log_capabilities(self) -> None:
        capabilities = [_text(capability) for capability in self.client.capabilities()]
        logger.debug(f"Server capabilities: {' '.join(capabilities)}")
        found = [capability for capability in INTERESTING_CAPABILITIES if capability in capabilities]
        if found:
            logger.info(f"Notable capabilities: {', '.join(found)}")

    @contextmanager
    def _uid_mode(self) -> Iterator[None]:
        self.client.use_uid = True
        try:
            yield
        finally:
            self.client.use_uid = False

    # Search

    def search(self, query: SearchQuery, options: SearchOptions) -> SearchResult:
        tokens = query.to_search_tokens()
        if not all(token.isascii() for token in tokens):
            tokens = [b"CHARSET", b"UTF-8"] + tokens

        if options.is_extended and self.client.has_capability("ESEARCH"):
            try:
                return self._extended_search(query, tokens, options)
            except Exception as e:
                logger.debug(f"ESEARCH failed, falling back to regular search: {e}")

        logger.debug(f"SEARCH {query.to_imap()}")
        data = self.client._raw_command_untagged(b"SEARCH", tokens)
        seq_nums = sorted(parse_message_list(data))
        return SearchResult(seq_nums=tuple(seq_nums), count=len(seq_nums))

    def _extended_search(self, query: SearchQuery, tokens: List[bytes], options: SearchOptions) -> SearchResult:
        return_items = " ".join(options.return_items())
        logger.debug(f"SEARCH RETURN ({return_items}) {query.to_imap()}")
        data = self.client._raw_command_untagged(
            b"SEARCH",
            [b"RETURN", f"({return_items})".encode("ascii")] + tokens,
            response_name="ESEARCH",
        )
        result = parse_esearch_response(data)
        logger.info(f"ESEARCH reported {result.count} matches ({len(result.seq_nums)} listed)")
        return result

    # Fetch

    def fetch_structure(self, seq_nums: Sequence[int]) -> List[StructureRecord]:
        response = self.client.fetch(list(seq_nums), [b"UID", b"FLAGS", b"RFC822.SIZE", b"ENVELOPE", b"BODYSTRUCTURE"])
        records = []
        for seq_num in sorted(response):
            data = response[seq_num]
            body_structure = data.get(b"BODYSTRUCTURE")
            records.append(StructureRecord(
                seq_num=seq_num,
                uid=int(data.get(b"UID", 0)),
                envelope=convert_envelope(data.get(b"ENVELOPE")),
                flags=tuple(_text(flag) for flag in data.get(b"FLAGS", ())),
                size=int(data.get(b"RFC822.SIZE", 0)),
                body_structure=convert_body_structure(body_structure) if body_structure else None,
            ))
        return records

    def fetch_content_sections(self, seq_nums: Sequence[int], sections: Sequence[str]) -> List[ContentFragment]:
        items = [f"BODY.PEEK[{section}]" for section in sections]
        response = self.client.fetch(list(seq_nums), items)
        fragments = []
        for seq_num, data in response.items():
            for key, value in data.items():
                match = re.match(r"^BODY\[([\d.]+)\]", _text(key))
                if match is None:
                    continue
                fragments.append(ContentFragment(seq_num=seq_num, section=match.group(1), data=value or b""))
        return fragments

    def fetch_uids(self, low_seq: int, high_seq: int) -> List[Tuple[int, int]]:
        response = self.client.fetch(f"{low_seq}:{high_seq}", [b"UID"])
        return sorted((seq_num, int(data[b"UID"])) for seq_num, data in response.items())

    def fetch_full_messages(self, uids: Sequence[int]) -> Dict[int, bytes]:
        with self._uid_mode():
            response = self.client.fetch(list(uids), [b"BODY.PEEK[]"])
        return {uid: data.get(b"BODY[]", b"") for uid, data in response.items()}

    # Mutations

    def add_flags(self, uids: Sequence[int], flags: Sequence[str]) -> None:
        with self._uid_mode():
            self.client.add_flags(list(uids), list(flags))

    def remove_flags(self, uids: Sequence[int], flags: Sequence[str]) -> None:
        with self._uid_mode():
            self.client.remove_flags(list(uids), list(flags))

    def copy(self, uids: Sequence[int], mailbox: str) -> None:
        with self._uid_mode():
            self.client.copy(list(uids), mailbox)

    def move(self, uids: Sequence[int], mailbox: str) -> None:
        with self._uid_mode():
            if self.client.has_capability("MOVE"):
                self.client.move(list(uids), mailbox)
                return
            logger.debug("Server lacks MOVE, using COPY + STORE + EXPUNGE")
            self.client.copy(list(uids), mailbox)
            self.client.delete_messages(list(uids))
            self._expunge(uids)

    def delete(self, uids: Sequence[int]) -> None:
        with self._uid_mode():
            self.client.delete_messages(list(uids))
            self._expunge(uids)

    def _expunge(self, uids: Sequence[int]) -> None:
        # Without UIDPLUS, EXPUNGE also removes other messages already marked \Deleted
        if self.client.has_capability("UIDPLUS"):
            self.client.uid_expunge(list(uids))
        else:
            self.client.expunge()

    def trash_mailbox(self) -> str:
        """Find the special-use \\Trash mailbox, falling back to "Trash"."""
        if self._trash_mailbox is None:
            trash = DEFAULT_TRASH_MAILBOX
            for flags, _delimiter, name in self.client.list_folders():
                if any(_text(flag).lower() == "\\trash" for flag in flags):
                    trash = _text(name)
                    logger.info(f"Found trash mailbox: {trash}")
                    break
            else:
                logger.info(f"Using default trash mailbox: {trash}")
            self._trash_mailbox = trash
        return self._trash_mailbox

    def close(self) -> None:
        """Safely close the IMAP connection."""
        try:
            self.client.logout()
            logger.info("IMAP connection closed")
        except Exception as e:
            logger.warning(f"Error closing IMAP connection: {e!s}")
