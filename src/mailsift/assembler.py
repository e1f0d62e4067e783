"""Build domain messages from fetched structure records and part contents."""

import base64
import binascii
import codecs
import logging
import quopri
from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, Optional, Sequence, Tuple, TYPE_CHECKING

from .session import StructureRecord

if TYPE_CHECKING:
    from .fetcher import PartRequirement

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MimePart:
    """One fetched MIME part.

    Attributes:
        type: Main media type, e.g. "text"
        subtype: Media subtype, e.g. "plain"
        content: Decoded text for text parts; the transferred text otherwise
        size: Size in bytes of the fetched fragment
        charset: Declared charset, if any
        filename: Attachment filename, if any
        data: Transfer-decoded payload of non-text parts
    """
    type: str
    subtype: str
    content: str
    size: int
    charset: str = ""
    filename: str = ""
    data: bytes = b""

    @property
    def media_type(self) -> str:
        return f"{self.type}/{self.subtype}"


@dataclass(frozen=True)
class DomainMessage:
    """A matched message as handed to rendering and actions."""
    seq_num: int
    uid: int
    subject: str
    from_: Tuple[str, ...]
    to: Tuple[str, ...]
    cc: Tuple[str, ...]
    bcc: Tuple[str, ...]
    date: Optional[datetime]
    flags: FrozenSet[str]
    size: int
    total_count: int
    mime_parts: Tuple[MimePart, ...] = ()


def decode_transfer_encoding(data: bytes, encoding: str) -> bytes:
    """Undo base64 or quoted-printable transfer encoding; other encodings pass through."""
    encoding = (encoding or "").lower()
    if encoding == "base64":
        try:
            return base64.b64decode(data)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Invalid base64 content, keeping raw bytes: {e!s}")
            return data
    if encoding == "quoted-printable":
        return quopri.decodestring(data)
    return data


def decode_text(data: bytes, charset: str) -> str:
    """Decode text in its declared charset, falling back to UTF-8 for unknown charsets."""
    charset = charset or "utf-8"
    try:
        codecs.lookup(charset)
    except LookupError:
        logger.warning(f"Unknown charset {charset!r}, decoding as utf-8")
        charset = "utf-8"
    return data.decode(charset, errors="replace")


def assemble_part(requirement: "PartRequirement", raw: bytes) -> MimePart:
    payload = decode_transfer_encoding(raw, requirement.encoding)
    if requirement.type == "text":
        return MimePart(
            type=requirement.type,
            subtype=requirement.subtype,
            content=decode_text(payload, requirement.charset),
            size=len(raw),
            charset=requirement.charset,
            filename=requirement.filename,
        )
    return MimePart(
        type=requirement.type,
        subtype=requirement.subtype,
        content=raw.decode("ascii", errors="replace"),
        size=len(raw),
        charset=requirement.charset,
        filename=requirement.filename,
        data=payload,
    )


def assemble_message(
    record: StructureRecord,
    parts: Sequence[Tuple["PartRequirement", bytes]],
    total_count: int,
) -> DomainMessage:
    """Combine a structure record and its fetched parts into a DomainMessage.

    Args:
        record: Envelope, flags and structure from the structure fetch
        parts: (requirement, raw bytes) for each selected part, in order
        total_count: Number of messages the search matched

    Returns:
        A new DomainMessage; the inputs are left untouched
    """
    envelope = record.envelope
    return DomainMessage(
        seq_num=record.seq_num,
        uid=record.uid,
        subject=envelope.subject,
        from_=tuple(address.formatted() for address in envelope.from_),
        to=tuple(address.formatted() for address in envelope.to),
        cc=tuple(address.formatted() for address in envelope.cc),
        bcc=tuple(address.formatted() for address in envelope.bcc),
        date=envelope.date,
        flags=frozenset(record.flags),
        size=record.size,
        total_count=total_count,
        mime_parts=tuple(assemble_part(requirement, raw) for requirement, raw in parts),
    )
