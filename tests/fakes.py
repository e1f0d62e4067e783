"""In-memory mailbox session and record builders shared by the tests."""

from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from mailsift.compiler import SearchOptions, SearchQuery
from mailsift.session import (
    Address,
    BodyStructure,
    ContentFragment,
    Envelope,
    MailboxSession,
    SearchResult,
    StructureRecord,
)


def text_part(subtype="plain", charset="utf-8", encoding="7bit", size=100, filename=""):
    return BodyStructure(
        type="text",
        subtype=subtype,
        params={"charset": charset} if charset else {},
        encoding=encoding,
        size=size,
        filename=filename,
    )


def binary_part(type="application", subtype="pdf", filename="file.pdf", encoding="base64", size=1000):
    return BodyStructure(
        type=type,
        subtype=subtype,
        params={"name": filename},
        encoding=encoding,
        size=size,
        disposition="attachment",
        filename=filename,
    )


def multipart(*children, subtype="mixed"):
    return BodyStructure(type="multipart", subtype=subtype, encoding="", children=tuple(children))


def make_record(seq_num, uid=None, subject=None, structure=None, flags=(), size=1234, sender="alice@example.com"):
    mailbox, _, host = sender.partition("@")
    return StructureRecord(
        seq_num=seq_num,
        uid=uid if uid is not None else seq_num + 100,
        envelope=Envelope(
            date=datetime(2024, 1, 15, 10, 30),
            subject=subject if subject is not None else f"Message {seq_num}",
            from_=(Address(name="Alice", mailbox=mailbox, host=host),),
            to=(Address(mailbox="bob", host="example.com"),),
        ),
        flags=tuple(flags),
        size=size,
        body_structure=structure if structure is not None else text_part(),
    )


class FakeMailbox(MailboxSession):
    """A MailboxSession serving canned records and recording every call.

    Attributes:
        records: Structure records by sequence number
        contents: Raw section bytes by (sequence number, section)
        search_result: What search() returns; defaults to every record
        calls: (method name, arguments) in call order
    """

    def __init__(
        self,
        records: Sequence[StructureRecord] = (),
        contents: Optional[Dict[Tuple[int, str], bytes]] = None,
        search_result: Optional[SearchResult] = None,
        raw_messages: Optional[Dict[int, bytes]] = None,
        interleave: bool = False,
        fail_on: Sequence[str] = (),
    ) -> None:
        self.records = {record.seq_num: record for record in records}
        self.contents = dict(contents or {})
        self.search_result = search_result
        self.raw_messages = dict(raw_messages or {})
        self.interleave = interleave
        self.fail_on = set(fail_on)
        self.calls: List[Tuple[str, tuple]] = []
        self.closed = False

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def search(self, query: SearchQuery, options: SearchOptions) -> SearchResult:
        self._record("search", query, options)
        if self.search_result is not None:
            return self.search_result
        seq_nums = tuple(sorted(self.records))
        return SearchResult(seq_nums=seq_nums, count=len(seq_nums))

    def fetch_structure(self, seq_nums):
        self._record("fetch_structure", list(seq_nums))
        return [self.records[seq_num] for seq_num in seq_nums if seq_num in self.records]

    def fetch_content_sections(self, seq_nums, sections):
        self._record("fetch_content_sections", list(seq_nums), list(sections))
        fragments = [
            ContentFragment(seq_num=seq_num, section=section, data=self.contents[(seq_num, section)])
            for seq_num in seq_nums
            for section in sections
            if (seq_num, section) in self.contents
        ]
        if self.interleave:
            # Server answers out of request order
            fragments = fragments[1::2] + fragments[0::2]
        return fragments

    def fetch_uids(self, low_seq, high_seq):
        self._record("fetch_uids", low_seq, high_seq)
        return [
            (seq_num, record.uid)
            for seq_num, record in sorted(self.records.items())
            if low_seq <= seq_num <= high_seq
        ]

    def fetch_full_messages(self, uids):
        self._record("fetch_full_messages", list(uids))
        return {uid: self.raw_messages[uid] for uid in uids if uid in self.raw_messages}

    def add_flags(self, uids, flags):
        self._record("add_flags", list(uids), list(flags))

    def remove_flags(self, uids, flags):
        self._record("remove_flags", list(uids), list(flags))

    def copy(self, uids, mailbox):
        self._record("copy", list(uids), mailbox)

    def move(self, uids, mailbox):
        self._record("move", list(uids), mailbox)

    def delete(self, uids):
        self._record("delete", list(uids))

    def trash_mailbox(self):
        self._record("trash_mailbox")
        return "Trash"

    def close(self):
        self._record("close")
        self.closed = True
