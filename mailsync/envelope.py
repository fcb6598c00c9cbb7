# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Backend-agnostic message envelopes and folder snapshots"""

import enum
import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.parser import BytesHeaderParser
from email import policy

# Headers that identify a message independently of where it is stored
IDENTITY_HEADERS = ("Message-ID", "Date", "From", "Subject")


class Flag(enum.Enum):
    SEEN = "seen"
    ANSWERED = "answered"
    FLAGGED = "flagged"
    DELETED = "deleted"
    DRAFT = "draft"


IMAP_FLAGS = {
    Flag.SEEN: b"\\Seen",
    Flag.ANSWERED: b"\\Answered",
    Flag.FLAGGED: b"\\Flagged",
    Flag.DELETED: b"\\Deleted",
    Flag.DRAFT: b"\\Draft",
}

MAILDIR_FLAGS = {
    Flag.SEEN: "S",
    Flag.ANSWERED: "R",
    Flag.FLAGGED: "F",
    Flag.DELETED: "T",
    Flag.DRAFT: "D",
}

_FROM_IMAP = {value.lower(): flag for flag, value in IMAP_FLAGS.items()}
_FROM_MAILDIR = {value: flag for flag, value in MAILDIR_FLAGS.items()}


def flags_from_imap(imap_flags):
    """Map IMAP system flags to a flag set, ignoring keywords"""
    result = set()
    for value in imap_flags:
        if isinstance(value, str):
            value = value.encode("ascii")
        flag = _FROM_IMAP.get(value.lower())
        if flag is not None:
            result.add(flag)
    return frozenset(result)


def flags_to_imap(flags):
    return sorted(IMAP_FLAGS[flag] for flag in flags)


def flags_from_maildir(info):
    """Map the letters of a Maildir info suffix to a flag set"""
    return frozenset(_FROM_MAILDIR[c] for c in info if c in _FROM_MAILDIR)


def flags_to_maildir(flags):
    # Maildir requires the info letters in ASCII order
    return "".join(sorted(MAILDIR_FLAGS[flag] for flag in flags))


def format_flags(flags):
    return ",".join(sorted(flag.value for flag in flags)) or "-"


def identity_from_headers(data: bytes) -> str:
    """Compute the identity key of a message from its raw headers.

    `data` may be a bare header block (as returned by an IMAP
    `BODY[HEADER.FIELDS ...]` fetch) or a complete message. The same
    message therefore gets the same key in every backend.
    """
    return identity_of(BytesHeaderParser(policy=policy.compat32).parsebytes(data))


def identity_of(headers) -> str:
    """Compute the identity key from a parsed `email.message.Message`"""
    values = []
    for name in IDENTITY_HEADERS:
        value = headers.get(name, "")
        values.append(" ".join(str(value).split()))
    return hashlib.sha256("\0".join(values).encode("utf-8", "surrogateescape")).hexdigest()


def utc_datetime(value) -> datetime:
    """Normalise a timestamp or datetime to an aware UTC datetime"""
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if value.tzinfo is None:
        # Naive datetimes from the mail libraries are local time
        value = value.astimezone()
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Envelope:
    key: str
    flags: frozenset
    internal_date: datetime
    size: int = 0

    def __post_init__(self):
        if not isinstance(self.flags, frozenset):
            object.__setattr__(self, "flags", frozenset(self.flags))

    def with_flags(self, flags):
        return replace(self, flags=frozenset(flags))

    def with_key(self, key):
        return replace(self, key=key)


class Snapshot(Mapping):
    """An immutable view of one folder in one backend at one instant"""

    __slots__ = ("_envelopes",)

    def __init__(self, envelopes=None):
        if envelopes is None:
            envelopes = {}
        elif not isinstance(envelopes, Mapping):
            envelopes = {envelope.key: envelope for envelope in envelopes}
        self._envelopes = dict(envelopes)

    @classmethod
    def of(cls, *envelopes):
        return cls(envelopes)

    def __getitem__(self, key):
        return self._envelopes[key]

    def __iter__(self):
        return iter(self._envelopes)

    def __len__(self):
        return len(self._envelopes)

    def __eq__(self, other):
        if isinstance(other, Snapshot):
            return self._envelopes == other._envelopes
        return NotImplemented

    __hash__ = None

    def __repr__(self):
        return f"Snapshot({len(self)} envelopes)"
