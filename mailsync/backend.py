# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""The capability set every mailbox backend offers"""

import enum
from typing import Protocol, runtime_checkable

from .envelope import Envelope, Snapshot


class Side(enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"

    @property
    def other(self):
        return Side.REMOTE if self is Side.LOCAL else Side.LOCAL


@runtime_checkable
class Backend(Protocol):
    """A mailbox that can be synchronised.

    Implementations raise `BackendUnavailable` when the store cannot be
    reached (timeouts included), `FolderNotFound` from `list` for a
    missing folder and `MessageGone` when a key listed earlier has since
    disappeared.
    """

    def list(self, folder: str) -> Snapshot:
        """Return every message currently in `folder`"""
        ...

    def fetch_content(self, folder: str, key: str) -> bytes:
        """Return the full raw message"""
        ...

    def create(self, folder: str, envelope: Envelope, content: bytes) -> str:
        """Store a message and return the identity key it ends up with"""
        ...

    def delete(self, folder: str, key: str) -> None:
        ...

    def set_flags(self, folder: str, key: str, flags: frozenset) -> None:
        """Replace the flags of a message"""
        ...
