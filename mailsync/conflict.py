# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Deterministic resolution of two-sided divergence"""

import logging
from dataclasses import dataclass
from typing import Optional

from .backend import Side
from .envelope import Envelope, format_flags
from .errors import ConflictPolicyViolation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """The outcome of a conflict.

    `envelope` is the state both sides must end up with, or None when
    the message must be deleted from both.
    """
    winner: Side
    envelope: Optional[Envelope]


class ConflictResolver:
    """Last writer wins, by internal date.

    Each side is judged by the envelope it currently holds or, if it
    deleted the message, by the base envelope it last saw. The later
    internal date wins; equal dates go to `prefer`, which defaults to
    the remote side.
    """

    def __init__(self, prefer: Side = Side.REMOTE):
        self.prefer = prefer

    def resolve(self, key, base, local, remote) -> Resolution:
        if local is None and remote is None:
            raise ConflictPolicyViolation(f"{key}: deleted on both sides, nothing to resolve")
        if local is not None and remote is not None and local.flags == remote.flags:
            raise ConflictPolicyViolation(f"{key}: both sides agree, nothing to resolve")
        if base is None and (local is None or remote is None):
            raise ConflictPolicyViolation(f"{key}: message is new on one side only")

        local_date = (local or base).internal_date
        remote_date = (remote or base).internal_date

        if local_date > remote_date:
            winner = Side.LOCAL
        elif remote_date > local_date:
            winner = Side.REMOTE
        else:
            winner = self.prefer

        envelope = local if winner is Side.LOCAL else remote
        logger.debug("Conflict on %s: local=%s remote=%s, %s side wins",
                     key, _describe(local), _describe(remote), winner.value)
        return Resolution(winner, envelope)


def _describe(envelope):
    if envelope is None:
        return "deleted"
    return format_flags(envelope.flags)
