# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Three-way diff between the stored base and the two live snapshots

For every identity key seen in the base (B), the local snapshot (L) or
the remote snapshot (R) the key is classified by presence and by flag
equality:

    B    L    R    flags                   action
    --   yes  --                           create on remote
    --   --   yes                          create on local
    --   yes  yes  L == R                  nothing, already converged
    --   yes  yes  L != R                  conflict
    yes  --   yes  R == B                  delete on remote
    yes  yes  --   L == B                  delete on local
    yes  --   --                           nothing, deleted on both sides
    yes  yes  yes  L == R                  nothing
    yes  yes  yes  one side == B           update flags on that side
    yes  yes  yes  both != B, L != R       conflict
    yes  changed   --                      conflict (edit against delete)

Without a base no deletion is ever produced.
"""

import enum
import logging
from collections import Counter
from dataclasses import dataclass
from typing import ClassVar, Optional

from .backend import Side
from .conflict import ConflictResolver
from .envelope import Envelope, Snapshot

logger = logging.getLogger(__name__)


class OpKind(enum.IntEnum):
    # Values give the order in which a patch applies operations
    DELETE = 0
    CREATE = 1
    UPDATE = 2


@dataclass(frozen=True)
class Operation:
    key: str

    kind: ClassVar[OpKind]
    target: ClassVar[Side]

    def sort_key(self):
        return (self.kind, self.key, self.target.value)


@dataclass(frozen=True)
class _Delete(Operation):
    kind: ClassVar[OpKind] = OpKind.DELETE


@dataclass(frozen=True)
class _Create(Operation):
    envelope: Envelope
    kind: ClassVar[OpKind] = OpKind.CREATE

    @property
    def source(self):
        """The side the content is copied from"""
        return self.target.other


@dataclass(frozen=True)
class _UpdateFlags(Operation):
    flags: frozenset
    kind: ClassVar[OpKind] = OpKind.UPDATE

    def __post_init__(self):
        if not isinstance(self.flags, frozenset):
            object.__setattr__(self, "flags", frozenset(self.flags))


class DeleteOnLocal(_Delete):
    target = Side.LOCAL


class DeleteOnRemote(_Delete):
    target = Side.REMOTE


class CreateOnLocal(_Create):
    target = Side.LOCAL


class CreateOnRemote(_Create):
    target = Side.REMOTE


class UpdateFlagsOnLocal(_UpdateFlags):
    target = Side.LOCAL


class UpdateFlagsOnRemote(_UpdateFlags):
    target = Side.REMOTE


_DELETE = {Side.LOCAL: DeleteOnLocal, Side.REMOTE: DeleteOnRemote}
_CREATE = {Side.LOCAL: CreateOnLocal, Side.REMOTE: CreateOnRemote}
_UPDATE = {Side.LOCAL: UpdateFlagsOnLocal, Side.REMOTE: UpdateFlagsOnRemote}


@dataclass(frozen=True)
class Patch:
    """Operations converging one folder, in the order they must be applied.

    `target` is the snapshot both sides are expected to match once
    every operation has been applied.
    """
    operations: tuple
    target: Snapshot
    conflicts: int = 0

    def __iter__(self):
        return iter(self.operations)

    def __len__(self):
        return len(self.operations)

    def __bool__(self):
        return bool(self.operations)

    @property
    def is_empty(self):
        return not self.operations

    def phases(self):
        """Split the operations into delete, create and update phases"""
        phases = {kind: [] for kind in OpKind}
        for op in self.operations:
            phases[op.kind].append(op)
        return [phases[kind] for kind in OpKind]

    def summary(self):
        counts = Counter(type(op).__name__ for op in self.operations)
        return dict(sorted(counts.items()))


def _resolve(key, base, local, remote, resolver, operations, target):
    resolution = resolver.resolve(key, base, local, remote)
    loser = resolution.winner.other
    current = local if loser is Side.LOCAL else remote

    if resolution.envelope is None:
        # The winner deleted the message
        operations.append(_DELETE[loser](key))
    elif current is None:
        operations.append(_CREATE[loser](key, resolution.envelope))
        target[key] = resolution.envelope
    else:
        operations.append(_UPDATE[loser](key, resolution.envelope.flags))
        target[key] = resolution.envelope


def build_patch(base: Optional[Snapshot], local: Snapshot, remote: Snapshot,
                resolver: Optional[ConflictResolver] = None) -> Patch:
    """Compute the operations that make `local` and `remote` converge.

    `base` is the snapshot stored after the last successful cycle, or
    None on the first synchronisation of the folder.
    """
    if resolver is None:
        resolver = ConflictResolver()
    if base is None:
        base = Snapshot()

    operations = []
    target = {}
    conflicts = 0

    for key in sorted(set(base) | set(local) | set(remote)):
        b, l, r = base.get(key), local.get(key), remote.get(key)

        if l is None and r is None:
            continue

        if b is None:
            if r is None:
                operations.append(CreateOnRemote(key, l))
                target[key] = l
            elif l is None:
                operations.append(CreateOnLocal(key, r))
                target[key] = r
            elif l.flags == r.flags:
                target[key] = r
            else:
                conflicts += 1
                _resolve(key, b, l, r, resolver, operations, target)
        elif l is None:
            if r.flags == b.flags:
                operations.append(DeleteOnRemote(key))
            else:
                conflicts += 1
                _resolve(key, b, l, r, resolver, operations, target)
        elif r is None:
            if l.flags == b.flags:
                operations.append(DeleteOnLocal(key))
            else:
                conflicts += 1
                _resolve(key, b, l, r, resolver, operations, target)
        elif l.flags == r.flags:
            target[key] = r
        elif l.flags == b.flags:
            operations.append(UpdateFlagsOnLocal(key, r.flags))
            target[key] = r
        elif r.flags == b.flags:
            operations.append(UpdateFlagsOnRemote(key, l.flags))
            target[key] = l
        else:
            conflicts += 1
            _resolve(key, b, l, r, resolver, operations, target)

    operations.sort(key=Operation.sort_key)
    if conflicts:
        logger.debug("Resolved %d conflicts", conflicts)
    return Patch(tuple(operations), Snapshot(target), conflicts)
