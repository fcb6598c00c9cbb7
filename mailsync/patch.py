# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Apply a patch to the local and remote backends"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from .backend import Side
from .diff import OpKind
from .envelope import Snapshot
from .errors import ApplyAborted, MessageGone, SyncCancelled, SyncError
from .util import DummyProgress

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """What a fully applied patch left behind.

    `snapshot` is the state both backends now share and becomes the
    next base. `aliases` maps, per side, keys of that snapshot to the
    key a backend actually stored the message under. `skipped` holds
    (operation, error) pairs for operations dropped because their
    message vanished.
    """
    snapshot: Snapshot
    applied: int = 0
    skipped: list = field(default_factory=list)
    aliases: dict = field(default_factory=dict)


def describe(op):
    return f"{type(op).__name__}({op.key[:12]})"


class PatchApplier:
    """Runs the operations of a patch against both backends of a folder.

    Deletes run first, then creates, then flag updates. With
    `max_workers` above one the operations of a phase are sent to the
    backends concurrently, which requires thread-safe backends; a phase
    still only starts once the previous one has finished.

    Operations name messages by their key in the base. `aliases` gives,
    per side, the key a backend knows a message by where that differs.
    """

    def __init__(self, local, remote, folder, progress=None, cancel=None, max_workers=1,
                 aliases=None):
        self.backends = {Side.LOCAL: local, Side.REMOTE: remote}
        if aliases is None:
            aliases = {}
        self.aliases = {side: dict(aliases.get(side, {})) for side in Side}
        self.folder = folder
        self.progress = progress if progress is not None else DummyProgress()
        self.cancel = cancel
        self.max_workers = max_workers
        self._lock = threading.Lock()

    def _checkpoint(self):
        if self.cancel is not None and self.cancel.is_set():
            raise SyncCancelled(f"synchronisation of {self.folder} cancelled")

    def _native(self, side, key):
        with self._lock:
            return self.aliases[side].get(key, key)

    def _dispatch(self, op):
        backend = self.backends[op.target]
        if op.kind is OpKind.DELETE:
            backend.delete(self.folder, self._native(op.target, op.key))
        elif op.kind is OpKind.CREATE:
            content = self.backends[op.source].fetch_content(
                self.folder, self._native(op.source, op.key))
            return backend.create(self.folder, op.envelope, content)
        else:
            backend.set_flags(self.folder, self._native(op.target, op.key), op.flags)
        return None

    def _run(self, op, base, state):
        self._checkpoint()
        try:
            new_key = self._dispatch(op)
        except MessageGone as e:
            logger.warning("Skipping %s in %s: %s", describe(op), self.folder, e)
            with self._lock:
                state.skipped.append((op, e))
                # Leave the key as it was before this cycle
                state.envelopes.pop(op.key, None)
                if op.key in base:
                    state.envelopes[op.key] = base[op.key]
        else:
            with self._lock:
                state.applied += 1
                if new_key is not None and new_key != op.key:
                    logger.info("%s stored %s as %s", op.target.value, op.key, new_key)
                    self.aliases[op.target][op.key] = new_key
                elif new_key is not None:
                    self.aliases[op.target].pop(op.key, None)
        self.progress.update()

    def _run_concurrently(self, phase, base, state):
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(self._run, op, base, state) for op in phase]
            try:
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    def apply(self, patch, base=None) -> ApplyResult:
        """Apply `patch`, given the `base` it was computed from.

        Raises `ApplyAborted` on the first fatal error; operations
        already applied stay applied.
        """
        if base is None:
            base = Snapshot()
        state = _Progress(dict(patch.target))
        self.progress.reset(total=len(patch))

        try:
            for phase in patch.phases():
                if not phase:
                    continue
                self.progress.set_postfix_str(phase[0].kind.name.lower())
                if self.max_workers > 1 and len(phase) > 1:
                    self._run_concurrently(phase, base, state)
                else:
                    for op in phase:
                        self._run(op, base, state)
        except SyncError as e:
            logger.warning("Aborting %s after %d operations: %s", self.folder, state.applied, e)
            raise ApplyAborted(e, state.applied, list(state.skipped)) from e

        snapshot = Snapshot(state.envelopes)
        aliases = {}
        for side, mapping in self.aliases.items():
            mapping = {key: native for key, native in mapping.items() if key in snapshot}
            if mapping:
                aliases[side] = mapping
        return ApplyResult(snapshot, state.applied, state.skipped, aliases)


@dataclass
class _Progress:
    envelopes: dict
    applied: int = 0
    skipped: list = field(default_factory=list)
