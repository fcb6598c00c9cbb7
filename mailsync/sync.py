# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Core synchronisation cycle and the worker pool that runs it"""

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

from .backend import Side
from .conflict import ConflictResolver
from .diff import Patch, build_patch
from .envelope import Snapshot
from .errors import ApplyAborted, BaseCommitConflict, SyncCancelled, SyncError
from .patch import PatchApplier
from .util import DummyProgress

logger = logging.getLogger(__name__)


class CycleState(enum.Enum):
    IDLE = "idle"
    LISTING = "listing"
    DIFFING = "diffing"
    APPLYING = "applying"
    COMMITTING = "committing"
    ABORTED = "aborted"


class Status(enum.Enum):
    COMMITTED = "committed"
    ABORTED = "aborted"
    PLANNED = "planned"


@dataclass
class SyncJob:
    account: str
    folder: str
    local: object
    remote: object


@dataclass
class SyncResult:
    account: str
    folder: str
    status: Status
    patch: Optional[Patch] = None
    applied: int = 0
    skipped: list = field(default_factory=list)
    error: Optional[SyncError] = None
    restarts: int = 0

    @property
    def ok(self):
        return self.status is not Status.ABORTED

    @property
    def error_kind(self):
        return self.error.kind if self.error is not None else None


def _canonical(snapshot, aliases):
    """Rename entries a backend stored under an alias back to their base key"""
    if not aliases:
        return snapshot
    keys = {native: key for key, native in aliases.items()}
    return Snapshot(
        envelope.with_key(keys[envelope.key]) if envelope.key in keys else envelope
        for envelope in snapshot.values())


class _PairLocks:
    """One lock per (account, folder), created on demand"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def __call__(self, account, folder):
        with self._guard:
            return self._locks.setdefault((account, folder), threading.Lock())


class Synchronizer:
    """Runs synchronisation cycles for (account, folder) pairs.

    A cycle lists both backends and reads the stored base, diffs the
    three, applies the resulting patch and finally commits the converged
    snapshot as the new base. A cycle that fails before committing
    leaves the base untouched, so the next run recomputes what is
    still missing.
    """

    def __init__(self, store, resolver=None, progress_class=None, max_restarts=3, apply_workers=1):
        if resolver is None:
            resolver = ConflictResolver()
        if progress_class is None:
            progress_class = DummyProgress
        self.store = store
        self.resolver = resolver
        self.progress_class = progress_class
        self.max_restarts = max_restarts
        self.apply_workers = apply_workers
        self._pair_lock = _PairLocks()
        self._states = {}

    def state(self, account, folder):
        return self._states.get((account, folder), CycleState.IDLE)

    def _enter(self, account, folder, state):
        logger.debug("%s/%s: %s", account, folder, state.value)
        self._states[(account, folder)] = state

    def _abort(self, account, folder, error, applied=0, skipped=(), patch=None, restarts=0):
        self._enter(account, folder, CycleState.ABORTED)
        logger.error("Synchronisation of %s/%s aborted: %s", account, folder, error)
        return SyncResult(account, folder, Status.ABORTED, patch=patch, applied=applied,
                          skipped=list(skipped), error=error, restarts=restarts)

    def sync_folder(self, account, folder, local, remote, cancel=None, dry_run=False) -> SyncResult:
        """Synchronise one folder and report how it went.

        Fatal errors come back as an aborted result; only a
        `ConflictPolicyViolation` is raised, since it means the diff
        itself is wrong.
        """
        with self._pair_lock(account, folder):
            try:
                restarts = 0
                while True:
                    try:
                        result = self._cycle(account, folder, local, remote, cancel, dry_run)
                    except BaseCommitConflict as e:
                        if restarts >= self.max_restarts:
                            return self._abort(account, folder, e, restarts=restarts)
                        restarts += 1
                        logger.info("Base of %s/%s changed underneath us, restarting (%d)",
                                    account, folder, restarts)
                        continue
                    result.restarts = restarts
                    return result
            finally:
                self._states[(account, folder)] = CycleState.IDLE

    def _cycle(self, account, folder, local, remote, cancel, dry_run):
        self._enter(account, folder, CycleState.LISTING)
        try:
            if cancel is not None and cancel.is_set():
                raise SyncCancelled(f"synchronisation of {folder} cancelled")
            stored = self.store.load(account, folder)
            local_snapshot = local.list(folder)
            remote_snapshot = remote.list(folder)
        except SyncError as e:
            return self._abort(account, folder, e)
        base = stored.snapshot if stored is not None else None
        aliases = stored.aliases if stored is not None else {}
        local_snapshot = _canonical(local_snapshot, aliases.get(Side.LOCAL))
        remote_snapshot = _canonical(remote_snapshot, aliases.get(Side.REMOTE))
        logger.debug("%s/%s: %d local, %d remote, %s base", account, folder,
                     len(local_snapshot), len(remote_snapshot),
                     len(base) if base is not None else "no")

        self._enter(account, folder, CycleState.DIFFING)
        patch = build_patch(base, local_snapshot, remote_snapshot, self.resolver)
        if dry_run:
            return SyncResult(account, folder, Status.PLANNED, patch=patch)

        self._enter(account, folder, CycleState.APPLYING)
        with self.progress_class(desc=folder, total=len(patch), leave=False) as progress:
            applier = PatchApplier(local, remote, folder, progress=progress, cancel=cancel,
                                   max_workers=self.apply_workers, aliases=aliases)
            try:
                applied = applier.apply(patch, base)
            except ApplyAborted as e:
                return self._abort(account, folder, e.cause, e.applied, e.skipped, patch)

        self._enter(account, folder, CycleState.COMMITTING)
        if (stored is not None and applied.snapshot == stored.snapshot
                and applied.aliases == stored.aliases):
            logger.debug("%s/%s: base unchanged", account, folder)
        else:
            try:
                revision = self.store.compare_and_set(
                    account, folder, applied.snapshot,
                    stored.revision if stored is not None else None,
                    aliases=applied.aliases)
            except BaseCommitConflict:
                raise
            except SyncError as e:
                return self._abort(account, folder, e, applied.applied, applied.skipped, patch)
            logger.info("Synchronised %s/%s: %d operations, %d skipped (base revision %d)",
                        account, folder, applied.applied, len(applied.skipped), revision)
        return SyncResult(account, folder, Status.COMMITTED, patch=patch,
                          applied=applied.applied, skipped=applied.skipped)

    def sync_all(self, jobs, max_workers=4, cancel=None, dry_run=False, progress=None):
        """Synchronise several folders in parallel, one cycle per worker.

        Results are returned in the order of `jobs`. If the caller is
        interrupted while waiting, `cancel` is set so that running
        cycles stop at their next operation.
        """
        if cancel is None:
            cancel = threading.Event()
        if progress is None:
            progress = DummyProgress()

        def run(job):
            try:
                return self.sync_folder(job.account, job.folder, job.local, job.remote,
                                        cancel=cancel, dry_run=dry_run)
            finally:
                progress.update()

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(run, job) for job in jobs]
            try:
                return [future.result() for future in futures]
            except BaseException:
                cancel.set()
                raise
