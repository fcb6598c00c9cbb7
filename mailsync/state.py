# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Persistence of the last synchronised snapshot of each folder

Each (account, folder) pair has its own JSON file:

    {
        "version": 1,
        "account": "me@example.com",
        "folder": "INBOX",
        "revision": 3,
        "updated": "2024-01-15T10:30:00+00:00",
        "envelopes": [
            {"key": "...", "flags": ["seen"],
             "internal_date": "2024-01-14T08:00:00+00:00", "size": 1234}
        ],
        "aliases": {"remote": {"<key>": "<key on the server>"}}
    }

`aliases` records, per side, messages that a backend stored under a
different identity key than the one used in the base.

Commits are compare-and-swap on `revision`, so two processes racing on
the same folder cannot both overwrite the base they started from.
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from .backend import Side
from .envelope import Envelope, Flag, Snapshot
from .errors import BaseCommitConflict, StateCorrupted, StateUnavailable

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass(frozen=True)
class StoredBase:
    snapshot: Snapshot
    revision: int
    aliases: dict = field(default_factory=dict)


def _encode(envelope):
    return {
        "key": envelope.key,
        "flags": sorted(flag.value for flag in envelope.flags),
        "internal_date": envelope.internal_date.isoformat(),
        "size": envelope.size,
    }


def _decode(data):
    return Envelope(
        key=data["key"],
        flags=frozenset(Flag(value) for value in data["flags"]),
        internal_date=datetime.fromisoformat(data["internal_date"]),
        size=data.get("size", 0),
    )


def _decode_aliases(data):
    aliases = {}
    for side, mapping in data.items():
        aliases[Side(side)] = {str(key): str(native) for key, native in mapping.items()}
    return aliases


class StateStore:
    """Stores one base snapshot per (account, folder) under `directory`"""

    def __init__(self, directory):
        self.directory = Path(directory)
        # fcntl locks are per process, so threads need their own guard
        self._thread_lock = threading.Lock()

    def _path(self, account, folder):
        return self.directory / quote(account, safe="@") / (quote(folder, safe="") + ".json")

    @contextmanager
    def _io_errors(self, path):
        try:
            yield
        except OSError as e:
            raise StateUnavailable(f"cannot update {path}: {e}") from e

    @contextmanager
    def _locked(self, path):
        with self._thread_lock, self._io_errors(path):
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path.with_suffix(".lock"), "a") as lock_file:
                fcntl.flock(lock_file, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file, fcntl.LOCK_UN)

    def _read(self, path):
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise StateCorrupted(f"cannot read {path}: {e}") from e

        if data.get("version") != STATE_VERSION:
            raise StateCorrupted(f"{path} has unsupported version {data.get('version')!r}")
        try:
            snapshot = Snapshot(_decode(item) for item in data["envelopes"])
            aliases = _decode_aliases(data.get("aliases", {}))
            return StoredBase(snapshot, int(data["revision"]), aliases)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise StateCorrupted(f"malformed state in {path}: {e}") from e

    def load(self, account: str, folder: str) -> Optional[StoredBase]:
        """Return the stored base, or None if the folder was never synchronised"""
        return self._read(self._path(account, folder))

    def compare_and_set(self, account: str, folder: str, snapshot: Snapshot,
                        expected_revision: Optional[int], aliases=None) -> int:
        """Replace the base if it is still at `expected_revision`.

        Returns the new revision. Raises `BaseCommitConflict` if another
        writer got there first and `StateUnavailable` if the file cannot
        be written.
        """
        path = self._path(account, folder)
        with self._locked(path):
            current = self._read(path)
            current_revision = current.revision if current is not None else None
            if current_revision != expected_revision:
                raise BaseCommitConflict(
                    f"base for {account}/{folder} is at revision {current_revision}, "
                    f"expected {expected_revision}")

            revision = (current_revision or 0) + 1
            data = {
                "version": STATE_VERSION,
                "account": account,
                "folder": folder,
                "revision": revision,
                "updated": datetime.now(timezone.utc).isoformat(),
                "envelopes": [_encode(snapshot[key]) for key in sorted(snapshot)],
            }
            if aliases:
                data["aliases"] = {side.value: dict(sorted(mapping.items()))
                                   for side, mapping in aliases.items() if mapping}
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=1)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                os.unlink(tmp_name)
                raise

        logger.debug("Stored base for %s/%s at revision %d (%d envelopes)",
                     account, folder, revision, len(snapshot))
        return revision

    def discard(self, account: str, folder: str) -> bool:
        """Forget the base of a folder so the next cycle starts from scratch"""
        path = self._path(account, folder)
        with self._locked(path):
            try:
                path.unlink()
            except FileNotFoundError:
                return False
        logger.info("Discarded stored base for %s/%s", account, folder)
        return True
