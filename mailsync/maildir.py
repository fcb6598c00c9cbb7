# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Local Maildir backend"""

import logging
import mailbox
import os
import threading
from contextlib import contextmanager
from email.parser import BytesHeaderParser
from pathlib import Path

from .envelope import (Envelope, Flag, Snapshot, flags_from_maildir, flags_to_maildir,
                       identity_from_headers, identity_of, utc_datetime)
from .errors import BackendUnavailable, FolderNotFound, MessageGone

logger = logging.getLogger(__name__)

INBOX = "INBOX"


class MaildirBackend:
    """A Maildir++ tree: INBOX is the root, other folders are `.Name` subfolders.

    Identity keys are mapped to Maildir keys through an index that is
    rebuilt each time a folder is listed.

    Folder names use `separator` as their hierarchy separator, so that
    the same names as on a server can be used; `replace_sep` stands in
    for dots inside a name, which Maildir++ reserves.
    """

    def __init__(self, root, separator=".", replace_sep="_"):
        self.root = Path(root)
        self.separator = separator
        self.replace_sep = replace_sep
        self._mailboxes = {}
        self._index = {}
        self._lock = threading.Lock()

    def __repr__(self):
        return f"MaildirBackend({str(self.root)!r})"

    @contextmanager
    def _errors(self, folder):
        try:
            yield
        except mailbox.NoSuchMailboxError as e:
            raise FolderNotFound(folder) from e
        except OSError as e:
            raise BackendUnavailable(f"maildir {self.root}: {e}") from e

    def local_name(self, folder):
        if self.separator == ".":
            return folder
        return folder.replace(".", self.replace_sep).replace(self.separator, ".")

    def _mailbox(self, folder):
        with self._lock:
            md = self._mailboxes.get(folder)
            if md is None:
                root = mailbox.Maildir(self.root, factory=None, create=False)
                md = root if folder == INBOX else root.get_folder(self.local_name(folder))
                self._mailboxes[folder] = md
            return md

    def _native(self, folder, key):
        with self._lock:
            index = self._index.get(folder)
        if index is None:
            self.list(folder)
            with self._lock:
                index = self._index[folder]
        try:
            return index[key]
        except KeyError:
            raise MessageGone(folder, key) from None

    def folders(self):
        """Return the folder names, written with `separator`"""
        with self._errors(INBOX):
            root = mailbox.Maildir(self.root, factory=None, create=False)
            names = root.list_folders()
        return [INBOX] + sorted(name.replace(".", self.separator) for name in names)

    def create_folder(self, folder):
        with self._errors(folder):
            root = mailbox.Maildir(self.root, factory=None, create=True)
            name = self.local_name(folder)
            if folder != INBOX and name not in root.list_folders():
                root.add_folder(name)
                logger.info("Created local folder %s", name)

    def _folder_path(self, folder):
        if folder == INBOX:
            return self.root
        return self.root / ("." + self.local_name(folder))

    def _scan(self, md, folder):
        """Yield (Maildir key, flag letters, directory entry) for each message file"""
        path = self._folder_path(folder)
        for subdir in ("new", "cur"):
            with os.scandir(path / subdir) as entries:
                for entry in entries:
                    if entry.name.startswith(".") or not entry.is_file():
                        continue
                    native, _, info = entry.name.partition(md.colon)
                    letters = info[2:] if info.startswith("2,") else ""
                    yield native, letters, entry

    def list(self, folder):
        # Only headers are read; flags come from the file name, size and
        # delivery date from the file itself.
        parser = BytesHeaderParser()
        with self._errors(folder):
            md = self._mailbox(folder)
            envelopes = {}
            index = {}
            for native, letters, entry in self._scan(md, folder):
                flags = flags_from_maildir(letters)
                if Flag.DELETED in flags:
                    continue
                try:
                    stat = entry.stat()
                    with open(entry.path, "rb") as f:
                        headers = parser.parse(f)
                except FileNotFoundError:
                    # Removed or renamed by another client while we were scanning
                    continue
                key = identity_of(headers)
                if key in envelopes:
                    logger.debug("Ignoring duplicate of %s in %s (%s)", key, folder, native)
                    continue
                envelopes[key] = Envelope(key, flags, utc_datetime(stat.st_mtime), stat.st_size)
                index[key] = native

        with self._lock:
            self._index[folder] = index
        return Snapshot(envelopes)

    def fetch_content(self, folder, key):
        native = self._native(folder, key)
        with self._errors(folder):
            md = self._mailbox(folder)
            try:
                return md.get_bytes(native)
            except (KeyError, FileNotFoundError):
                raise MessageGone(folder, key) from None

    def create(self, folder, envelope, content):
        with self._errors(folder):
            md = self._mailbox(folder)
            msg = mailbox.MaildirMessage(content)
            msg.set_subdir("cur")
            msg.set_flags(flags_to_maildir(envelope.flags))
            msg.set_date(envelope.internal_date.timestamp())
            native = md.add(msg)

        key = identity_from_headers(content)
        with self._lock:
            self._index.setdefault(folder, {})[key] = native
        return key

    def delete(self, folder, key):
        native = self._native(folder, key)
        with self._errors(folder):
            md = self._mailbox(folder)
            try:
                md.remove(native)
            except (KeyError, FileNotFoundError):
                raise MessageGone(folder, key) from None
        with self._lock:
            self._index[folder].pop(key, None)

    def set_flags(self, folder, key, flags):
        native = self._native(folder, key)
        with self._errors(folder):
            md = self._mailbox(folder)
            try:
                msg = md.get_message(native)
                msg.set_subdir("cur")
                msg.set_flags(flags_to_maildir(flags))
                md[native] = msg
            except (KeyError, FileNotFoundError):
                raise MessageGone(folder, key) from None
