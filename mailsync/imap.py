# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Remote IMAP backend"""

import logging
import re
import socket
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

import imapclient
from imapclient import exceptions

from .envelope import (Envelope, Flag, Snapshot, flags_from_imap, flags_to_imap,
                       identity_from_headers, utc_datetime)
from .errors import BackendUnavailable, FolderNotFound, MessageGone
from .util import chunks


# Number of messages about which to get details in any given fetch
MSG_CHUNK_SIZE = 1000
# The IMAP header filter for fetch that identifies a message across backends
MSG_ID_HEADERS = b"BODY.PEEK[HEADER.FIELDS (MESSAGE-ID DATE FROM SUBJECT)]"
MSG_SIZE = b"RFC822.SIZE"
MSG_FLAGS = b'FLAGS'
MSG_DATE = b'INTERNALDATE'
MSG_CONTENT = b"BODY.PEEK[]"

APPENDUID_RE = re.compile(rb"\[APPENDUID \d+ (\d+)\]", re.IGNORECASE)

logger = logging.getLogger(__name__)


@dataclass
class ServerInfo:
    hostname: str
    port: Optional[int]
    username: str
    password: str
    SSL: bool = True


def _header_data(details):
    # Servers echo the header section name back in slightly different forms
    for name, value in details.items():
        if name.startswith(b"BODY[HEADER"):
            return value or b""
    return b""


class IMAPBackend:
    """A folder tree on an IMAP server.

    The connection is opened on first use and shared by every call, so
    one instance must not be used from several threads at once without
    relying on its internal lock.
    """

    def __init__(self, server: ServerInfo, timeout: Optional[float] = 60):
        self.server = server
        self.timeout = timeout
        self._client = None
        self._selected = None
        self._uids = {}
        self._lock = threading.RLock()

    def __repr__(self):
        return f"IMAPBackend({self.server.username}@{self.server.hostname})"

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
        return False

    @contextmanager
    def _errors(self, folder=None):
        try:
            yield
        except exceptions.LoginError as e:
            self._drop()
            raise BackendUnavailable(f"login to {self.server.hostname} failed: {e}") from e
        except (exceptions.IMAPClientAbortError, socket.timeout, OSError) as e:
            self._drop()
            raise BackendUnavailable(f"connection to {self.server.hostname} lost: {e}") from e
        except exceptions.IMAPClientError as e:
            raise BackendUnavailable(f"{self.server.hostname} refused command on {folder}: {e}") from e

    def _drop(self):
        self._client = None
        self._selected = None

    @property
    def client(self):
        if self._client is None:
            logger.debug("Connecting to %s", self.server.hostname)
            client = imapclient.IMAPClient(host=self.server.hostname, port=self.server.port,
                                           ssl=self.server.SSL, timeout=self.timeout)
            client.normalise_times = False
            client.login(self.server.username, self.server.password)
            self._client = client
        return self._client

    def close(self):
        with self._lock:
            if self._client is not None:
                try:
                    self._client.logout()
                except (exceptions.IMAPClientError, OSError) as e:
                    logger.debug("Ignoring error on logout from %s: %s", self.server.hostname, e)
                self._drop()

    def _select(self, folder):
        if self._selected != folder:
            if not self.client.folder_exists(folder):
                raise FolderNotFound(folder)
            self.client.select_folder(folder)
            self._selected = folder

    def _uid(self, folder, key):
        try:
            return self._uids[folder][key]
        except KeyError:
            pass
        self.list(folder)
        try:
            return self._uids[folder][key]
        except KeyError:
            raise MessageGone(folder, key) from None

    def folders(self):
        """Return the folder names on the server and its hierarchy separator"""
        with self._lock, self._errors():
            folder_data = self.client.list_folders()
        separator = folder_data[0][1].decode("ASCII") if folder_data and folder_data[0][1] else "/"
        return sorted(path for _, _, path in folder_data), separator

    def list(self, folder):
        with self._lock, self._errors(folder):
            self._select(folder)
            messages = self.client.search(['NOT', 'DELETED'])

            envelopes = {}
            uids = {}
            for chunk_ids in chunks(messages, MSG_CHUNK_SIZE):
                info = self.client.fetch(chunk_ids, [MSG_FLAGS, MSG_DATE, MSG_SIZE, MSG_ID_HEADERS])
                for uid, details in info.items():
                    flags = flags_from_imap(details.get(MSG_FLAGS, ()))
                    if Flag.DELETED in flags:
                        continue
                    key = identity_from_headers(_header_data(details))
                    if key in envelopes:
                        logger.debug("Ignoring duplicate of %s in %s (UID %s)", key, folder, uid)
                        continue
                    envelopes[key] = Envelope(key, flags, utc_datetime(details[MSG_DATE]),
                                              details.get(MSG_SIZE, 0))
                    uids[key] = uid

            self._uids[folder] = uids
        return Snapshot(envelopes)

    def fetch_content(self, folder, key):
        with self._lock, self._errors(folder):
            uid = self._uid(folder, key)
            self._select(folder)
            info = self.client.fetch([uid], [MSG_CONTENT])
        if uid not in info or info[uid].get(b"BODY[]") is None:
            raise MessageGone(folder, key)
        return info[uid][b"BODY[]"]

    def create(self, folder, envelope, content):
        with self._lock, self._errors(folder):
            response = self.client.append(folder, content, flags_to_imap(envelope.flags),
                                          envelope.internal_date)
        key = identity_from_headers(content)
        match = APPENDUID_RE.search(response or b"")
        if match:
            self._uids.setdefault(folder, {})[key] = int(match.group(1))
        else:
            # Without UIDPLUS the new UID is only known after the next listing
            self._uids.get(folder, {}).pop(key, None)
        return key

    def delete(self, folder, key):
        with self._lock, self._errors(folder):
            uid = self._uid(folder, key)
            self._select(folder)
            result = self.client.add_flags([uid], [imapclient.DELETED])
            if uid not in result:
                raise MessageGone(folder, key)
            if self.client.has_capability('UIDPLUS'):
                self.client.expunge([uid])
            self._uids[folder].pop(key, None)

    def set_flags(self, folder, key, flags):
        # Only system flags are touched so keywords set by other clients survive
        add = flags_to_imap(flags)
        remove = flags_to_imap(f for f in Flag if f not in flags and f is not Flag.DELETED)
        with self._lock, self._errors(folder):
            uid = self._uid(folder, key)
            self._select(folder)
            result = {}
            if add:
                result.update(self.client.add_flags([uid], add))
            if remove:
                result.update(self.client.remove_flags([uid], remove))
        if uid not in result:
            raise MessageGone(folder, key)
