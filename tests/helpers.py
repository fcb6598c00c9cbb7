"""
In-memory backend and builders shared by the tests
"""
import threading
from datetime import datetime, timedelta, timezone

from mailsync.envelope import Envelope, Flag, Snapshot, identity_from_headers
from mailsync.errors import BackendUnavailable, FolderNotFound, MessageGone

DATE = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
SEEN = frozenset([Flag.SEEN])
UNSEEN = frozenset()


def env(key, flags=UNSEEN, date=DATE, size=100):
    return Envelope(key, frozenset(flags), date, size)


def later(minutes=1):
    return DATE + timedelta(minutes=minutes)


def snap(*envelopes):
    return Snapshot.of(*envelopes)


def make_message(n, subject=None):
    """Build a small RFC 822 message"""
    subject = subject or f"Message {n}"
    return (
        f"Message-ID: <{n}@example.com>\r\n"
        f"Date: Mon, 15 Jan 2024 10:{n % 60:02d}:00 +0000\r\n"
        f"From: sender{n}@example.com\r\n"
        f"To: me@example.com\r\n"
        f"Subject: {subject}\r\n"
        f"\r\n"
        f"Body of message {n}\r\n"
    ).encode("ascii")


class MemoryBackend:
    """A backend keeping messages in a dict, recording every mutating call.

    `fail_on` maps (method, key) to an exception to raise; `budget`
    limits how many mutating calls succeed before `BackendUnavailable`.
    """

    def __init__(self, name="memory", folders=("INBOX",)):
        self.name = name
        self.folders_data = {folder: {} for folder in folders}
        self.calls = []
        self.fail_on = {}
        self.budget = None
        self.rekey = {}
        self.closed = False
        self._lock = threading.Lock()

    def __repr__(self):
        return f"MemoryBackend({self.name})"

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
        return False

    def close(self):
        self.closed = True

    def folders(self):
        return sorted(self.folders_data), "/"

    def add(self, envelope, content=None, folder="INBOX"):
        if content is None:
            content = f"Subject: {envelope.key}\r\n\r\nbody\r\n".encode("ascii")
        self.folders_data[folder][envelope.key] = (envelope, content)
        return envelope

    def add_message(self, content, flags=UNSEEN, date=DATE, folder="INBOX"):
        key = identity_from_headers(content)
        return self.add(Envelope(key, frozenset(flags), date, len(content)), content, folder)

    def flags(self, key, folder="INBOX"):
        return self.folders_data[folder][key][0].flags

    def keys(self, folder="INBOX"):
        return set(self.folders_data[folder])

    def _messages(self, folder):
        try:
            return self.folders_data[folder]
        except KeyError:
            raise FolderNotFound(folder) from None

    def _check(self, method, key):
        error = self.fail_on.get((method, key)) or self.fail_on.get((method, None))
        if error is not None:
            raise error
        if method in ("create", "delete", "set_flags") and self.budget is not None:
            if self.budget <= 0:
                raise BackendUnavailable(f"{self.name} went away")
            self.budget -= 1

    def list(self, folder):
        self._check("list", None)
        return Snapshot(envelope for envelope, _ in self._messages(folder).values())

    def fetch_content(self, folder, key):
        self._check("fetch_content", key)
        try:
            return self._messages(folder)[key][1]
        except KeyError:
            raise MessageGone(folder, key) from None

    def create(self, folder, envelope, content):
        with self._lock:
            self._check("create", envelope.key)
            self.calls.append(("create", envelope.key))
            key = self.rekey.get(envelope.key, envelope.key)
            self._messages(folder)[key] = (envelope.with_key(key), content)
            return key

    def delete(self, folder, key):
        with self._lock:
            self._check("delete", key)
            self.calls.append(("delete", key))
            if self._messages(folder).pop(key, None) is None:
                raise MessageGone(folder, key)

    def set_flags(self, folder, key, flags):
        with self._lock:
            self._check("set_flags", key)
            self.calls.append(("set_flags", key))
            messages = self._messages(folder)
            if key not in messages:
                raise MessageGone(folder, key)
            envelope, content = messages[key]
            messages[key] = (envelope.with_flags(flags), content)
