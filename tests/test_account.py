"""
Tests for synchronising a whole account

Tests cover:
- Folder discovery, filtering and local folder creation
- One server connection per folder
- End-to-end runs between a Maildir and a server
"""
from unittest.mock import patch

import pytest

from mailsync.account import account_name, sync_account
from mailsync.envelope import Flag, identity_from_headers
from mailsync.imap import ServerInfo
from mailsync.maildir import MaildirBackend
from mailsync.sync import Status

from .helpers import SEEN, MemoryBackend, env, make_message

SERVER = ServerInfo("imap.example.com", 993, "me", "secret", True)


class FakeServer:
    """Hands out connections that all share one in-memory mailbox"""

    def __init__(self, folders):
        self.mailbox = MemoryBackend("server", folders=folders)
        self.connections = []

    def __call__(self, server, timeout=None):
        self.connections.append(self.mailbox)
        return self.mailbox


@pytest.fixture
def server():
    fake = FakeServer(("INBOX", "Archive/2023", "Spam"))
    with patch("mailsync.account.IMAPBackend", fake):
        yield fake


@pytest.fixture
def maildir(tmp_path):
    return MaildirBackend(tmp_path / "Mail")


def test_account_name():
    assert account_name(SERVER) == "me@imap.example.com"


class TestSyncAccount:
    """Tests for account level runs"""

    def test_first_run_downloads_everything(self, server, maildir, store):
        server.mailbox.add_message(make_message(1), flags=SEEN)
        server.mailbox.add_message(make_message(2), folder="Archive/2023")

        results = sync_account(SERVER, maildir, store, workers=2)

        assert [result.folder for result in results] == ["Archive/2023", "INBOX", "Spam"]
        assert all(result.status is Status.COMMITTED for result in results)
        assert maildir.folders() == ["INBOX", "Archive/2023", "Spam"]
        inbox = maildir.list("INBOX")
        assert inbox[identity_from_headers(make_message(1))].flags == SEEN
        assert identity_from_headers(make_message(2)) in maildir.list("Archive/2023")

    def test_one_connection_per_folder(self, server, maildir, store):
        sync_account(SERVER, maildir, store)
        # One to list the folders, then one per folder
        assert len(server.connections) == 4
        assert server.mailbox.closed

    def test_folder_filter(self, server, maildir, store):
        results = sync_account(SERVER, maildir, store,
                               folder_filter=lambda names: [n for n in names if n != "Spam"])
        assert [result.folder for result in results] == ["Archive/2023", "INBOX"]
        assert "Spam" not in maildir.folders()

    def test_local_changes_are_uploaded(self, server, maildir, store):
        server.mailbox.add_message(make_message(1))
        key = identity_from_headers(make_message(1))
        sync_account(SERVER, maildir, store)

        maildir.set_flags("INBOX", key, {Flag.SEEN, Flag.ANSWERED})
        new_key = maildir.create("INBOX", env("new"), make_message(7))

        results = sync_account(SERVER, maildir, store)

        inbox = [result for result in results if result.folder == "INBOX"][0]
        assert inbox.patch.summary() == {"CreateOnRemote": 1, "UpdateFlagsOnRemote": 1}
        assert server.mailbox.flags(key) == {Flag.SEEN, Flag.ANSWERED}
        assert new_key in server.mailbox.keys()

        rerun = sync_account(SERVER, maildir, store)
        assert all(result.patch.is_empty for result in rerun)

    def test_dry_run(self, server, maildir, store):
        maildir.create_folder("INBOX")
        server.mailbox.add_message(make_message(1))

        results = sync_account(SERVER, maildir, store, dry_run=True)

        inbox = [result for result in results if result.folder == "INBOX"][0]
        assert inbox.status is Status.PLANNED
        assert len(maildir.list("INBOX")) == 0
        assert store.load(account_name(SERVER), "INBOX") is None

    def test_reset_forgets_state(self, server, maildir, store):
        server.mailbox.add_message(make_message(1))
        sync_account(SERVER, maildir, store)
        assert store.load(account_name(SERVER), "INBOX") is not None

        sync_account(SERVER, maildir, store, reset=True)
        assert store.load(account_name(SERVER), "INBOX").revision == 1

    def test_account_override(self, server, maildir, store):
        sync_account(SERVER, maildir, store, account="work")
        assert store.load("work", "INBOX") is not None
        assert store.load(account_name(SERVER), "INBOX") is None
