"""
Tests for conflict resolution

Tests cover:
- Last writer wins by internal date
- Tie-breaking towards the preferred side
- Deleted sides judged by the base envelope
- Calls that indicate a broken diff
"""
import pytest

from mailsync.backend import Side
from mailsync.conflict import ConflictResolver
from mailsync.envelope import Flag
from mailsync.errors import ConflictPolicyViolation

from .helpers import SEEN, UNSEEN, env, later

FLAGGED = frozenset([Flag.FLAGGED])


class TestLastWriterWins:
    """Tests for date based resolution"""

    def test_later_local_wins(self):
        local = env("m1", SEEN, date=later(10))
        remote = env("m1", FLAGGED, date=later(5))
        resolution = ConflictResolver().resolve("m1", env("m1"), local, remote)
        assert resolution.winner is Side.LOCAL
        assert resolution.envelope == local

    def test_later_remote_wins(self):
        local = env("m1", SEEN, date=later(5))
        remote = env("m1", FLAGGED, date=later(10))
        resolution = ConflictResolver(prefer=Side.LOCAL).resolve("m1", env("m1"), local, remote)
        assert resolution.winner is Side.REMOTE
        assert resolution.envelope == remote

    def test_tie_goes_to_remote_by_default(self):
        resolution = ConflictResolver().resolve("m1", None, env("m1", SEEN), env("m1", FLAGGED))
        assert resolution.winner is Side.REMOTE
        assert resolution.envelope.flags == FLAGGED

    def test_tie_goes_to_preferred_side(self):
        resolver = ConflictResolver(prefer=Side.LOCAL)
        resolution = resolver.resolve("m1", None, env("m1", SEEN), env("m1", FLAGGED))
        assert resolution.winner is Side.LOCAL
        assert resolution.envelope.flags == SEEN


class TestDeletion:
    """Tests for edits racing against deletes"""

    def test_deleted_side_uses_base_date(self):
        base = env("m1", UNSEEN)
        remote = env("m1", SEEN, date=later())
        resolution = ConflictResolver(prefer=Side.LOCAL).resolve("m1", base, None, remote)
        assert resolution.winner is Side.REMOTE
        assert resolution.envelope == remote

    def test_delete_wins_on_tie_when_preferred(self):
        base = env("m1", UNSEEN)
        resolution = ConflictResolver(prefer=Side.LOCAL).resolve("m1", base, None, env("m1", SEEN))
        assert resolution.winner is Side.LOCAL
        assert resolution.envelope is None

    def test_same_inputs_same_outcome(self):
        resolver = ConflictResolver()
        base = env("m1", UNSEEN)
        outcomes = {resolver.resolve("m1", base, None, env("m1", SEEN)) for _ in range(10)}
        assert len(outcomes) == 1


class TestViolations:
    """Tests for inputs the diff should never produce"""

    def test_both_deleted(self):
        with pytest.raises(ConflictPolicyViolation):
            ConflictResolver().resolve("m1", env("m1"), None, None)

    def test_both_agree(self):
        with pytest.raises(ConflictPolicyViolation):
            ConflictResolver().resolve("m1", env("m1"), env("m1", SEEN), env("m1", SEEN, date=later()))

    def test_new_on_one_side(self):
        with pytest.raises(ConflictPolicyViolation):
            ConflictResolver().resolve("m1", None, env("m1"), None)
