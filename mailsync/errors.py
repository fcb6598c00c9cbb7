# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Errors raised while synchronising a folder"""


class SyncError(Exception):
    """Base class for all synchronisation errors.

    `fatal` errors abort the current cycle and leave the stored base
    untouched; non-fatal ones are absorbed where they happen.
    """
    fatal = True

    @property
    def kind(self):
        return type(self).__name__


class BackendUnavailable(SyncError):
    """The backend could not be reached, or a call to it timed out"""


class FolderNotFound(SyncError):
    """The folder does not exist in the backend"""

    def __init__(self, folder):
        super().__init__(f"folder not found: {folder}")
        self.folder = folder


class MessageGone(SyncError):
    """The message disappeared from the backend since it was listed"""
    fatal = False

    def __init__(self, folder, key):
        super().__init__(f"message {key} no longer exists in {folder}")
        self.folder = folder
        self.key = key


class ConflictPolicyViolation(SyncError):
    """The conflict resolver was asked to decide something it should never see"""


class BaseCommitConflict(SyncError):
    """The stored base changed between reading and committing it"""
    fatal = False


class StateCorrupted(SyncError):
    """A stored base could not be read back"""


class StateUnavailable(SyncError):
    """The state directory could not be written to"""


class SyncCancelled(SyncError):
    """The cycle was cancelled between two operations"""


class ApplyAborted(SyncError):
    """Applying a patch stopped on a fatal error.

    Carries the underlying `cause` and how far the patch got.
    """

    def __init__(self, cause, applied, skipped):
        super().__init__(f"{cause.kind}: {cause} (after {applied} operations)")
        self.cause = cause
        self.applied = applied
        self.skipped = skipped

    @property
    def kind(self):
        return self.cause.kind
