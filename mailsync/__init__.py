# mailsync

# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""A library and tool for two-way synchronisation of mail folders"""

from .account import sync_account
from .backend import Backend, Side
from .conflict import ConflictResolver, Resolution
from .diff import (Patch, build_patch, CreateOnLocal, CreateOnRemote, DeleteOnLocal,
                   DeleteOnRemote, UpdateFlagsOnLocal, UpdateFlagsOnRemote)
from .envelope import Envelope, Flag, Snapshot
from .errors import (SyncError, BackendUnavailable, FolderNotFound, MessageGone,
                     ConflictPolicyViolation, BaseCommitConflict, StateCorrupted, StateUnavailable,
                     SyncCancelled)
from .imap import IMAPBackend, ServerInfo
from .maildir import MaildirBackend
from .patch import PatchApplier
from .state import StateStore
from .sync import Synchronizer, SyncJob, SyncResult, Status
