# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Synchronise every folder of one IMAP account with a local Maildir"""

import logging
from contextlib import ExitStack

from .imap import IMAPBackend, ServerInfo
from .maildir import MaildirBackend
from .sync import SyncJob, Synchronizer
from .util import DummyProgress

logger = logging.getLogger(__name__)


def account_name(server: ServerInfo):
    return f"{server.username}@{server.hostname}"


def sync_account(
        server: ServerInfo, local: MaildirBackend, store,
        resolver=None, progress_class=None,
        folder_filter=None, workers: int = 4, timeout: float = 60,
        dry_run: bool = False, reset: bool = False, cancel=None,
        account=None,
        ):
    """Sync the folders of `server` with `local`, one cycle per folder.

    State is kept under `account`, which defaults to "user@host".
    Returns the list of per-folder `SyncResult`s. Each folder gets its
    own IMAP connection so that folders can be processed in parallel.
    """

    if progress_class is None:
        progress_class = DummyProgress
    if account is None:
        account = account_name(server)

    with progress_class(desc="Connecting to server") as progress:
        with IMAPBackend(server, timeout=timeout) as lister:
            progress.set_description("Finding folders")
            folders, separator = lister.folders()

        local.separator = separator

        # Filter folder list
        if folder_filter is not None:
            filtered_names = folder_filter(folders)
            folders = [path for path in folders if path in filtered_names]

        if not dry_run:
            progress.set_description("Checking local folders")
            for folder in folders:
                local.create_folder(folder)

        if reset:
            for folder in folders:
                store.discard(account, folder)

        synchronizer = Synchronizer(store, resolver=resolver, progress_class=progress_class)

        progress.set_description("Synchronising folders")
        progress.reset(total=len(folders))

        # Make sure that every connection gets closed, whatever happens
        with ExitStack() as stack:
            jobs = []
            for folder in folders:
                remote = stack.enter_context(IMAPBackend(server, timeout=timeout))
                jobs.append(SyncJob(account, folder, local, remote))
            return synchronizer.sync_all(jobs, max_workers=workers, cancel=cancel,
                                         dry_run=dry_run, progress=progress)
