#!/usr/bin/env python
# Copyright 2021 Nicko van Someren
#
# Licensed under the Apache License, Version 2.0 (the "License")
# See the LICENSE.txt file for details

# SPDX-License-Identifier: Apache-2.0

"""Provide a command line interface for mailsync"""

import argparse
import fnmatch
import functools
import logging
import sys
import threading
from getpass import getpass
from pathlib import Path

from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

from mailsync import (ConflictResolver, MaildirBackend, ServerInfo, Side, StateStore, Status,
                      SyncError, sync_account)
from mailsync.envelope import format_flags

STATE_DIR = Path.home() / ".mailsync"


def _folder_matcher(pattern_list, folder_list):
    # A function to match folder names against an ordered list of
    # inclusions and exclusions

    # If the list is non-empty and starts with an include then we start with
    # an empty list, otherwise we start with the full list.
    if pattern_list and pattern_list[0][0] == "+":
        result = []
    else:
        result = list(folder_list)

    for direction, pattern in pattern_list:
        if direction == '+':
            include = fnmatch.filter(folder_list, pattern)
            result.extend(name for name in include if name not in result)
        else:
            exclude = fnmatch.filter(result, pattern)
            result = [name for name in result if name not in exclude]

    return result


def build_parser():
    parser = argparse.ArgumentParser(
        prog="mailsync",
        description="Two-way synchronisation of an IMAP account with a local Maildir")
    parser.add_argument("--host",
                        help="hostname of the IMAP server",
                        default="localhost", metavar="HOSTNAME")
    parser.add_argument("--port",
                        help="port of the IMAP server",
                        type=int, default=None, metavar="PORT")
    parser.add_argument("--no-ssl",
                        help="connect without SSL/TLS",
                        action="store_true")
    parser.add_argument("--user",
                        help="user name on the IMAP server",
                        required=True, metavar="USERNAME")
    parser.add_argument("--password",
                        help="password on the IMAP server",
                        metavar="PASSWORD")
    parser.add_argument("--timeout",
                        help="seconds to wait for any single server response",
                        type=float, default=60, metavar="SECONDS")

    parser.add_argument("--maildir",
                        help="root of the local Maildir tree",
                        required=True, type=Path, metavar="PATH")
    parser.add_argument("--state-dir",
                        help="where to keep synchronisation state (default: ~/.mailsync)",
                        type=Path, metavar="PATH")
    parser.add_argument("--account",
                        help="name to keep synchronisation state under (default: USER@HOST)",
                        metavar="NAME")

    parser.add_argument("--include", "-i",
                        type=lambda x: ('+', x), action="append", dest="filters",
                        metavar="PATTERN",
                        help="Include matching server folders in the list to be synced")
    parser.add_argument("--exclude", "-e",
                        type=lambda x: ('-', x), action="append", dest="filters",
                        metavar="PATTERN",
                        help="Exclude matching server folders from the list to be synced")
    parser.add_argument("--no-inbox", "-n",
                        const=('-', 'INBOX'), action="append_const", dest="filters",
                        help="Exclude INBOX from the list of folders to be synced")

    parser.add_argument("--prefer", choices=[side.value for side in Side],
                        default=Side.REMOTE.value,
                        help="Side that wins a conflict when both changes carry the same date")
    parser.add_argument("--workers", "-j", type=int, default=4, metavar="N",
                        help="Number of folders to synchronise in parallel")
    parser.add_argument("--dry-run", "-D", action="store_true",
                        help="Show what would change without touching either side")
    parser.add_argument("--reset", action="store_true",
                        help="Forget previous synchronisation state and start afresh")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Log every step")
    return parser


def report(results, out=None):
    """Print one line per folder, plus the planned operations of a dry run"""
    if out is None:
        out = sys.stdout
    for result in results:
        if not result.ok:
            print(f"{result.folder}: aborted ({result.error_kind}) after "
                  f"{result.applied} operations: {result.error}", file=out)
            continue

        line = f"{result.folder}: {result.status.value}"
        if result.patch is not None and result.patch.summary():
            counts = ", ".join(f"{name} {count}" for name, count in result.patch.summary().items())
            line += f" [{counts}]"
        if result.skipped:
            line += f", {len(result.skipped)} skipped"
        print(line, file=out)

        if result.status is Status.PLANNED:
            for op in result.patch:
                detail = format_flags(op.flags) if hasattr(op, "flags") else ""
                print(f"    {type(op).__name__} {op.key[:16]} {detail}".rstrip(), file=out)


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.password is None:
        args.password = getpass("IMAP server password:")

    server = ServerInfo(args.host, args.port, args.user, args.password, not args.no_ssl)
    local = MaildirBackend(args.maildir)
    store = StateStore(args.state_dir or STATE_DIR)
    resolver = ConflictResolver(prefer=Side(args.prefer))
    folder_filter = functools.partial(_folder_matcher, args.filters or [])
    cancel = threading.Event()

    try:
        with logging_redirect_tqdm():
            results = sync_account(
                server, local, store,
                resolver=resolver, progress_class=tqdm,
                folder_filter=folder_filter, workers=args.workers,
                timeout=args.timeout, dry_run=args.dry_run, reset=args.reset,
                cancel=cancel,
                account=args.account,
            )
    except KeyboardInterrupt:
        cancel.set()
        print("Folder sync interrupted by user.")
        return 130
    except SyncError as e:
        print(f"Folder sync failed ({e.kind}): {e}")
        return 1

    report(results)
    return 0 if all(result.ok for result in results) else 1


if __name__ == "__main__":
    sys.exit(main())
