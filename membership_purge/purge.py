"""Remove the group memberships of disabled users below an OU"""

import asyncio
import os
import sys
import time
from collections import defaultdict
from contextlib import ExitStack
from functools import partial

from ldap3.core.exceptions import LDAPException
from tornado.log import app_log
from tornado.options import Error as OptionsError
from tornado.options import define, options, parse_command_line

from . import directory
from .report import (
    ERROR_FIELDS,
    REMOVAL_FIELDS,
    USER_LIST_HEADERS,
    CSVLog,
    NullLog,
    read_user_list,
)
from .utils import in_thread, timer

# bounds on the number of users processed at once
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 5

# number of users processed at once
CONCURRENCY = int(os.environ.get("CONCURRENCY") or MAX_CONCURRENCY)
# number of unexpected failures to allow before aborting (0: never abort)
# directory errors on individual memberships are logged, not counted here
MAX_FAILURES = int(os.environ.get("MAX_FAILURES") or 0)

# intervals (number and time) for logging progress
LOG_COUNT_INTERVAL = int(os.environ.get("LOG_COUNT_INTERVAL") or 100)
LOG_TIME_INTERVAL = int(os.environ.get("LOG_TIME_INTERVAL") or 30)

define(
    "search_base",
    type=str,
    default=os.environ.get("SEARCH_BASE") or "",
    help="distinguished name of the OU holding the accounts to clean up",
)
define(
    "concurrency",
    type=int,
    default=CONCURRENCY,
    help=f"number of users to process at once ({MIN_CONCURRENCY}-{MAX_CONCURRENCY})",
)
define(
    "user_filter",
    type=str,
    default=directory.DISABLED_USERS_FILTER,
    help="LDAP filter selecting the accounts to clean up (default: disabled users)",
)
define(
    "users_file",
    type=str,
    default="",
    help=(
        "only process accounts named in this file (one sAMAccountName per line,"
        " or the first CSV column; a first row naming the column as one of"
        f" {', '.join(USER_LIST_HEADERS)} is skipped as a header)"
    ),
)
define(
    "keep_groups",
    type=str,
    default=os.environ.get("KEEP_GROUPS") or "",
    help="semicolon-separated group CNs or DNs to leave in place",
)
define(
    "error_csv",
    type=str,
    default=os.environ.get("ERROR_CSV") or "membership-errors.csv",
    help="CSV file receiving one row per failed operation",
)
define(
    "removal_csv",
    type=str,
    default=os.environ.get("REMOVAL_CSV") or "",
    help="CSV file receiving one row per removed membership (optional)",
)
define(
    "max_failures",
    type=int,
    default=MAX_FAILURES,
    help="abort after this many unexpected failures (0: never)",
)
define(
    "dry_run",
    type=bool,
    default=False,
    help="dry run (log what would be removed, don't modify the directory)",
)


def check_concurrency(concurrency):
    """Reject worker counts outside the allowed range"""
    if not MIN_CONCURRENCY <= concurrency <= MAX_CONCURRENCY:
        raise ValueError(
            f"concurrency must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY},"
            f" not {concurrency}"
        )
    return concurrency


def parse_keep_groups(value):
    """Parse a semicolon-separated list of group names into a lowercase set"""
    if not value:
        return set()
    if isinstance(value, str):
        value = value.split(";")
    return {name.strip().lower() for name in value if name.strip()}


def is_kept(group_dn, keep):
    """Whether a group is listed (by DN or CN) as one to leave alone"""
    if not keep:
        return False
    return (
        group_dn.lower() in keep or directory.group_name(group_dn).lower() in keep
    )


async def consume_concurrently(
    iterable,
    process_one,
    label="Purge",
    concurrency=CONCURRENCY,
    max_failures=MAX_FAILURES,
    counts=None,
    readahead_limit=None,
):
    """Run process_one on every item, with at most `concurrency` at a time

    Yields the results of items that succeeded.
    Items that raise are logged and counted as failed;
    once max_failures is reached (if nonzero) the error is re-raised.
    """
    if counts is None:
        counts = defaultdict(int)
    if readahead_limit is None:
        readahead_limit = concurrency * 3

    sem = asyncio.Semaphore(concurrency)
    readahead_sem = asyncio.Semaphore(readahead_limit)

    tic = time.perf_counter()
    last_log = {"count": 0, "time": tic}

    async def process_with_semaphore(item):
        try:
            async with sem:
                return await process_one(item)
        finally:
            readahead_sem.release()

    def log_progress(*, extra="", force=False):
        toc = time.perf_counter()
        if (
            not force
            and counts["done"] < last_log["count"] + LOG_COUNT_INTERVAL
            and toc < last_log["time"] + LOG_TIME_INTERVAL
        ):
            return
        counts_str = ", ".join(
            f"{key}={value}" for key, value in sorted(counts.items())
        )
        delta_t = toc - last_log["time"]
        rate = (counts["done"] - last_log["count"]) / delta_t if delta_t else 0
        app_log.info(
            f"{label} counts{' ' + extra if extra else ''}"
            f" (elapsed={toc - tic:.0f}s {rate:.1f} it/s): {counts_str}"
        )
        last_log["count"] = counts["done"]
        last_log["time"] = toc

    async def collect(pending, timeout):
        """Wait for pending tasks, check for failures and log progress"""
        done, pending = await asyncio.wait(pending, timeout=timeout)
        counts["done"] += len(done)
        counts["todo"] -= len(done)
        results = []
        for f in done:
            exc = f.exception()
            if exc is None:
                results.append(f.result())
                continue
            counts["failed"] += 1
            app_log.error(f"Failure processing {label} item", exc_info=exc)
            if max_failures and counts["failed"] >= max_failures:
                log_progress(extra="aborting", force=True)
                for task in pending:
                    task.cancel()
                raise exc
        log_progress()
        return results, pending

    if not hasattr(iterable, "__aiter__"):
        sync_iterable = iterable

        async def aiter():
            for item in sync_iterable:
                yield item

        iterable = aiter()

    pending = set()
    async for item in iterable:
        counts["total"] += 1
        counts["todo"] += 1
        await readahead_sem.acquire()
        pending.add(asyncio.ensure_future(process_with_semaphore(item)))
        if len(pending) >= concurrency:
            results, pending = await collect(pending, timeout=1e-3)
            for result in results:
                yield result

    while pending:
        results, pending = await collect(pending, timeout=1)
        for result in results:
            yield result

    log_progress(extra="completed", force=True)


async def find_users(search_base, user_filter=directory.DISABLED_USERS_FILTER, only=None):
    """Find the accounts to clean up

    If `only` is given (a set of lowercase sAMAccountNames),
    accounts not named in it are skipped.
    """
    # the generator is iterated, and so connects, in the worker thread
    users = await in_thread(list, directory.list_users(search_base, user_filter))
    if only is None:
        return users

    selected = []
    seen = set()
    for user in users:
        sam = (user["sAMAccountName"] or "").lower()
        if sam in only:
            selected.append(user)
            seen.add(sam)
        else:
            app_log.debug(f"Skipping {user['logName']}, not in user list")
    for missing in sorted(only - seen):
        app_log.warning(f"Account {missing} not found in {search_base}")
    app_log.info(f"Selected {len(selected)}/{len(users)} users from user list")
    return selected


async def purge_user(
    user, *, keep=frozenset(), dry_run=False, errors=None, removals=None, counts=None
):
    """Remove one user from each of its groups, one at a time

    Failures are logged and recorded in `errors`;
    they don't stop the remaining removals.
    Returns the number of groups removed (or that would be, in a dry run).
    """
    if errors is None:
        errors = NullLog()
    if removals is None:
        removals = NullLog()
    if counts is None:
        counts = defaultdict(int)
    name = user["logName"]

    try:
        groups = await in_thread(directory.groups_for_user, user)
    except (directory.DirectoryError, LDAPException) as e:
        app_log.error(f"Failed to list groups for {name}: {e}")
        counts["errors"] += 1
        errors.record(user=name, group="", action="list_groups", error=str(e))
        return

    if not groups:
        app_log.info(f"User {name} has no group memberships")
        return

    removed = 0
    for group_dn in groups:
        cn = directory.group_name(group_dn)
        counts["groups"] += 1
        if is_kept(group_dn, keep):
            app_log.info(f"Keeping {name} in {cn}")
            counts["kept"] += 1
            continue
        if dry_run:
            app_log.info(f"(not really) Removing {name} from {cn}")
            removed += 1
            removals.record(user=name, group=group_dn, result="dry_run")
            continue
        try:
            was_member = await in_thread(directory.remove_member, group_dn, user)
        except (directory.DirectoryError, LDAPException) as e:
            app_log.error(f"Failed to remove {name} from {cn}: {e}")
            counts["errors"] += 1
            errors.record(user=name, group=group_dn, action="remove_member", error=str(e))
            continue
        if was_member:
            app_log.info(f"Removed {name} from {cn}")
            counts["removed"] += 1
            removed += 1
            removals.record(user=name, group=group_dn, result="removed")
        else:
            counts["not_member"] += 1
            removals.record(user=name, group=group_dn, result="not_member")

    app_log.info(
        f"{'(not really) ' * dry_run}Removed {name} from {removed}/{len(groups)} groups"
    )
    return removed


async def purge_memberships(
    search_base,
    *,
    concurrency=CONCURRENCY,
    user_filter=directory.DISABLED_USERS_FILTER,
    only=None,
    keep=None,
    dry_run=False,
    error_csv="membership-errors.csv",
    removal_csv=None,
    max_failures=MAX_FAILURES,
):
    """Remove every group membership of the matching users below search_base

    Returns the counts dict.
    """
    if not search_base:
        raise ValueError("search_base is required")
    check_concurrency(concurrency)
    keep = parse_keep_groups(keep)
    counts = defaultdict(int)
    label = f"Membership purge{' (dry run)' * dry_run}"

    try:
        with ExitStack() as stack:
            errors = stack.enter_context(CSVLog(error_csv, ERROR_FIELDS))
            removals = stack.enter_context(
                CSVLog(removal_csv, REMOVAL_FIELDS) if removal_csv else NullLog()
            )
            try:
                with timer(f"Listed users in {search_base}"):
                    users = await find_users(search_base, user_filter, only=only)
            except (directory.DirectoryError, LDAPException) as e:
                app_log.error(f"Failed to list users in {search_base}: {e}")
                errors.record(user="", group="", action="list_users", error=str(e))
                raise
            counts["users"] = len(users)

            process_one = partial(
                purge_user,
                keep=keep,
                dry_run=dry_run,
                errors=errors,
                removals=removals,
                counts=counts,
            )
            async for _ in consume_concurrently(
                users,
                process_one,
                label=label,
                concurrency=concurrency,
                max_failures=max_failures,
                counts=counts,
            ):
                pass
    finally:
        directory.close_connections()
    return counts


def main(argv=None):
    """Command-line entrypoint, returns the exit status"""
    try:
        parse_command_line(argv)
        check_concurrency(options.concurrency)
        if not options.search_base:
            raise ValueError("--search_base is required")
        only = read_user_list(options.users_file) if options.users_file else None
    except (OptionsError, ValueError, OSError) as e:
        app_log.error(f"{e}")
        return 2

    with timer(f"Removed group memberships{' (dry run)' * options.dry_run}"):
        try:
            counts = asyncio.run(
                purge_memberships(
                    options.search_base,
                    concurrency=options.concurrency,
                    user_filter=options.user_filter,
                    only=only,
                    keep=options.keep_groups,
                    dry_run=options.dry_run,
                    error_csv=options.error_csv,
                    removal_csv=options.removal_csv or None,
                    max_failures=options.max_failures,
                )
            )
        except (directory.DirectoryError, LDAPException):
            return 1
        except OSError as e:
            # unwritable --error_csv or --removal_csv
            app_log.error(f"{e}")
            return 2
        except Exception:
            app_log.exception("Membership purge aborted")
            return 1

    if counts["errors"] or counts["failed"]:
        app_log.warning(
            f"Finished with {counts['errors'] + counts['failed']} errors,"
            f" see {options.error_csv}"
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
