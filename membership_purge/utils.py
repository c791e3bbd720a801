"""General utilities"""
import asyncio
import datetime
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

from tornado.log import app_log

# worker threads for blocking directory calls
# the number of users in flight is bounded separately by the purge concurrency
N_THREADS = int(os.environ.get("DIRECTORY_THREADS") or 5)

# demote ldap3 logger to warning; it can log full request/response dumps
logging.getLogger("ldap3").setLevel(logging.WARNING)

pool = ThreadPoolExecutor(N_THREADS, thread_name_prefix="directory")


def in_thread(f, *args, **kwargs):
    """call the given function in a thread"""
    return asyncio.wrap_future(pool.submit(f, *args, **kwargs))


@contextmanager
def timer(message):
    """Context manager for reporting time measurements"""
    tic = time.perf_counter()
    extra = ""
    try:
        yield
    except Exception:
        extra = " (failed)"
        raise
    finally:
        toc = time.perf_counter()
        ms = int(1000 * (toc - tic))
        app_log.info(f"{message}{extra}: {ms}ms")


def isoformat(dt):
    """iso8601 utc timestamp with Z instead of +00:00"""
    if dt is None:
        return dt
    if dt.tzinfo:
        return dt.astimezone(datetime.timezone.utc).isoformat().split("+", 1)[0] + "Z"
    else:
        return dt.isoformat() + "Z"


def isonow():
    """ISO8601 UTC timestamp for now"""
    return isoformat(datetime.datetime.now(datetime.timezone.utc))
