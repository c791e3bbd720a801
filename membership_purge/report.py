"""Flat-file output: CSV error/audit logs and user list input"""

import csv
import os

from tornado.log import app_log

from .utils import isonow

ERROR_FIELDS = ["timestamp", "user", "group", "action", "error"]
REMOVAL_FIELDS = ["timestamp", "user", "group", "result"]

# first-column names recognised as the header row of a user list
USER_LIST_HEADERS = ("samaccountname", "username", "user", "account", "login")


class CSVLog:
    """Append-only CSV log

    The header is written only when starting a new (or empty) file,
    so repeated runs accumulate rows in the same file.
    Each row is flushed immediately.
    """

    def __init__(self, path, fieldnames):
        self.path = path
        self.fieldnames = fieldnames
        self.rows = 0
        new_file = not os.path.exists(path) or os.path.getsize(path) == 0
        self._file = open(path, "a", newline="", encoding="utf-8")
        self._writer = csv.DictWriter(
            self._file, fieldnames=fieldnames, extrasaction="ignore"
        )
        if new_file:
            self._writer.writeheader()
            self._file.flush()

    def record(self, **fields):
        """Write one row, filling in timestamp if not given"""
        fields.setdefault("timestamp", isonow())
        self._writer.writerow(fields)
        self._file.flush()
        self.rows += 1

    def close(self):
        if not self._file.closed:
            self._file.close()
            app_log.info(f"Wrote {self.rows} rows to {self.path}")

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class NullLog:
    """Stand-in for a CSVLog that isn't configured"""

    rows = 0

    def record(self, **fields):
        pass

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        pass


def read_user_list(path):
    """Read a set of lowercase account names from a file

    One name per line; blank lines and # comments are skipped.
    CSV input is accepted too, taking the first column
    and skipping a header row naming it.
    """
    names = set()
    with open(path, newline="", encoding="utf-8-sig") as f:
        for i, row in enumerate(csv.reader(f)):
            if not row:
                continue
            name = row[0].strip()
            if not name or name.startswith("#"):
                continue
            if i == 0 and name.lower() in USER_LIST_HEADERS:
                continue
            names.add(name.lower())
    app_log.info(f"Loaded {len(names)} account names from {path}")
    return names
