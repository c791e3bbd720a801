"""
Directory service (LDAP / Active Directory) calls
"""

import os
import threading

from ldap3 import BASE, MODIFY_DELETE, NTLM, SIMPLE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.core.results import (
    RESULT_NO_SUCH_ATTRIBUTE,
    RESULT_SUCCESS,
    RESULT_UNWILLING_TO_PERFORM,
)
from ldap3.utils.dn import parse_dn
from tornado.log import app_log

# connection settings for the privileged service identity
LDAP_SERVER = os.environ.get("LDAP_SERVER")
LDAP_BIND_USER = os.environ.get("LDAP_BIND_USER")
LDAP_BIND_PASSWORD = os.environ.get("LDAP_BIND_PASSWORD")
LDAP_AUTHENTICATION = (os.environ.get("LDAP_AUTHENTICATION") or "SIMPLE").upper()
LDAP_USE_SSL = os.environ.get("LDAP_USE_SSL", "") == "1"
LDAP_CONNECT_TIMEOUT = int(os.environ.get("LDAP_CONNECT_TIMEOUT") or 10)
LDAP_PAGE_SIZE = int(os.environ.get("LDAP_PAGE_SIZE") or 500)

# user accounts with the ACCOUNTDISABLE (0x2) bit set in userAccountControl
# 1.2.840.113556.1.4.803 is the AD bitwise-AND matching rule
DISABLED_USERS_FILTER = (
    "(&(objectCategory=person)(objectClass=user)"
    "(userAccountControl:1.2.840.113556.1.4.803:=2))"
)

# AD answers unwillingToPerform with this extended error
# (ERROR_MEMBER_NOT_IN_ALIAS) when removing a member that isn't in the group
AD_MEMBER_NOT_IN_GROUP = "00000561"

USER_ATTRIBUTES = ["sAMAccountName", "userAccountControl", "memberOf"]

_local = threading.local()
_connections = []
_connections_lock = threading.Lock()


class DirectoryError(Exception):
    """An operation rejected by the directory server

    .result is the ldap3 result dict, if there was one
    """

    def __init__(self, message, result=None):
        super().__init__(message)
        self.result = result or {}

    @property
    def code(self):
        return self.result.get("result")


def _first(value):
    """First value of a (possibly multi-valued) attribute"""
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _as_list(value):
    """All values of a (possibly single-valued) attribute"""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _check_result(conn, action):
    """Raise DirectoryError if the last operation on conn did not succeed"""
    result = conn.result or {}
    if result.get("result", RESULT_SUCCESS) != RESULT_SUCCESS:
        raise DirectoryError(
            f"{action} failed: {result.get('description')} {result.get('message') or ''}".strip(),
            result,
        )


def connect():
    """Open and bind a new connection as the service identity"""
    missing = [
        name
        for name, value in (
            ("LDAP_SERVER", LDAP_SERVER),
            ("LDAP_BIND_USER", LDAP_BIND_USER),
            ("LDAP_BIND_PASSWORD", LDAP_BIND_PASSWORD),
        )
        if not value
    ]
    if missing:
        raise DirectoryError(f"Missing directory configuration: {', '.join(missing)}")
    if LDAP_AUTHENTICATION not in {"SIMPLE", "NTLM"}:
        raise DirectoryError(
            f"Unsupported LDAP_AUTHENTICATION={LDAP_AUTHENTICATION}, use SIMPLE or NTLM"
        )

    app_log.info(f"Connecting to {LDAP_SERVER} as {LDAP_BIND_USER}")
    server = Server(
        LDAP_SERVER, use_ssl=LDAP_USE_SSL, connect_timeout=LDAP_CONNECT_TIMEOUT
    )
    return Connection(
        server,
        user=LDAP_BIND_USER,
        password=LDAP_BIND_PASSWORD,
        authentication=NTLM if LDAP_AUTHENTICATION == "NTLM" else SIMPLE,
        auto_bind=True,
        raise_exceptions=False,
    )


def get_connection():
    """Get the bound connection for the current thread

    ldap3 sync connections are not safe to share between threads,
    so each worker thread gets its own.
    """
    conn = getattr(_local, "connection", None)
    if conn is not None and not conn.closed:
        return conn
    conn = connect()
    _local.connection = conn
    with _connections_lock:
        _connections.append(conn)
    return conn


def close_connections():
    """Unbind every connection opened by worker threads"""
    with _connections_lock:
        connections = _connections[:]
        _connections[:] = []
    for conn in connections:
        try:
            conn.unbind()
        except LDAPException as e:
            app_log.warning(f"Error closing directory connection: {e}")
    if connections:
        app_log.debug(f"Closed {len(connections)} directory connections")


def group_name(group_dn):
    """Return the CN of a group, given its DN"""
    try:
        return parse_dn(group_dn)[0][1]
    except (IndexError, LDAPException):
        return group_dn


def wrap_user(dn, attributes):
    """Build a user dict from a search result entry, adding logName field"""
    sam = _first(attributes.get("sAMAccountName"))
    return {
        "dn": dn,
        "sAMAccountName": sam,
        "userAccountControl": _first(attributes.get("userAccountControl")),
        "memberOf": _as_list(attributes.get("memberOf")),
        "logName": sam or dn,
    }


def list_users(search_base, ldap_filter=DISABLED_USERS_FILTER):
    """yield every user below search_base matching ldap_filter"""
    conn = get_connection()
    app_log.info(f"Listing users in {search_base} matching {ldap_filter}")
    count = 0
    for entry in conn.extend.standard.paged_search(
        search_base=search_base,
        search_filter=ldap_filter,
        search_scope=SUBTREE,
        attributes=USER_ATTRIBUTES,
        paged_size=LDAP_PAGE_SIZE,
        generator=True,
    ):
        # skip referrals
        if entry.get("type") != "searchResEntry":
            continue
        count += 1
        yield wrap_user(entry["dn"], entry.get("attributes") or {})
    _check_result(conn, f"Search of {search_base}")
    app_log.info(f"Found {count} users in {search_base}")


def groups_for_user(user):
    """Return the DNs of the groups the user is directly a member of

    Read fresh from the user's memberOf,
    which does not include the primary group (primaryGroupID).
    """
    conn = get_connection()
    conn.search(
        search_base=user["dn"],
        search_filter="(objectClass=*)",
        search_scope=BASE,
        attributes=["memberOf"],
    )
    _check_result(conn, f"Reading groups of {user['logName']}")
    for entry in conn.response or []:
        if entry.get("type") == "searchResEntry":
            groups = _as_list((entry.get("attributes") or {}).get("memberOf"))
            app_log.debug(f"User {user['logName']} is in {len(groups)} groups")
            return groups
    return []


def remove_member(group_dn, user):
    """Remove a user from one group

    Returns True if the membership was removed,
    False if the user was already not a member.
    """
    conn = get_connection()
    conn.modify(group_dn, {"member": [(MODIFY_DELETE, [user["dn"]])]})
    result = conn.result or {}
    code = result.get("result")
    if code == RESULT_SUCCESS:
        return True
    if code == RESULT_NO_SUCH_ATTRIBUTE or (
        code == RESULT_UNWILLING_TO_PERFORM
        and (result.get("message") or "").startswith(AD_MEMBER_NOT_IN_GROUP)
    ):
        app_log.warning(
            f"User {user['logName']} is already not a member of {group_name(group_dn)}"
        )
        return False
    raise DirectoryError(
        f"Removing {user['logName']} from {group_name(group_dn)} failed:"
        f" {result.get('description')} {result.get('message') or ''}".rstrip(),
        result,
    )
