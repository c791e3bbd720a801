"""pytest configuration"""
from unittest import mock

import pytest

from membership_purge import directory


@pytest.fixture
def conn():
    """Mock ldap3 connection returned by directory.get_connection"""
    conn = mock.MagicMock()
    conn.closed = False
    conn.result = {"result": 0, "description": "success", "message": ""}
    conn.response = []
    with mock.patch.object(directory, "get_connection", return_value=conn):
        yield conn


@pytest.fixture(autouse=True)
def no_connections():
    """Never leave real connections open between tests"""
    with mock.patch.object(directory, "_connections", []):
        yield
