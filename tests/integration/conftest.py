import os

import pytest


@pytest.fixture(scope="session")
def test_sqlserver_connection_string():
    """ODBC connection string of a disposable SQL Server database."""
    connection_string = os.environ.get("SQLSCHEMA_TEST_DSN")
    if not connection_string:
        pytest.skip("SQLSCHEMA_TEST_DSN is not set")
    return connection_string
