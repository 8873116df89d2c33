"""
E2E test fixtures for agrestore.

These tests require a reachable SQL Server instance and the ODBC driver.
They only read from the instance.
"""

import os

import pytest

from dbaas.agrestore.config import RestoreToolConfig

# Skip E2E tests if not in E2E mode
E2E_ENABLED = os.environ.get("AGRESTORE_E2E_TESTS", "0") == "1"


@pytest.fixture(scope="session")
def e2e_config() -> RestoreToolConfig:
    """Configuration of the instance under test, from MSSQL_* variables."""
    if not E2E_ENABLED:
        pytest.skip("E2E tests disabled")
    if not os.environ.get("MSSQL_CONNECTION_STRING"):
        pytest.skip("Set MSSQL_CONNECTION_STRING to run E2E tests")
    return RestoreToolConfig.from_env()


@pytest.fixture
def odbc_backend(e2e_config):
    """Connected ODBC backend, closed after the test."""
    from dbaas.agrestore.backends.odbc import OdbcInstanceBackend

    backend = OdbcInstanceBackend(e2e_config.connection, e2e_config.audit)
    backend.connect()
    yield backend
    backend.close()
