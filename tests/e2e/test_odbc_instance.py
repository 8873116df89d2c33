"""
Read-only checks against a real SQL Server instance.

Run with:
    AGRESTORE_E2E_TESTS=1 MSSQL_CONNECTION_STRING="Driver={ODBC Driver 18 for SQL Server};Server=localhost;..." pytest tests/e2e
"""

import os

import pytest

from dbaas.agrestore.backends import CatalogView, CommandFailedError
from dbaas.agrestore.environment import InstanceEnvironment
from dbaas.agrestore.security import PrincipalGraphCapture
from dbaas.agrestore.tools import PermissionsCLI

pytestmark = pytest.mark.skipif(
    os.environ.get("AGRESTORE_E2E_TESTS", "0") != "1",
    reason="E2E tests disabled. Set AGRESTORE_E2E_TESTS=1 to enable.",
)


def test_connects(odbc_backend):
    assert odbc_backend.is_connected


def test_discovers_environment(odbc_backend):
    environment = InstanceEnvironment.discover(odbc_backend)

    assert environment.server_name
    assert environment.major_version >= 11
    assert environment.data_path
    assert environment.log_path


def test_master_exists(odbc_backend):
    assert odbc_backend.database_exists("master")
    assert not odbc_backend.database_exists("agrestore_does_not_exist")


def test_sysadmin_check(odbc_backend):
    assert isinstance(odbc_backend.is_sysadmin(), bool)


def test_read_principals_of_master(odbc_backend):
    rows = odbc_backend.read_catalog("master", CatalogView.PRINCIPALS)
    assert any(row["name"] == "dbo" for row in rows)


def test_capture_master(odbc_backend):
    snapshot = PrincipalGraphCapture(odbc_backend).capture("master")
    assert snapshot.database == "master"
    assert all(not p.name.startswith("##") for p in snapshot.principals)


def test_replay_order_of_master(odbc_backend):
    output = PermissionsCLI(odbc_backend).order("master")
    assert output.startswith("Replay order (roles-first) for master")


def test_missing_backup_is_reported(odbc_backend):
    with pytest.raises(CommandFailedError):
        odbc_backend.restore_file_list("X:\\agrestore\\does_not_exist.bak")
