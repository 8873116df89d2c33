"""
Unit tests for the ODBC backend helpers.

Tests cover:
- Replay anomaly extraction from informational messages
- Translation of pyodbc errors into backend errors
"""

import pyodbc

from dbaas.agrestore.backends import BackendConnectionError, BackendTimeoutError, CommandFailedError
from dbaas.agrestore.backends.odbc import _translate, parse_anomalies


class TestParseAnomalies:
    """Tests for parse_anomalies."""

    def test_extracts_marked_messages(self):
        messages = [
            "[Microsoft][ODBC Driver 18 for SQL Server][SQL Server]Changed database context to 'SalesDB'.",
            "[Microsoft][ODBC Driver 18 for SQL Server][SQL Server]REPLAY-ANOMALY: "
            "ALTER ROLE [Top] ADD MEMBER [alice] | role Top does not exist",
        ]
        assert parse_anomalies(messages) == ["ALTER ROLE [Top] ADD MEMBER [alice] | role Top does not exist"]

    def test_no_anomalies(self):
        assert parse_anomalies(["Command executed"]) == []


class TestTranslate:
    """Tests for pyodbc error translation."""

    def test_timeout(self):
        error = pyodbc.OperationalError("HYT00", "[Microsoft][ODBC Driver 18 for SQL Server]Query timeout expired")
        assert isinstance(_translate(error), BackendTimeoutError)

    def test_connection_failure(self):
        error = pyodbc.OperationalError(
            "08001", "[Microsoft][ODBC Driver 18 for SQL Server]TCP Provider: No connection could be made"
        )
        assert isinstance(_translate(error), BackendConnectionError)

    def test_server_rejection_keeps_server_text(self):
        error = pyodbc.ProgrammingError(
            "42000",
            "[Microsoft][ODBC Driver 18 for SQL Server][SQL Server]Cannot drop the user 'alice', "
            "because it does not exist or you do not have permission.",
        )
        translated = _translate(error)
        assert isinstance(translated, CommandFailedError)
        assert translated.server_message.startswith("Cannot drop the user 'alice'")
