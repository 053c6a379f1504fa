"""Tests for error classification module."""
import errno
import socket

from asyncpg.exceptions import ConnectionDoesNotExistError, InterfaceError

from queryrouter.errors import (
    ConnectionLossClassifier,
    TransientConnectionError,
    UnclassifiedExecutionError,
    classify_error,
    error_message,
    is_connection_loss,
)


class CodedError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


class TestConnectionLossCodes:
    """Tests for errors recognized by their machine code."""

    def test_connection_reset(self):
        assert is_connection_loss(ConnectionResetError(errno.ECONNRESET, "Connection reset by peer"))

    def test_connection_reset_without_errno(self):
        assert is_connection_loss(ConnectionResetError())

    def test_host_not_found(self):
        error = socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        assert ConnectionLossClassifier.error_code(error) == "ENOTFOUND"
        assert is_connection_loss(error)

    def test_host_unreachable(self):
        assert is_connection_loss(OSError(errno.EHOSTUNREACH, "No route to host"))

    def test_string_code_attribute(self):
        assert is_connection_loss(CodedError("boom", "ECONNRESET"))

    def test_other_os_error_is_not_connection_loss(self):
        assert not is_connection_loss(OSError(errno.EACCES, "Permission denied"))


class TestConnectionLossMessages:
    """Tests for errors recognized by their message."""

    def test_connection_terminated(self):
        assert is_connection_loss(Exception("Connection terminated unexpectedly"))

    def test_asyncpg_closed_mid_operation(self):
        error = ConnectionDoesNotExistError("connection was closed in the middle of operation")
        assert is_connection_loss(error)

    def test_asyncpg_connection_is_closed(self):
        assert is_connection_loss(InterfaceError("cannot call Connection.prepare(): connection is closed"))

    def test_syntax_error_is_not_connection_loss(self):
        assert not is_connection_loss(Exception('syntax error at or near "FORM"'))

    def test_classification_is_deterministic(self):
        error = Exception("relation \"missing\" does not exist")
        assert is_connection_loss(error) == is_connection_loss(error)


class TestClassifyError:
    """Tests for wrapping raw failures."""

    def test_transient(self):
        original = ConnectionResetError(errno.ECONNRESET, "Connection reset by peer")
        failure = classify_error(original)

        assert isinstance(failure, TransientConnectionError)
        assert failure.original is original
        assert "Connection reset by peer" in str(failure)

    def test_unclassified(self):
        failure = classify_error(Exception('column "nme" does not exist'))

        assert isinstance(failure, UnclassifiedExecutionError)
        assert str(failure) == 'column "nme" does not exist'

    def test_error_message_falls_back_to_class_name(self):
        assert error_message(TimeoutError()) == "TimeoutError"
