"""Tests for error handling across components."""

import logging

import pytest

from kata_manager.exceptions import (
    ClusterUnreachableError,
    CommandDeclinedError,
    ConfigurationError,
    KataManagerError,
    KubernetesError,
    ManifestError,
    OperationAborted,
    RemoteCommandError,
    RemoteConnectionError,
    RemoteExecutionError,
    WorkloadFailedError,
)
from kata_manager.logging_config import get_logger, setup_logging


def test_custom_exception_with_details():
    """Test that custom exceptions support message and details."""
    error = RemoteConnectionError("Cannot connect to ubuntu@10.0.0.11:22", "No route to host")

    assert error.message == "Cannot connect to ubuntu@10.0.0.11:22"
    assert error.details == "No route to host"
    assert "Cannot connect" in str(error)
    assert "No route to host" in str(error)


def test_custom_exception_without_details():
    """Test that custom exceptions work without details."""
    error = ManifestError("Rendered manifest contains no documents")

    assert error.message == "Rendered manifest contains no documents"
    assert error.details is None
    assert str(error) == "Rendered manifest contains no documents"


def test_exception_hierarchy():
    """Test that all custom exceptions inherit from KataManagerError."""
    for exc in (
        ConfigurationError,
        KubernetesError,
        ManifestError,
        RemoteExecutionError,
        OperationAborted,
        WorkloadFailedError,
    ):
        assert issubclass(exc, KataManagerError)
    assert issubclass(ClusterUnreachableError, KubernetesError)
    assert issubclass(RemoteConnectionError, RemoteExecutionError)
    assert issubclass(RemoteCommandError, RemoteExecutionError)
    assert issubclass(CommandDeclinedError, RemoteExecutionError)


def test_remote_command_error_keeps_exit_status():
    error = RemoteCommandError("Command failed on w1 with exit status 127", "command not found", 127)

    assert error.exit_status == 127
    assert "Details: command not found" in error.format_message()


def test_logging_setup():
    """Test that logging can be configured."""
    setup_logging()

    assert logging.getLogger().level == logging.INFO

    logger = get_logger("test")
    assert logger is not None
    assert logger.name == "test"


def test_logging_with_verbose():
    """Test that verbose mode sets DEBUG level."""
    setup_logging(verbose=True)

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("paramiko").level == logging.WARNING


def test_logging_to_file(tmp_path):
    log_file = tmp_path / "logs" / "kata.log"

    setup_logging(log_file=log_file)
    get_logger("kata_manager.test").debug("ssh target detail")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert "ssh target detail" in log_file.read_text()
    assert any(
        h.level == logging.WARNING
        for h in logging.getLogger().handlers
        if not isinstance(h, logging.FileHandler)
    )


def test_exception_can_be_caught_as_base_class():
    """Test that specific exceptions can be caught as KataManagerError."""
    with pytest.raises(KataManagerError) as exc_info:
        raise WorkloadFailedError("kata-deploy pod is in CrashLoopBackOff")

    assert isinstance(exc_info.value, WorkloadFailedError)
