"""Custom exceptions for kata manager."""


class KataManagerError(Exception):
    """Base exception for all kata manager errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ConfigurationError(KataManagerError):
    """Exception raised for configuration errors."""

    pass


class KubernetesError(KataManagerError):
    """Exception raised for Kubernetes API or kubectl errors."""

    pass


class ClusterUnreachableError(KubernetesError):
    """Exception raised when the cluster API cannot be reached."""

    pass


class ManifestError(KataManagerError):
    """Exception raised for missing or invalid manifest templates."""

    pass


class RemoteExecutionError(KataManagerError):
    """Base exception for remote command execution."""

    pass


class RemoteConnectionError(RemoteExecutionError):
    """Exception raised when an SSH connection cannot be established."""

    pass


class RemoteCommandError(RemoteExecutionError):
    """Exception raised when a remote command exits non-zero."""

    def __init__(self, message: str, details: str = None, exit_status: int = 1):
        self.exit_status = exit_status
        super().__init__(message, details)


class CommandDeclinedError(RemoteExecutionError):
    """Exception raised when the operator declines a potentially mutating command."""

    pass


class OperationAborted(KataManagerError):
    """Raised when the operator declines to start a mutating operation."""

    pass


class WorkloadFailedError(KataManagerError):
    """Raised when an installer pod reaches a state that will not recover by waiting."""

    pass
