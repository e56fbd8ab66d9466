"""Exception hierarchy shared by every reconciliation pass."""

from typing import Optional


class ReconcileError(Exception):
    """Base exception for reconciliation errors."""

    exit_code = 1


class PrivilegeError(ReconcileError):
    """Raised when the process is not running with root privileges."""

    pass


class UnsupportedPlatformError(ReconcileError):
    """Raised when the host architecture or OS cannot run the relay."""

    pass


class ConfigurationError(ReconcileError):
    """Raised when the requested target cannot be resolved."""

    pass


class DependencyMissingError(ReconcileError):
    """Raised when a required external tool is absent."""

    def __init__(self, tool: str, purpose: str = ""):
        self.tool = tool
        message = f"Required tool '{tool}' not found"
        if purpose:
            message += f" ({purpose})"
        super().__init__(message)


class CommandError(ReconcileError):
    """Raised when an external command fails or times out."""

    def __init__(self, cmd, returncode: Optional[int] = None, stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        if returncode is None:
            message = f"Command could not complete: {' '.join(self.cmd)}"
        else:
            message = f"Command failed ({returncode}): {' '.join(self.cmd)}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message)


class DownloadError(ReconcileError):
    """Raised when a release artifact cannot be downloaded."""

    pass


class IntegrityError(ReconcileError):
    """Raised when a downloaded artifact fails checksum verification."""

    pass


class ValidationError(ReconcileError):
    """Raised when generated configuration fails the target system's own check."""

    pass


class ServiceStartError(ReconcileError):
    """Raised when a service does not become active within its timeout."""

    pass


class OrderingError(ReconcileError):
    """Raised when a teardown plan would delete live artifacts before stopping them."""

    pass


class LockError(ReconcileError):
    """Raised when another reconciliation pass holds the run lock."""

    pass


class BestEffortError(ReconcileError):
    """A removal step that failed during teardown; collected, never raised out of the pass."""

    def __init__(self, subject: str, cause: str):
        self.subject = subject
        self.cause = cause
        super().__init__(f"{subject}: {cause}")
