"""Error taxonomy for backup/restore runs.

``structural`` errors abort the whole run and change the process exit code.
Component-level errors are recorded on the run's ComponentResult and the run
carries on with the next component.
"""

from typing import Optional


class RecoveryError(Exception):
    """Base exception for foundry-recovery errors."""

    structural = False


class ToolingMissingError(RecoveryError):
    structural = True

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"Required tool not found on PATH: {tool}")


class ClusterUnreachableError(RecoveryError):
    structural = True

    def __init__(self, detail: str):
        super().__init__(f"Cannot reach cluster: {detail}")


class ResourceNotFoundError(RecoveryError):
    def __init__(self, kind: str, selector: str, namespace: Optional[str] = None):
        self.kind = kind
        self.selector = selector
        where = f" in namespace {namespace}" if namespace else ""
        super().__init__(f"No {kind} matches selector '{selector}'{where}")


class CaptureFailedError(RecoveryError):
    def __init__(self, component: str, detail: str):
        self.component = component
        super().__init__(f"{component} capture failed: {detail}")


class RestoreFailedError(RecoveryError):
    def __init__(self, component: str, detail: str):
        self.component = component
        super().__init__(f"{component} restore failed: {detail}")


class ArchiveFailedError(RecoveryError):
    structural = True


class ConfirmationDeclined(RecoveryError):
    """Operator did not type the confirmation phrase. Not an error exit."""

    def __init__(self, expected: str):
        self.expected = expected
        super().__init__(f"Confirmation phrase did not match '{expected}'")


class ConcurrentRunError(RecoveryError):
    structural = True

    def __init__(self, namespace: str):
        self.namespace = namespace
        super().__init__(f"Another backup/restore run holds the lock for namespace {namespace}")


class OperationTimeoutError(RecoveryError, TimeoutError):
    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:g}s")


class ClusterApiError(RecoveryError):
    """A Kubernetes API request failed below the HTTP layer (connection, TLS, protocol)."""

    def __init__(self, request: str, detail: str):
        self.request = request
        super().__init__(f"Kubernetes API request {request} failed: {detail}")
