"""Exception hierarchy for release runs"""

from typing import Any, Dict, List, Optional, Sequence


class ReleaseError(Exception):
    """Base exception for release script errors"""

    pass


class FatalConfigurationError(ReleaseError):
    """A required input is missing or invalid"""

    pass


class ToolInvocationError(ReleaseError):
    """An external command exited non-zero"""

    def __init__(
        self,
        message: str,
        cmd: Sequence[str] = (),
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""


class DistributionApiError(ReleaseError):
    """App Store Connect returned an error response"""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.status = status
        self.errors = errors or []


class UnauthorizedError(ReleaseError):
    """App Store Connect rejected our credentials (HTTP 401)

    Not a DistributionApiError: call sites that fold API errors into a
    benign result must still let this one through.
    """

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.status = 401
        self.errors = errors or []


class PollTimeoutError(ReleaseError, TimeoutError):
    """A polling loop ran out of attempts"""

    pass


class RemoteRejectedError(ReleaseError):
    """The backend reached a terminal failure state for our build"""

    pass


class BestEffortCleanupError(ReleaseError):
    """A teardown step failed; reported but never propagated"""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause = cause
