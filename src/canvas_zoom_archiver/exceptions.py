"""Error taxonomy for the capture and download pipeline."""
from typing import Optional


class ArchiverException(Exception):
    exit_code = 1

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(ArchiverException):
    exit_code = 10


class AuthError(ArchiverException):
    """The browser flow could not produce a usable session. Fatal for the run."""
    exit_code = 11

    TOKEN_NOT_CAPTURED = "token_not_captured"
    BROWSER_FAILURE = "browser_failure"

    def __init__(self, message: str, reason: str = TOKEN_NOT_CAPTURED):
        self.reason = reason
        super().__init__(message)


class SessionExpired(ArchiverException):
    """The provider rejected the stored session; callers re-acquire instead of aborting."""
    exit_code = 11


class DecodeFailure(ArchiverException):
    exit_code = 12


class TransferFailure(ArchiverException):
    exit_code = 12


class StorageError(ArchiverException):
    exit_code = 13


class CaptureTimeout(ArchiverException):
    def __init__(self, play_url: str, timeout: float):
        self.play_url = play_url
        self.timeout = timeout
        super().__init__(f"No replay asset request observed for {play_url} within {timeout:.0f}s")


class ProcessFailure(ArchiverException):
    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class BrowserError(ArchiverException):
    """The automated browser failed to launch, navigate or answer a protocol call."""
    exit_code = 11
