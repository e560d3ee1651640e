"""Exception hierarchy shared by providers, the pipeline and the executor."""

from __future__ import annotations

from enum import Enum
from typing import Optional

__all__ = [
    "AutomodeError",
    "ErrorCode",
    "FeatureAdmissionError",
    "FeatureNotFoundError",
    "InvalidFeatureIdError",
    "InvalidModelIdError",
    "OperationAborted",
    "PipelineStepNotFoundError",
    "ProviderAuthenticationError",
    "ProviderError",
    "ProviderNotInstalledError",
    "ProviderProcessError",
    "ProviderRateLimitError",
    "provider_error_for",
]


class ErrorCode(str, Enum):
    """Classification codes attached to provider failures."""

    NOT_INSTALLED = "NOT_INSTALLED"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    RATE_LIMITED = "RATE_LIMITED"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    PROCESS_CRASHED = "PROCESS_CRASHED"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class AutomodeError(RuntimeError):
    """Base class for errors raised by automode."""


class OperationAborted(AutomodeError):
    """Raised when a run observes its cancellation handle.

    This is a control-flow signal, not a failure: the executor converts it
    into a ``passes=False`` result instead of propagating it.
    """


class FeatureNotFoundError(AutomodeError, KeyError):
    """Raised when a feature id is not present in the project."""

    def __init__(self, feature_id: str) -> None:
        super().__init__(f"Feature not found: {feature_id}")
        self.feature_id = feature_id

    def __str__(self) -> str:
        return self.args[0]


class FeatureAdmissionError(AutomodeError):
    """Raised when a feature cannot take a run slot right now."""

    def __init__(self, feature_id: str, reason: str) -> None:
        super().__init__(f"Cannot start feature {feature_id}: {reason}")
        self.feature_id = feature_id
        self.reason = reason


class InvalidFeatureIdError(AutomodeError, ValueError):
    """Raised when a feature id cannot name a directory under the features root."""

    def __init__(self, feature_id: str) -> None:
        super().__init__(f"Invalid feature id: {feature_id!r}")
        self.feature_id = feature_id


class PipelineStepNotFoundError(AutomodeError, KeyError):
    """Raised when a pipeline step id does not exist in the project config."""

    def __init__(self, step_id: str) -> None:
        super().__init__(f"Pipeline step not found: {step_id}")
        self.step_id = step_id

    def __str__(self) -> str:
        return self.args[0]


class InvalidModelIdError(AutomodeError, ValueError):
    """Raised when a model id still carries a provider prefix."""


class ProviderError(AutomodeError):
    """A backend failure that has already been classified at the provider boundary."""

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        code: Optional[ErrorCode] = None,
        recoverable: bool = False,
        suggestion: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        if code is not None:
            self.code = code
        self.recoverable = recoverable
        self.suggestion = suggestion
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, object]:
        return {
            "provider": self.provider,
            "code": self.code.value,
            "message": self.message,
            "recoverable": self.recoverable,
            "suggestion": self.suggestion,
            "retry_after": self.retry_after,
        }


class ProviderNotInstalledError(ProviderError):
    code = ErrorCode.NOT_INSTALLED

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ProviderAuthenticationError(ProviderError):
    code = ErrorCode.NOT_AUTHENTICATED

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ProviderRateLimitError(ProviderError):
    code = ErrorCode.RATE_LIMITED

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ProviderProcessError(ProviderError):
    """The backend process crashed or exited unexpectedly."""

    code = ErrorCode.PROCESS_CRASHED

    def __init__(
        self,
        message: str,
        *,
        exit_code: Optional[int] = None,
        stderr: str = "",
        **kwargs,
    ) -> None:
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)
        self.exit_code = exit_code
        self.stderr = stderr


_CODE_TO_CLASS: dict[ErrorCode, type[ProviderError]] = {
    ErrorCode.NOT_INSTALLED: ProviderNotInstalledError,
    ErrorCode.NOT_AUTHENTICATED: ProviderAuthenticationError,
    ErrorCode.RATE_LIMITED: ProviderRateLimitError,
    ErrorCode.PROCESS_CRASHED: ProviderProcessError,
}


def provider_error_for(
    code: ErrorCode,
    message: str,
    **kwargs,
) -> ProviderError:
    """Build the most specific ``ProviderError`` subclass for ``code``."""

    error_cls = _CODE_TO_CLASS.get(code, ProviderError)
    if error_cls is not ProviderProcessError:
        kwargs.pop("exit_code", None)
        kwargs.pop("stderr", None)
    if error_cls is ProviderError:
        kwargs["code"] = code
    return error_cls(message, **kwargs)
