"""Error codes and exception types shared by every flow.

A flow never lets an exception escape its task. Whatever goes wrong is stored
on the flow and reported by the next status poll as ``{"error": <code>,
"reason": <message>}``.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    FLOW_NOT_FOUND = "FLOW_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    USER_ALREADY_EXISTS = "USER_ALREADY_EXISTS"
    HOLDER_AGENT_NOT_FOUND = "HOLDER_AGENT_NOT_FOUND"
    INVALID_CONNECTION_METHOD = "INVALID_CONNECTION_METHOD"
    CONNECTION_FAILED = "CONNECTION_FAILED"
    NO_CREDENTIAL_DEFINITIONS = "NO_CREDENTIAL_DEFINITIONS"
    SCHEMA_LOOKUP_FAILED = "SCHEMA_LOOKUP_FAILED"
    INVALID_USER_ATTRIBUTES = "INVALID_USER_ATTRIBUTES"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    PROOF_VALIDATION_FAILED = "PROOF_VALIDATION_FAILED"
    NOT_A_US_RESIDENT = "NOT_A_US_RESIDENT"
    CREDENTIAL_OFFER_FAILED = "CREDENTIAL_OFFER_FAILED"
    CREDENTIAL_NOT_ACCEPTED = "CREDENTIAL_NOT_ACCEPTED"
    FLOW_STOPPED = "FLOW_STOPPED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class FlowError(Exception):
    """An error with a machine-readable code attached."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return self.message


class InvalidParametersError(FlowError, ValueError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INVALID_PARAMETERS, message)


class FlowNotFoundError(FlowError, KeyError):
    def __init__(self, flow_id: str, kind: str = "Flow") -> None:
        super().__init__(ErrorCode.FLOW_NOT_FOUND, f"{kind} {flow_id} was not found")
        self.flow_id = flow_id


class ProofValidationError(FlowError):
    def __init__(self, message: str, code: ErrorCode = ErrorCode.PROOF_VALIDATION_FAILED) -> None:
        super().__init__(code, message)


class FlowStopped(Exception):
    """Raised inside a flow once ``stop()`` has been called."""


def with_code(exc: BaseException, default: ErrorCode) -> ErrorCode:
    """Return the code already attached to *exc*, or *default*."""
    code = getattr(exc, "code", None)
    if isinstance(code, ErrorCode):
        return code
    if isinstance(code, str):
        try:
            return ErrorCode(code)
        except ValueError:
            pass
    return default


def ensure_code(exc: BaseException, default: ErrorCode) -> BaseException:
    """Attach *default* as ``exc.code`` unless it already carries a known code."""
    code = with_code(exc, default)
    try:
        exc.code = code  # type: ignore[attr-defined]
    except AttributeError:
        pass
    return exc
