"""
Synthesis Service - Error Types

Every pipeline failure is a SynthesisError tagged with an ErrorKind.
The HTTP layer maps on `kind`, so new subclasses never need new handlers.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INVOCATION = "invocation"
    PARSE = "parse"


class InvocationFailure(str, Enum):
    PAYLOAD_TOO_LARGE = "payload_too_large"
    THROTTLED = "throttled"
    SERVICE_ERROR = "service_error"


class SynthesisError(Exception):
    kind: ErrorKind = ErrorKind.INVOCATION

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> str:
        return self.kind.value.upper()


class ValidationError(SynthesisError):
    """Caller-supplied input was rejected before any model call."""

    kind = ErrorKind.VALIDATION


class NotFoundError(SynthesisError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, resource_id: object) -> None:
        super().__init__(f"{resource} not found with id: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id


class PipelineInvocationError(SynthesisError):
    """Model or collaborator call failed. Never retried internally."""

    kind = ErrorKind.INVOCATION

    def __init__(
        self,
        message: str,
        *,
        reason: InvocationFailure = InvocationFailure.SERVICE_ERROR,
    ) -> None:
        super().__init__(message)
        self.reason = reason


class ParseError(PipelineInvocationError):
    """Model output could not be turned into the required structure."""

    kind = ErrorKind.PARSE

    def __init__(self, message: str, raw_text: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw_text = raw_text
