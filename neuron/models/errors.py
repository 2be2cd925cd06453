"""
Unified error schema for the Neuron API.

Provides consistent error codes, messages, and hints for all API responses.
All errors include retryability information and optional debugging details.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for API responses."""

    # Graph errors
    NODE_NOT_FOUND = "NODE_NOT_FOUND"

    # Analysis job errors
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    JOB_NOT_ACTIVE = "JOB_NOT_ACTIVE"

    # Governance errors
    SUGGESTION_NOT_FOUND = "SUGGESTION_NOT_FOUND"
    INVALID_SUGGESTION_STATE = "INVALID_SUGGESTION_STATE"

    # Resource errors
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"

    # Validation errors
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Provider, capacity and backend errors
    PROVIDER_ERROR = "PROVIDER_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    BACKEND_UNSUPPORTED = "BACKEND_UNSUPPORTED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"

    # Generic errors
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class APIError:
    """
    Structured error response for API endpoints.

    Attributes:
        code: Standardized error code from ErrorCode enum
        message: Human-readable error message
        detail: Optional technical details for debugging
        hint: Optional suggestion for resolving the error
        retryable: Whether the client should retry the request
    """

    code: ErrorCode
    message: str
    detail: str | None = None
    hint: str | None = None
    retryable: bool = False

    def to_dict(self) -> dict[str, dict[str, str | bool]]:
        """
        Convert error to dictionary format for JSON responses.

        Returns:
            Dictionary with 'error' key containing error details
        """
        error_dict: dict[str, str | bool] = {
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
        }

        if self.detail is not None:
            error_dict["detail"] = self.detail

        if self.hint is not None:
            error_dict["hint"] = self.hint

        return {"error": error_dict}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Predefined Error Factories
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def node_not_found_error(node_id: str) -> APIError:
    """Create error for a node missing from the requested scope."""
    return APIError(
        code=ErrorCode.NODE_NOT_FOUND,
        message="Node not found",
        detail=f"Node ID: {node_id}",
        hint="Check the node ID and scope",
        retryable=False,
    )


def job_not_found_error(job_id: str) -> APIError:
    """Create error for a missing analysis job."""
    return APIError(
        code=ErrorCode.JOB_NOT_FOUND,
        message="Analysis job not found",
        detail=f"Job ID: {job_id}",
        hint="List jobs to find a valid job ID",
        retryable=False,
    )


def job_not_active_error(job_id: str) -> APIError:
    """Create error for cancelling a job that is no longer running."""
    return APIError(
        code=ErrorCode.JOB_NOT_ACTIVE,
        message="Job is not active",
        detail=f"Job ID: {job_id}",
        hint="Only queued or running jobs can be cancelled",
        retryable=False,
    )


def suggestion_not_found_error(suggestion_id: str) -> APIError:
    """Create error for a missing suggested edge."""
    return APIError(
        code=ErrorCode.SUGGESTION_NOT_FOUND,
        message="Suggestion not found",
        detail=f"Suggestion ID: {suggestion_id}",
        hint="The suggestion may belong to another scope",
        retryable=False,
    )


def invalid_suggestion_state_error(detail: str) -> APIError:
    """Create error for a review action that conflicts with the suggestion's status."""
    return APIError(
        code=ErrorCode.INVALID_SUGGESTION_STATE,
        message="Suggestion cannot transition to the requested status",
        detail=detail,
        hint="Approved suggestions cannot be rejected and rejected ones cannot be approved",
        retryable=False,
    )


def validation_error(field: str, reason: str) -> APIError:
    """Create error for validation failures."""
    return APIError(
        code=ErrorCode.VALIDATION_ERROR,
        message=f"Validation failed for field: {field}",
        detail=reason,
        hint="Check the input format and try again",
        retryable=False,
    )


def provider_error(detail: str | None = None, retryable: bool = False) -> APIError:
    """Create error for a failed embedding/LLM provider call."""
    return APIError(
        code=ErrorCode.PROVIDER_ERROR,
        message="Upstream model provider request failed",
        detail=detail,
        hint="Check provider credentials and model configuration",
        retryable=retryable,
    )


def rate_limited_error(detail: str | None = None) -> APIError:
    """Create error for provider rate limiting."""
    return APIError(
        code=ErrorCode.RATE_LIMITED,
        message="Provider rate limit exceeded",
        detail=detail,
        hint="Wait a moment before retrying",
        retryable=True,
    )


def backend_unsupported_error(detail: str | None = None) -> APIError:
    """Create error for features that need the relational store backend."""
    return APIError(
        code=ErrorCode.BACKEND_UNSUPPORTED,
        message="Feature unavailable with the configured store backend",
        detail=detail,
        hint="Set NEURON_STORE_BACKEND=sql to enable analysis jobs and governance",
        retryable=False,
    )


def service_unavailable_error(detail: str | None = None) -> APIError:
    """Create error for service unavailability."""
    return APIError(
        code=ErrorCode.SERVICE_UNAVAILABLE,
        message="Service temporarily unavailable",
        detail=detail,
        hint="Please try again in a moment",
        retryable=True,
    )


def request_timeout_error(detail: str | None = None) -> APIError:
    """Create error for request timeout."""
    return APIError(
        code=ErrorCode.REQUEST_TIMEOUT,
        message="Request timed out",
        detail=detail,
        hint="Please try again",
        retryable=True,
    )


def internal_error(detail: str | None = None) -> APIError:
    """Create generic internal error."""
    return APIError(
        code=ErrorCode.INTERNAL_ERROR,
        message="An internal error occurred",
        detail=detail,
        hint="Please try again. If the problem persists, check the server logs.",
        retryable=True,
    )
