"""
Error types for the swarm controller.

Every error carries a stable code, a human-readable message and structured
details, so API handlers and run results can surface them without leaking
tracebacks.
"""

from typing import Any, Dict, Optional


class SwarmError(Exception):
    """Base swarm error with structured details."""
    def __init__(self, code: str, message: str, details: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
class ConfigurationError(SwarmError):
    """Missing or invalid configuration. Never retried."""
    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(code="CONFIGURATION_ERROR", message=message, details=details)


# -----------------------------------------------------------------------------
# Activities
# -----------------------------------------------------------------------------
class ValidationError(SwarmError):
    """Malformed response from a provider or the LLM."""
    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(code="VALIDATION_ERROR", message=message, details=details)


class LLMTimeoutError(SwarmError):
    def __init__(self, timeout_seconds: float):
        super().__init__(
            code="LLM_TIMEOUT",
            message=f"LLM invocation timed out after {timeout_seconds}s",
            details={"timeout_seconds": timeout_seconds},
        )


class LLMInvocationError(SwarmError):
    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(
            code="LLM_FAILED",
            message=message,
            details={"exit_code": exit_code},
        )


# -----------------------------------------------------------------------------
# Source control
# -----------------------------------------------------------------------------
class SCMAPIError(SwarmError):
    """Provider API request failed."""
    def __init__(self, status_code: int, status_text: str = "", body: str = "", retry_after: Optional[float] = None):
        super().__init__(
            code="SCM_API_ERROR",
            message=f"API request failed: {status_code} {status_text} - {body}",
            details={"status_code": status_code, "body": body},
        )
        self.status_code = status_code
        self.body = body
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.status_code in (0, 429) or self.status_code >= 500


class SCMRejectedError(SCMAPIError):
    """The provider refused the request (4xx other than 429). Sending it again will not help."""


class PRNumberError(SwarmError):
    """A pull request reference could not be parsed."""
    def __init__(self, reference: str, provider: str):
        super().__init__(
            code="INVALID_PR_REFERENCE",
            message=f"Could not extract PR number from '{reference}' for {provider}",
            details={"reference": reference, "provider": provider},
        )


class GitCommandError(SwarmError):
    def __init__(self, args: str, exit_code: Optional[int], stderr: str):
        super().__init__(
            code="GIT_COMMAND_FAILED",
            message=f"git {args} failed ({exit_code}): {stderr.strip()}",
            details={"args": args, "exit_code": exit_code, "stderr": stderr},
        )
        self.exit_code = exit_code
        self.stderr = stderr


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------
class InvalidTransitionError(SwarmError):
    """A run tried to move between stages the state graph does not connect."""
    def __init__(self, run_id: str, from_stage: str, to_stage: str):
        super().__init__(
            code="INVALID_TRANSITION",
            message=f"Run '{run_id}' cannot move from {from_stage} to {to_stage}",
            details={"run_id": run_id, "from": from_stage, "to": to_stage},
        )


class StateStoreError(SwarmError):
    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(code="STATE_STORE_ERROR", message=message, details=details)


# Activity retry policies list these by class name; another attempt fails the same way
NON_RETRYABLE_ERRORS = (ConfigurationError, ValidationError, PRNumberError, SCMRejectedError)
