from dataclasses import dataclass
from typing import List

PROBLEM_BASE_URL = "https://example.com/problems"
PROBLEM_TYPE_VALIDATION = f"{PROBLEM_BASE_URL}/validation-error"
PROBLEM_TYPE_DOMAIN = f"{PROBLEM_BASE_URL}/domain-error"
PROBLEM_TYPE_NOT_FOUND = f"{PROBLEM_BASE_URL}/not-found"
PROBLEM_TYPE_SERVER = f"{PROBLEM_BASE_URL}/server-error"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = PROBLEM_TYPE_DOMAIN
    errors: List[dict] | None = None
    status_code: int = 400

    def __str__(self) -> str:
        return self.detail


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = PROBLEM_TYPE_NOT_FOUND
    status_code: int = 404


class JobError(Exception):
    """Base class for errors raised from queued job handlers."""


class RetryableJobError(JobError):
    """Transient failure; the job is retried, optionally after ``retry_after`` seconds."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TerminalJobError(JobError):
    """Failure that must not be retried."""


class JobPayloadError(TerminalJobError):
    """Malformed or unsupported job payload."""
