from __future__ import annotations

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class ReliabilityError(Exception):
    """Base class for job engine and circuit breaker errors."""


class InvalidJobType(ReliabilityError):
    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type {job_type!r}.")
        self.job_type = job_type


class HandlerExecutionError(ReliabilityError):
    """A job handler raised. The original exception is kept as __cause__."""

    def __init__(self, job_id: str, cause: BaseException):
        super().__init__(f"Job {job_id} handler failed: {type(cause).__name__}: {cause}")
        self.job_id = job_id
        self.__cause__ = cause


class JobTimeoutError(ReliabilityError):
    def __init__(self, job_id: str, timeout_s: float):
        super().__init__(f"Job {job_id} exceeded its {timeout_s:g}s deadline.")
        self.job_id = job_id
        self.timeout_s = timeout_s


class CircuitOpenError(ReliabilityError):
    def __init__(self, name: str, retry_in_s: Optional[float] = None):
        msg = f"Circuit breaker {name!r} is open, call rejected."
        if retry_in_s is not None:
            msg += f" Next trial in {retry_in_s:.1f}s."
        super().__init__(msg)
        self.name = name
        self.retry_in_s = retry_in_s


class ReclaimedStaleJobError(ReliabilityError):
    """Diagnostic only: a job claim went stale and was (or had been) reclaimed."""

    def __init__(self, job_id: str, claimed_by: Optional[str] = None):
        who = f" by {claimed_by}" if claimed_by else ""
        super().__init__(f"Job {job_id} claim{who} is stale; job returned to the queue.")
        self.job_id = job_id
        self.claimed_by = claimed_by


class JobNotFound(ReliabilityError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found.")
        self.job_id = job_id


class InvalidTransition(ReliabilityError):
    def __init__(self, job_id: str, state: str, action: str):
        super().__init__(f"Job {job_id} is {state}; cannot {action}.")
        self.job_id = job_id
        self.state = state


def register_exception_handlers(app):
    @app.exception_handler(JobNotFound)
    async def job_not_found_handler(request: Request, exc: JobNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidJobType)
    async def invalid_job_type_handler(request: Request, exc: InvalidJobType):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransition)
    async def invalid_transition_handler(request: Request, exc: InvalidTransition):
        return JSONResponse(status_code=409, content={"detail": str(exc)})
