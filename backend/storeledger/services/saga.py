"""
In-process saga: an ordered list of (action, compensation) pairs.

WHY: the stock ledger and the sale/refund records live in different stores
and there is no two-phase commit between them. Consistency comes from
running the steps in order and, when one fails, undoing the completed ones
in reverse order before control returns to the caller.

RULES:
- A step whose action raised is NOT compensated; only completed steps are.
  (An action that failed with an unknown outcome must be reconciled by hand.)
- Compensations must be idempotent; each is retried with backoff.
- A compensation that still fails is logged critically and surfaces as
  CompensationFailed, because consistency can no longer be guaranteed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError

from ..errors import CompensationFailed, InternalError
from .concurrency import run_with_retry


@dataclass
class SagaStep:
    name: str
    action: Callable[[], Any]
    compensation: Callable[[], Any] | None = None


class Saga:
    def __init__(
        self,
        name: str,
        *,
        logger: logging.Logger | None = None,
        compensation_attempts: int = 3,
        backoff_base: float = 0.1,
    ):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self.compensation_attempts = compensation_attempts
        self.backoff_base = backoff_base
        self.steps: list[SagaStep] = []
        self.completed: list[SagaStep] = []

    def add_step(
        self,
        name: str,
        action: Callable[[], Any],
        compensation: Callable[[], Any] | None = None,
    ) -> "Saga":
        self.steps.append(SagaStep(name=name, action=action, compensation=compensation))
        return self

    def execute(self) -> list[Any]:
        """Run every step in order; on failure compensate and re-raise."""
        results = []
        for step in self.steps:
            try:
                result = step.action()
            except Exception as exc:
                self.logger.warning(
                    "Saga %s: step %s failed (%s); compensating %d completed step(s)",
                    self.name, step.name, exc, len(self.completed),
                )
                self.compensate(cause=exc)
                raise
            self.completed.append(step)
            results.append(result)
        return results

    def compensate(self, cause: BaseException | None = None) -> None:
        failures = []
        for step in reversed(self.completed):
            if step.compensation is None:
                continue

            def _log_retry(exc, attempt, _step=step):
                self.logger.warning(
                    "Saga %s: compensation for %s failed on attempt %d: %s",
                    self.name, _step.name, attempt + 1, exc,
                )

            try:
                run_with_retry(
                    step.compensation,
                    attempts=self.compensation_attempts,
                    backoff_base=self.backoff_base,
                    retry_on=(InternalError, SQLAlchemyError),
                    on_retry=_log_retry,
                )
            except Exception as exc:
                self.logger.critical(
                    "Saga %s: compensation for %s could not complete; manual reconciliation required: %s",
                    self.name, step.name, exc,
                )
                failures.append({"step": step.name, "error": str(exc)})

        self.completed = []

        if failures:
            raise CompensationFailed(
                f"Saga {self.name} could not compensate {len(failures)} step(s)",
                details={"saga": self.name, "failures": failures},
            ) from cause
