"""Compensating-action runner for operations spanning several entity types.

Each step pairs a forward action with a compensation. Steps run in order;
when one raises, the compensations of the steps that already completed run in
reverse order and the failure is re-raised as ``ConsistencyError``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from errors import ConsistencyError

logger = logging.getLogger(__name__)


@dataclass
class SagaStep:
    name: str
    action: Callable[[], Any]
    compensate: Optional[Callable[[Any], None]] = None


@dataclass
class Saga:
    name: str
    steps: list[SagaStep] = field(default_factory=list)
    results: dict[str, Any] = field(default_factory=dict)

    def step(
        self,
        name: str,
        action: Callable[[], Any],
        compensate: Optional[Callable[[Any], None]] = None,
    ) -> "Saga":
        self.steps.append(SagaStep(name, action, compensate))
        return self

    def run(self) -> dict[str, Any]:
        completed: list[SagaStep] = []
        for step in self.steps:
            try:
                self.results[step.name] = step.action()
            except Exception as exc:
                logger.warning(
                    f"saga_failed: saga={self.name} step={step.name} error={exc!r}"
                )
                self._unwind(completed)
                if isinstance(exc, ConsistencyError):
                    raise
                raise ConsistencyError(
                    f"{self.name} failed at step '{step.name}' and was rolled back",
                    details={"step": step.name},
                    original_error=exc,
                ) from exc
            completed.append(step)
        return self.results

    def _unwind(self, completed: list[SagaStep]) -> None:
        for step in reversed(completed):
            if step.compensate is None:
                continue
            try:
                step.compensate(self.results.get(step.name))
            except Exception as exc:
                logger.error(
                    f"saga_compensation_failed: saga={self.name} step={step.name} "
                    f"error={exc!r}"
                )
                raise ConsistencyError(
                    f"{self.name} could not be rolled back at step '{step.name}'",
                    details={"step": step.name},
                    original_error=exc,
                ) from exc
