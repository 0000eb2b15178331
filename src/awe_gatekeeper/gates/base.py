from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from awe_gatekeeper.domain.models import AcceptanceCriterion, Gate, ProjectConfig
from awe_gatekeeper.observability import get_logger

_log = get_logger('awe_gatekeeper.gates')


@dataclass(frozen=True)
class GateContext:
    task_id: str
    gate: Gate
    attempt: int
    project: ProjectConfig
    acceptance_criteria: list[AcceptanceCriterion] = field(default_factory=list)
    instructions: str | None = None


@dataclass(frozen=True)
class CriterionResult:
    id: str
    description: str
    passed: bool
    message: str

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'criterion': self.description,
            'passed': self.passed,
            'message': self.message,
        }


@dataclass(frozen=True)
class GateResult:
    passed: bool
    summary: str
    details: dict = field(default_factory=dict)
    criteria_results: list[CriterionResult] = field(default_factory=list)

    def to_details(self) -> dict:
        out = dict(self.details)
        if self.criteria_results:
            out['criteria_results'] = [r.to_dict() for r in self.criteria_results]
        return out


class GateRunner(ABC):
    gate: Gate

    def preflight(self, context: GateContext) -> None:
        """Raise ``ConfigurationError`` when the gate can never run for this project."""

    @abstractmethod
    def run(self, context: GateContext) -> GateResult:
        ...


def run_safely(runner: GateRunner, context: GateContext) -> GateResult:
    """Run *runner*, turning any collaborator fault into a failed result."""
    try:
        return runner.run(context)
    except Exception as exc:
        text = str(exc).strip() or exc.__class__.__name__
        _log.warning(
            'gate_runner_error task_id=%s gate=%s attempt=%d error=%s',
            context.task_id, context.gate.value, context.attempt, text,
        )
        return GateResult(
            passed=False,
            summary=f'{exc.__class__.__name__}: {text}',
            details={'error_type': exc.__class__.__name__, 'error': text},
        )
