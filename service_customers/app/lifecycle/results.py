"""
Step outcomes and failure types for customer lifecycle operations.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from shared.errors import ServiceError


class StepStatus(str, Enum):
    """What happened to one step of an operation."""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"
    NOT_ATTEMPTED = "not_attempted"


class FailureKind(str, Enum):
    """Named downstream failure outcomes."""
    IDENTITY_CREATION_FAILED = "IDENTITY_CREATION_FAILED"
    CUSTOMER_CREATION_FAILED = "CUSTOMER_CREATION_FAILED"
    ENTITLEMENT_CREATION_FAILED = "ENTITLEMENT_CREATION_FAILED"
    CUSTOMER_LOOKUP_FAILED = "CUSTOMER_LOOKUP_FAILED"
    CUSTOMER_UPDATE_FAILED = "CUSTOMER_UPDATE_FAILED"
    ENTITLEMENT_LIST_FAILED = "ENTITLEMENT_LIST_FAILED"
    ENTITLEMENT_ADD_FAILED = "ENTITLEMENT_ADD_FAILED"
    ENTITLEMENT_REMOVE_FAILED = "ENTITLEMENT_REMOVE_FAILED"
    ENTITLEMENT_NOTES_UPDATE_FAILED = "ENTITLEMENT_NOTES_UPDATE_FAILED"
    ENTITLEMENT_CLEANUP_FAILED = "ENTITLEMENT_CLEANUP_FAILED"
    PROFILE_DETACH_FAILED = "PROFILE_DETACH_FAILED"
    ORDER_DETACH_FAILED = "ORDER_DETACH_FAILED"
    CUSTOMER_DELETE_FAILED = "CUSTOMER_DELETE_FAILED"
    IDENTITY_DELETE_FAILED = "IDENTITY_DELETE_FAILED"


@dataclass
class StepOutcome:
    """Outcome of a single step."""
    step: str
    entity: str
    status: StepStatus = StepStatus.NOT_ATTEMPTED
    detail: Optional[str] = None
    affected: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "step": self.step,
            "entity": self.entity,
            "status": self.status.value,
        }
        if self.detail:
            data["detail"] = self.detail
        if self.affected is not None:
            data["affected"] = self.affected
        return data


@dataclass
class LifecycleResult:
    """Successful (possibly partially no-op) lifecycle operation."""
    operation: str
    customer_id: Optional[str]
    steps: List[StepOutcome] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def completed_steps(self) -> List[str]:
        return [s.step for s in self.steps if s.status == StepStatus.APPLIED]

    def step(self, name: str) -> StepOutcome:
        for outcome in self.steps:
            if outcome.step == name:
                return outcome
        raise KeyError(name)

    def steps_as_dicts(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.steps]


class DownstreamFailure(ServiceError):
    """One step of a lifecycle operation failed.

    Earlier steps of the same invocation may have committed; they are
    listed in completed_steps. residual names data left behind that the
    operation itself will not clean up (e.g. an orphaned identity).
    """

    def __init__(self, kind: FailureKind, result: LifecycleResult, step: str, entity: str,
                 cause: str, residual: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.result = result
        self.step = step
        self.entity = entity
        self.cause = cause
        self.residual = residual or {}
        details = {
            "operation": result.operation,
            "customer_id": result.customer_id,
            "step": step,
            "entity": entity,
            "cause": cause,
            "completed_steps": result.completed_steps,
            "steps": result.steps_as_dicts(),
        }
        if self.residual:
            details["residual"] = self.residual
        super().__init__(
            f"{result.operation} failed at step '{step}': {cause}",
            details=details,
            code=kind.value
        )
