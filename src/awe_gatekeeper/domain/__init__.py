from awe_gatekeeper.domain.events import EventType, GATE_OUTCOME_EVENT_TYPES, normalize_event_type
from awe_gatekeeper.domain.models import (
    AcceptanceCriterion,
    Gate,
    GateState,
    MAX_GATE_ATTEMPTS,
    NotificationType,
    ProjectConfig,
    RoutingMode,
    SenderType,
    TaskStatus,
    VerificationOutcome,
    normalize_gate,
)

__all__ = [
    'AcceptanceCriterion',
    'EventType',
    'GATE_OUTCOME_EVENT_TYPES',
    'Gate',
    'GateState',
    'MAX_GATE_ATTEMPTS',
    'NotificationType',
    'ProjectConfig',
    'RoutingMode',
    'SenderType',
    'TaskStatus',
    'VerificationOutcome',
    'normalize_event_type',
    'normalize_gate',
]
