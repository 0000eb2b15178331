from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    AUTO_FIX_REQUESTED = 'auto_fix_requested'
    CRITERIA_ADJUSTED = 'criteria_adjusted'
    DEPLOY_RECEIVED = 'deploy_received'
    GATE_DEDUPED = 'gate_deduped'
    GATE_ESCALATED = 'gate_escalated'
    GATE_FAILED = 'gate_failed'
    GATE_PASSED = 'gate_passed'
    GATE_RECOVERED = 'gate_recovered'
    GATE_RESET = 'gate_reset'
    GATE_STARTED = 'gate_started'
    HUMAN_APPROVED = 'human_approved'
    HUMAN_REJECTED = 'human_rejected'
    PIPELINE_STARTED = 'pipeline_started'
    STATUS_CHANGED = 'status_changed'
    TASK_CREATED = 'task_created'
    TASK_REASSIGNED = 'task_reassigned'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text


GATE_OUTCOME_EVENT_TYPES = frozenset(
    {
        EventType.GATE_PASSED.value,
        EventType.GATE_FAILED.value,
        EventType.GATE_ESCALATED.value,
    }
)
