from __future__ import annotations

import pytest

from awe_gatekeeper.domain.events import EventType, normalize_event_type
from awe_gatekeeper.domain.models import (
    GATE_SEQUENCE,
    AcceptanceCriterion,
    Gate,
    NotificationType,
    ProjectConfig,
    TaskStatus,
    initial_gate_status,
    normalize_gate,
)


def test_gate_sequence_and_next_status():
    assert GATE_SEQUENCE == (Gate.BUILD_CHECK, Gate.DEPLOY_CHECK, Gate.PERCEPTION_CHECK, Gate.HUMAN_CHECKPOINT)
    assert Gate.BUILD_CHECK.next_status() is TaskStatus.DEPLOY_CHECK
    assert Gate.DEPLOY_CHECK.next_status() is TaskStatus.PERCEPTION_CHECK
    assert Gate.PERCEPTION_CHECK.next_status() is TaskStatus.HUMAN_CHECKPOINT
    assert Gate.PERCEPTION_CHECK.next_status(human_checkpoint=False) is TaskStatus.DONE
    assert Gate.HUMAN_CHECKPOINT.next_status() is TaskStatus.DONE


def test_gate_properties():
    assert Gate.HUMAN_CHECKPOINT.is_terminal is True
    assert Gate.BUILD_CHECK.is_terminal is False
    assert Gate.HUMAN_CHECKPOINT.is_automated is False
    assert Gate.DEPLOY_CHECK.next_gate is Gate.PERCEPTION_CHECK
    assert TaskStatus.BUILD_CHECK.gate is Gate.BUILD_CHECK
    assert TaskStatus.AUTO_FIX.gate is None
    assert TaskStatus.DONE.is_terminal is True
    assert TaskStatus.ESCALATED.is_terminal is False


def test_normalize_gate():
    assert normalize_gate(' Deploy_Check ') is Gate.DEPLOY_CHECK
    assert normalize_gate(Gate.BUILD_CHECK) is Gate.BUILD_CHECK
    with pytest.raises(ValueError, match='unknown gate'):
        normalize_gate('smoke_check')


def test_notification_forwarding_types():
    assert NotificationType.ESCALATION.forwarded is True
    assert NotificationType.PROD_ALERT.forwarded is True
    assert NotificationType.INFO.forwarded is False
    assert NotificationType.WARNING.forwarded is False


def test_initial_gate_status_is_pending_everywhere():
    status = initial_gate_status()
    assert list(status) == [g.value for g in GATE_SEQUENCE]
    assert all(e['status'] == 'pending' and e['attempts'] == 0 and e['max_attempts'] == 3 for e in status.values())


def test_acceptance_criterion_from_dict_normalizes():
    criterion = AcceptanceCriterion.from_dict(
        {'description': ' Cart badge ', 'type': 'FUNCTIONAL', 'test_selector': '  ', 'expected_result': '#badge is visible'},
        index=2,
    )
    assert criterion.id == '3'
    assert criterion.description == 'Cart badge'
    assert criterion.type == 'functional'
    assert criterion.test_selector is None
    assert criterion.to_dict()['expected_result'] == '#badge is visible'


def test_project_config_from_row_and_fix_agents():
    project = ProjectConfig.from_row(
        {
            'project_id': 'proj-1',
            'stack': {'build_command': 'npm run build'},
            'deployment': {'live_url': 'https://shop.example.com', 'routes': ['/', ' ', '/cart']},
            'agents': {'primary_dev': 'ATLAS', 'infra': ''},
            'notifications': {'escalation_contact': '+15550100'},
            'human_checkpoint': False,
        }
    )
    assert project.name == 'proj-1'
    assert project.routes == ['/', '/cart']
    assert project.deploy_branch == 'main'
    assert project.human_checkpoint is False
    assert project.fix_agent_for(Gate.BUILD_CHECK) == 'ATLAS'
    assert project.fix_agent_for(Gate.DEPLOY_CHECK) == 'ARGOS'
    assert project.fix_agent_for(Gate.HUMAN_CHECKPOINT) == 'ATHENA'


def test_normalize_event_type():
    assert normalize_event_type(EventType.GATE_PASSED) == 'gate_passed'
    assert normalize_event_type(' Gate_Failed ') == 'gate_failed'
    with pytest.raises(ValueError):
        normalize_event_type('')
