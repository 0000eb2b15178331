from __future__ import annotations

from fastapi.testclient import TestClient

from awe_gatekeeper.main import build_app


def test_build_app_falls_back_to_in_memory_repo_on_bad_database_url(monkeypatch, tmp_path):
    monkeypatch.setenv('AWE_GK_DATABASE_URL', 'invalid+driver://bad')
    monkeypatch.setenv('AWE_GK_AUDIO_ROOT', str(tmp_path / 'audio'))
    app = build_app()
    client = TestClient(app)

    resp = client.get('/healthz')
    assert resp.status_code == 200
    assert resp.json()['status'] == 'ok'


def test_build_app_wires_dry_run_into_agent_runner(monkeypatch):
    captured: dict[str, object] = {}

    class FakeRunner:
        def __init__(self, *, timeout_seconds, timeout_retries, dry_run):
            captured['timeout_seconds'] = timeout_seconds
            captured['timeout_retries'] = timeout_retries
            captured['dry_run'] = dry_run

        def invoke(self, agent, **kwargs):
            raise AssertionError('not called')

    monkeypatch.setenv('AWE_GK_DATABASE_URL', 'invalid+driver://bad')
    monkeypatch.setenv('AWE_GK_DRY_RUN', '1')
    monkeypatch.setenv('AWE_GK_AGENT_TIMEOUT_RETRIES', '2')
    monkeypatch.setattr('awe_gatekeeper.service.AgentRunner', FakeRunner)

    app = build_app()
    resp = TestClient(app).get('/healthz')

    assert resp.status_code == 200
    assert captured == {'timeout_seconds': 60, 'timeout_retries': 2, 'dry_run': True}
