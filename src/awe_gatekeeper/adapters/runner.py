from __future__ import annotations

import os
import random
import time
from typing import Callable

import httpx

from awe_gatekeeper.adapters.base import (
    ENDPOINT_API_KEY_ENV,
    AgentInvocationError,
    AgentReply,
    detect_endpoint_kind,
)
from awe_gatekeeper.adapters.factory import EndpointAdapterFactory
from awe_gatekeeper.observability import get_logger
from awe_gatekeeper.participants import AgentProfile

_log = get_logger('awe_gatekeeper.adapters.runner')

_LIMIT_PATTERNS = (
    'rate limit',
    'rate_limit',
    'quota exceeded',
    'insufficient_quota',
    'overloaded',
)


def _api_keys_from_env() -> dict[str, str]:
    keys: dict[str, str] = {}
    for kind, names in ENDPOINT_API_KEY_ENV.items():
        for name in names:
            value = str(os.getenv(name, '') or '').strip()
            if value:
                keys[kind] = value
                break
    return keys


class AgentRunner:
    """Invoke agent model endpoints over HTTP.

    One adapter per endpoint kind builds the request and decodes the reply.
    Timeouts are retried ``timeout_retries`` times inside the caller's budget;
    every other failure raises :class:`AgentInvocationError` immediately so
    callers can contain it per agent.
    """

    def __init__(
        self,
        *,
        api_keys: dict[str, str] | None = None,
        timeout_seconds: float = 60.0,
        timeout_retries: int = 1,
        dry_run: bool = False,
        client_factory: Callable[..., httpx.Client] | None = None,
    ):
        self.api_keys = dict(api_keys) if api_keys is not None else _api_keys_from_env()
        self.timeout_seconds = max(1.0, float(timeout_seconds))
        self.timeout_retries = max(0, int(timeout_retries))
        self.dry_run = dry_run
        self.client_factory = client_factory or httpx.Client
        self.adapter_factory = EndpointAdapterFactory()

    def invoke(
        self,
        agent: AgentProfile,
        *,
        system_prompt: str,
        message: str,
        max_tokens: int = 1024,
        timeout_seconds: float | None = None,
    ) -> AgentReply:
        if self.dry_run:
            return AgentReply(
                text=f'[dry-run agent={agent.name}] acknowledged: {message[:120]}',
                model='dry-run',
                tokens_used=0,
                response_time_ms=1,
            )
        if not agent.api_endpoint:
            raise AgentInvocationError(f'no api endpoint configured for {agent.name}', agent=agent.name)

        kind = detect_endpoint_kind(agent.api_endpoint)
        adapter = self.adapter_factory.create(endpoint=agent.api_endpoint, api_key=self.api_keys.get(kind))
        model = adapter.resolve_model(agent.api_model)
        payload = adapter.build_payload(
            model=model,
            system_prompt=system_prompt,
            message=message,
            max_tokens=max_tokens,
        )
        budget = float(timeout_seconds or self.timeout_seconds)
        started = time.monotonic()
        deadline = started + budget
        attempts = self.timeout_retries + 1
        response: httpx.Response | None = None

        for attempt in range(1, attempts + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                with self.client_factory(timeout=remaining) as client:
                    response = client.post(adapter.url(), headers=adapter.headers(), json=payload)
                break
            except httpx.TimeoutException:
                _log.warning('agent_timeout agent=%s kind=%s attempt=%d/%d', agent.name, kind, attempt, attempts)
                if attempt >= attempts:
                    break
                time.sleep(min(max(0.0, deadline - time.monotonic()), 0.2 + random.random() * 0.3))
            except httpx.HTTPError as exc:
                raise AgentInvocationError(
                    f'request to {kind} endpoint failed: {exc}',
                    agent=agent.name,
                ) from exc

        if response is None:
            raise AgentInvocationError(
                f'agent_timeout agent={agent.name} timeout_seconds={budget:g} attempts={attempts}',
                agent=agent.name,
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if response.status_code >= 400:
            body = (response.text or '')[:300]
            reason = 'provider_limit' if self._is_provider_limit(body) or response.status_code == 429 else 'api_error'
            raise AgentInvocationError(
                f'{reason}: API error at {adapter.url()}: {response.status_code}',
                agent=agent.name,
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise AgentInvocationError(f'invalid JSON from {kind} endpoint', agent=agent.name) from exc

        text, tokens = adapter.parse_response(data if isinstance(data, dict) else {})
        _log.info(
            'agent_replied agent=%s kind=%s model=%s tokens=%d duration_ms=%d',
            agent.name, kind, model, tokens, elapsed_ms,
        )
        return AgentReply(text=text, model=model, tokens_used=tokens, response_time_ms=elapsed_ms)

    @staticmethod
    def _is_provider_limit(text: str) -> bool:
        lowered = str(text or '').lower()
        return any(pattern in lowered for pattern in _LIMIT_PATTERNS)
