from __future__ import annotations

from awe_gatekeeper.gates.base import CriterionResult, GateContext, GateResult, GateRunner, run_safely
from awe_gatekeeper.gates.browser import BrowserPort, PageSession, PlaywrightBrowser
from awe_gatekeeper.gates.build import BuildCheckRunner, CommandResult, ShellCommandExecutor
from awe_gatekeeper.gates.deploy import DeployCheckRunner, diff_deployment
from awe_gatekeeper.gates.perception import PerceptionCheckRunner, verify_criteria

__all__ = [
    'BrowserPort',
    'BuildCheckRunner',
    'CommandResult',
    'CriterionResult',
    'DeployCheckRunner',
    'GateContext',
    'GateResult',
    'GateRunner',
    'PageSession',
    'PerceptionCheckRunner',
    'PlaywrightBrowser',
    'ShellCommandExecutor',
    'diff_deployment',
    'run_safely',
    'verify_criteria',
]
