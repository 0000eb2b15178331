from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import shlex
import subprocess
import time

from awe_gatekeeper.domain.models import Gate
from awe_gatekeeper.errors import ConfigurationError
from awe_gatekeeper.gates.base import GateContext, GateResult, GateRunner
from awe_gatekeeper.observability import get_logger

_log = get_logger('awe_gatekeeper.gates.build')

_STDERR_TAIL_CHARS = 500


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    command: str
    returncode: int
    stdout: str
    stderr: str
    duration_ms: int = 0


class ShellCommandExecutor:
    _ALLOWED_COMMAND_PREFIXES: tuple[tuple[str, ...], ...] = (
        ('npm',),
        ('pnpm',),
        ('yarn',),
        ('npx',),
        ('bun',),
        ('node',),
        ('tsc',),
        ('make',),
        ('python', '-m'),
        ('python3', '-m'),
        ('pytest',),
        ('ruff',),
        ('mypy',),
    )

    @classmethod
    def _normalize_command(cls, command: str | list[str]) -> list[str]:
        if isinstance(command, list):
            argv = [str(part).strip() for part in command if str(part).strip()]
        else:
            argv = shlex.split(str(command or '').strip(), posix=(os.name != 'nt'))
        if not argv:
            raise ValueError('command is empty')
        lowered = [part.lower() for part in argv]
        allowed = any(lowered[:len(prefix)] == list(prefix) for prefix in cls._ALLOWED_COMMAND_PREFIXES)
        if not allowed:
            raise ValueError(f'command prefix is not allowed: {argv[0]}')
        return argv

    def run(self, command: str | list[str], cwd: Path, timeout_seconds: int) -> CommandResult:
        display_command = str(command)
        try:
            argv = self._normalize_command(command)
            display_command = ' '.join(argv)
        except ValueError as exc:
            return CommandResult(ok=False, command=display_command, returncode=2, stdout='', stderr=str(exc))
        started = time.monotonic()
        try:
            completed = subprocess.run(
                argv,
                shell=False,
                cwd=str(cwd),
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                ok=False,
                command=display_command,
                returncode=124,
                stdout='',
                stderr=f'command timed out after {timeout_seconds}s',
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        except FileNotFoundError as exc:
            return CommandResult(ok=False, command=display_command, returncode=127, stdout='', stderr=str(exc))
        elapsed_ms = int((time.monotonic() - started) * 1000)
        _log.debug('shell_command command=%s ok=%s duration_ms=%d',
                   display_command, completed.returncode == 0, elapsed_ms)
        return CommandResult(
            ok=completed.returncode == 0,
            command=display_command,
            returncode=completed.returncode,
            stdout=completed.stdout or '',
            stderr=completed.stderr or '',
            duration_ms=elapsed_ms,
        )


class BuildCheckRunner(GateRunner):
    """Run the project's build, typecheck and lint commands in its workspace."""

    gate = Gate.BUILD_CHECK

    def __init__(
        self,
        *,
        executor: ShellCommandExecutor | None = None,
        workspace_root: Path | None = None,
        timeout_seconds: int = 300,
    ):
        self.executor = executor or ShellCommandExecutor()
        self.workspace_root = workspace_root
        self.timeout_seconds = max(1, int(timeout_seconds))

    @staticmethod
    def _commands(context: GateContext) -> list[tuple[str, str]]:
        project = context.project
        steps = [
            ('build', project.build_command),
            ('typecheck', project.typecheck_command),
            ('lint', project.lint_command),
        ]
        return [(name, cmd.strip()) for name, cmd in steps if cmd and cmd.strip()]

    def _cwd(self, context: GateContext) -> Path:
        path = Path(context.project.workspace_path or '.')
        if not path.is_absolute() and self.workspace_root is not None:
            path = self.workspace_root / path
        return path

    def preflight(self, context: GateContext) -> None:
        if not self._commands(context):
            raise ConfigurationError(
                f'project {context.project.project_id} has no build, typecheck or lint command',
                field='stack',
            )

    def run(self, context: GateContext) -> GateResult:
        cwd = self._cwd(context)
        results: list[dict] = []
        failures: list[str] = []
        for name, command in self._commands(context):
            result = self.executor.run(command, cwd=cwd, timeout_seconds=self.timeout_seconds)
            results.append(
                {
                    'step': name,
                    'command': result.command,
                    'ok': result.ok,
                    'returncode': result.returncode,
                    'duration_ms': result.duration_ms,
                    'stderr_tail': result.stderr[-_STDERR_TAIL_CHARS:],
                }
            )
            if not result.ok:
                tail = (result.stderr or result.stdout).strip()[-_STDERR_TAIL_CHARS:]
                failures.append(f'{name} (`{result.command}`) exited {result.returncode}: {tail}')

        _log.info('build_check task_id=%s attempt=%d steps=%d failed=%d',
                  context.task_id, context.attempt, len(results), len(failures))
        if failures:
            summary = 'Build check failed. ' + ' | '.join(failures)
            return GateResult(passed=False, summary=summary, details={'commands': results})
        return GateResult(
            passed=True,
            summary=f'All {len(results)} build commands succeeded',
            details={'commands': results},
        )
