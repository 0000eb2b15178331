from __future__ import annotations


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


class ConfigurationError(RuntimeError):
    """A request that can never succeed until configuration changes.

    Raised for a missing project, a project without a live URL or build
    commands, or an agent name that does not resolve. These are rejected
    up front and never converted into a verification attempt.
    """

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = 'configuration_error'


class UnknownAgentError(ConfigurationError):
    def __init__(self, name: str):
        super().__init__(f'unknown agent: {name}', field='agent')
        self.name = name
