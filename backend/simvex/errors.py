"""Exceptions raised by the storage layer.

Missing or foreign records are never exceptions: repositories return
`None`/`False` for them. Only conditions that must stop the caller are
raised.
"""


class ConfigurationError(RuntimeError):
    """Repository configuration is incomplete or names an unknown driver."""


class MigrationError(RuntimeError):
    """A migration set is invalid or one of its scripts failed.

    When a script fails, the original database error is chained as
    `__cause__` and `version` names the offending script.
    """

    def __init__(self, message: str, version: str | None = None):
        super().__init__(message)
        self.version = version
