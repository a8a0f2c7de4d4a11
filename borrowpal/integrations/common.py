from __future__ import annotations


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


class ProviderError(RuntimeError):
    """Failure talking to an external provider.

    transient=True marks failures worth one retry (network, 5xx, 429).
    """

    def __init__(self, message: str, *, transient: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.transient = bool(transient)
        self.status_code = status_code
