"""Errors raised by billing provider REST adapters."""


class ProviderAPIError(Exception):
    """A provider API call failed or was rejected. Local state must not change."""

    def __init__(self, provider: str, message: str, status_code: int = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message
        self.status_code = status_code
