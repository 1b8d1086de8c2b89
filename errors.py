class ValidationError(ValueError):
    """Raised before any storage call when a repeat or scope request is malformed."""


class StorageError(RuntimeError):
    """A persistence call failed. ``reason`` is the human readable cause."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
