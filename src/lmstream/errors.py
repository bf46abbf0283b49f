class ProviderError(Exception):
    """A transport-level failure talking to a model provider.

    Raised for non-2xx responses and network errors.  Carries enough
    context to diagnose the failing request without the request itself.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        model: str = "",
        message_count: int = 0,
    ):
        self.message = message
        self.status = status
        self.model = model
        self.message_count = message_count
        super().__init__(str(self))

    def __str__(self) -> str:
        status = f"HTTP {self.status}" if self.status is not None else "network error"
        return (
            f"{status} from model {self.model!r} "
            f"({self.message_count} messages): {self.message}"
        )
