import asyncio


class CancellationSignal:
    """Cooperative cancellation shared between a caller and a stream.

    The stream checks :attr:`cancelled` once per fragment and stops
    consuming input when it is set, keeping whatever it has produced.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()
