# uploader/cancellation.py
import asyncio


class CancellationToken:
    """Cooperative cancellation flag shared by one upload or poll loop.

    Nothing is interrupted when the token fires; owners check `cancelled`
    at their own checkpoints. `sleep` returns early once cancelled.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to `delay` seconds; True if woken by cancellation"""
        if delay <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
