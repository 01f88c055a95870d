"""Per-address request counting over a window that resets lazily on the next event."""

from .store import AddressState


class RateLimiter:
    def __init__(self, window: float, max_requests: int):
        self.window = window
        self.max_requests = max_requests

    def hit(self, state: AddressState, now: float) -> bool:
        """Count one event. Returns False once the address is over the limit."""
        if state.window_count == 0 or now - state.window_start > self.window:
            state.window_start = now
            state.window_count = 1
            return True
        state.window_count += 1
        return state.window_count <= self.max_requests

    @staticmethod
    def forgive(state: AddressState) -> None:
        state.window_count = 0
