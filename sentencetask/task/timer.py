from __future__ import annotations

"""Per-trial countdown driven by external one-second ticks."""


class TrialTimer:
    """Countdown for a single trial.

    The timer never reads the clock itself: whoever owns the event loop
    calls ``tick()`` once per wall-clock second. Expiry is reported exactly
    once per ``restart()``.
    """

    def __init__(self, duration_s: int = 12) -> None:
        if int(duration_s) <= 0:
            raise ValueError("duration_s must be positive")
        self.duration_s = int(duration_s)
        self.remaining = self.duration_s
        self._stopped = False
        self._expired = False
        self._suspended = 0

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def suspended(self) -> bool:
        return self._suspended > 0

    @property
    def active(self) -> bool:
        return not (self._stopped or self._expired or self.suspended)

    def restart(self) -> None:
        self.remaining = self.duration_s
        self._stopped = False
        self._expired = False

    def stop(self) -> None:
        """Freeze the countdown (trial finalized); later ticks are ignored."""
        self._stopped = True

    def suspend(self) -> None:
        self._suspended += 1

    def resume(self) -> None:
        if self._suspended > 0:
            self._suspended -= 1

    def tick(self) -> bool:
        """Advance one second. Returns True only on the tick that reaches zero."""
        if not self.active:
            return False
        self.remaining = max(0, self.remaining - 1)
        if self.remaining == 0:
            self._expired = True
            return True
        return False
