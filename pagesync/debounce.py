import enum


class DebounceState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"


class Debouncer:
    """Clock-driven debounce timer.

    Nothing here sleeps: ``notify`` and ``fire_due`` are given the current
    time by the caller. Every ``notify`` pushes the deadline out to
    ``now + window``, so a burst of notifications fires once. A
    notification that arrives while the debounced work is running leaves
    the timer pending again once ``finish`` is called.
    """

    def __init__(self, window):
        self.window = window
        self.state = DebounceState.IDLE
        self.deadline = None
        self._dirty = False

    def __repr__(self):
        return f"Debouncer({self.window}, {self.state.value}, {self.deadline})"

    @property
    def pending(self):
        return self.state is DebounceState.PENDING

    def notify(self, now):
        self.deadline = now + self.window
        if self.state is DebounceState.RUNNING:
            self._dirty = True
        else:
            self.state = DebounceState.PENDING

    def is_due(self, now):
        return self.state is DebounceState.PENDING and now >= self.deadline

    def fire_due(self, now):
        """Move to running and return True if the deadline has passed."""
        if not self.is_due(now):
            return False
        self.state = DebounceState.RUNNING
        return True

    def finish(self):
        if self._dirty:
            self._dirty = False
            self.state = DebounceState.PENDING
        else:
            self.state = DebounceState.IDLE
            self.deadline = None

    def cancel(self):
        self.state = DebounceState.IDLE
        self.deadline = None
        self._dirty = False
