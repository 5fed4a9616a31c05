"""
Progress reporting interface used by transfer runs.
"""

from typing import Protocol


class ProgressSink(Protocol):
    """Receives completion ticks while a run is transferring"""

    def start(self, total: int) -> None: ...

    def increment(self) -> None: ...

    def finish(self) -> None: ...


class NullProgress:
    """Progress sink that discards every update"""

    def start(self, total: int) -> None:
        pass

    def increment(self) -> None:
        pass

    def finish(self) -> None:
        pass
