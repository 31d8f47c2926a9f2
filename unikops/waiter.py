"""Bounded polling for operations that complete asynchronously."""

import enum
import time
from collections.abc import Callable, Container
from dataclasses import dataclass, field
from typing import Any

from .errors import WaitFailureError, WaitTimeoutError
from .utils import debug


class WaitState(enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class PollResult:
    """One probe's verdict.

    ``progress`` is a percentage in [0, 100] when the backend reports one.
    ``detail`` names the observed state for error messages.
    """

    state: WaitState
    value: Any = None
    progress: float | None = None
    detail: str = ""


Probe = Callable[[], PollResult]


@dataclass
class Waiter:
    """Repeatedly probe until success, failure, or the budget runs out.

    The budget is ``max_attempts`` probes, a ``timeout`` in seconds, or both
    (whichever is hit first). Between probes the waiter sleeps ``delay``
    seconds; it never sleeps after the final probe.

    :param delay: Fixed pause between probes, in seconds
    :param max_attempts: Maximum number of probes
    :param timeout: Deadline measured from the first probe, in seconds
    """

    delay: float
    max_attempts: int | None = None
    timeout: float | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self):
        if self.max_attempts is None and self.timeout is None:
            raise ValueError("waiter needs max_attempts or timeout")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def wait(
        self,
        probe: Probe,
        what: str,
        on_progress: Callable[[float], None] | None = None,
    ) -> Any:
        """Poll ``probe`` and return the value of its success result.

        :param probe: Callable returning a PollResult
        :param what: Description used in errors, e.g. "snapshot import"
        :param on_progress: Optional sink for progress percentages
        :return: PollResult.value from the successful probe
        :raises WaitFailureError: As soon as a probe reports failure
        :raises WaitTimeoutError: When the budget is exhausted
        """
        start = self.clock()
        attempt = 0
        while True:
            attempt += 1
            result = probe()
            if result.progress is not None and on_progress is not None:
                on_progress(result.progress)

            if result.state is WaitState.SUCCESS:
                debug(f"{what}: done after {attempt} probe(s)")
                return result.value
            if result.state is WaitState.FAILURE:
                raise WaitFailureError(what, result.detail or "failed")

            if self._exhausted(attempt, start):
                raise WaitTimeoutError(what, self.clock() - start)

            debug(f"{what}: {result.detail or 'pending'}, retry in {self.delay}s")
            self.sleep(self.delay)

    def _exhausted(self, attempt: int, start: float) -> bool:
        if self.max_attempts is not None and attempt >= self.max_attempts:
            return True
        if self.timeout is not None:
            return self.clock() - start + self.delay > self.timeout
        return False


def state_probe(
    fetch: Callable[[], str | None],
    success: Container[str],
    failure: Container[str] = (),
) -> Probe:
    """Probe a single string state, e.g. an instance state name.

    A ``None`` from fetch counts as pending (resource not visible yet).
    """

    def probe() -> PollResult:
        state = fetch()
        if state is not None and state in success:
            return PollResult(WaitState.SUCCESS, value=state, detail=state)
        if state is not None and state in failure:
            return PollResult(WaitState.FAILURE, value=state, detail=state)
        return PollResult(WaitState.PENDING, value=state, detail=state or "")

    return probe


def progress_probe(
    fetch: Callable[[], dict],
    state_of: Callable[[dict], str],
    progress_of: Callable[[dict], float | None],
    success: Container[str],
    failure: Container[str] = (),
) -> Probe:
    """Probe a response that has both a terminal state and a progress field."""

    def probe() -> PollResult:
        response = fetch()
        state = state_of(response)
        progress = progress_of(response)
        if state in success:
            return PollResult(WaitState.SUCCESS, response, 100.0, state)
        if state in failure:
            return PollResult(WaitState.FAILURE, response, progress, state)
        return PollResult(WaitState.PENDING, response, progress, state)

    return probe
