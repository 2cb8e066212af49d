"""
Bounded polling for "wait until state X" steps.

Every wait in the control plane (promotion, handshake, replica attach,
LASTSAVE advance, chaos recovery) is a fixed-interval poll with a hard
deadline described by a PollPolicy. There are no unbounded loops.

Example:
    policy = PollPolicy(interval=1.0, deadline=15.0)
    outcome = await wait_for_state(
        probe=client.get_role,
        done=lambda role: role == NodeRole.MASTER,
        policy=policy,
    )
    if not outcome.satisfied:
        raise OperationTimeoutError(...)
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class PollPolicy:
    """
    Fixed-interval polling with a hard deadline.

    Attributes:
        interval: Seconds between probes (default 1.0)
        deadline: Seconds after the first probe at which waiting stops (default 15.0)
    """

    interval: float = 1.0
    deadline: float = 15.0

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError("Poll interval must be positive")
        if self.deadline < 0:
            raise ValueError("Poll deadline must be non-negative")


@dataclass(frozen=True)
class PollOutcome(Generic[T]):
    """
    Result of wait_for_state.

    Attributes:
        satisfied: True if `done` returned True before the deadline.
        last: Last probed value (None if the probe never ran).
        attempts: Number of probes issued.
        elapsed: Seconds spent waiting.
    """

    satisfied: bool
    last: T | None
    attempts: int
    elapsed: float


async def wait_for_state(
    probe: Callable[[], Awaitable[T]],
    done: Callable[[T], bool],
    policy: PollPolicy,
    cancel: asyncio.Event | None = None,
) -> PollOutcome[T]:
    """
    Probe until `done(value)` is true or the deadline passes.

    The first probe runs immediately. A set `cancel` event stops waiting
    after the current probe (the probe itself is never interrupted).

    Args:
        probe: Async callable returning the observed value.
        done: Predicate on the observed value.
        policy: Interval and deadline.
        cancel: Optional cooperative cancellation flag.

    Returns:
        PollOutcome describing whether the state was reached.
    """
    started = time.monotonic()
    attempts = 0
    last: T | None = None

    while True:
        last = await probe()
        attempts += 1
        if done(last):
            return PollOutcome(True, last, attempts, time.monotonic() - started)

        elapsed = time.monotonic() - started
        if elapsed >= policy.deadline or (cancel is not None and cancel.is_set()):
            return PollOutcome(False, last, attempts, elapsed)

        await asyncio.sleep(min(policy.interval, policy.deadline - elapsed))
