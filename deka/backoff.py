"""Backoff policies that decide how long to wait before the next attempt.

Every policy has the same three methods:

  * `next_delay` returns the number of seconds to wait before the next
    attempt, or `None` to give up.
  * `reset` restores the initial delay schedule.
  * `clone` derives an independent copy. The reconciler clones the policy
    for every manifest so that the retries of one manifest never affect
    the delays of another.

The default `clone` is a deep copy and does not call `reset`. Stateful
policies must override it and return an instance in its initial state.

"""
import copy
import random
import time


class Backoff:
    """Base class for all backoff policies."""
    def reset(self) -> None:
        pass

    def next_delay(self) -> float | None:
        raise NotImplementedError

    def clone(self) -> "Backoff":
        return copy.deepcopy(self)


class StopBackoff(Backoff):
    """Never retry."""
    def next_delay(self) -> float | None:
        return None


class ConstantBackoff(Backoff):
    """Wait `interval` seconds between attempts and give up after `max_retries`."""
    def __init__(self, interval: float = 1.0, max_retries: int = 3):
        if interval < 0 or max_retries < 0:
            raise ValueError(
                f"Invalid constant backoff: interval={interval} max_retries={max_retries}"
            )
        self.interval = interval
        self.max_retries = max_retries
        self.retries = 0

    def reset(self) -> None:
        self.retries = 0

    def next_delay(self) -> float | None:
        self.retries += 1
        return self.interval if self.retries <= self.max_retries else None

    def clone(self) -> "ConstantBackoff":
        return ConstantBackoff(self.interval, self.max_retries)


class ExponentialBackoff(Backoff):
    """Exponentially increasing and randomised delays.

    The first delay is `initial_interval` and every subsequent one is
    `multiplier` times longer, but never longer than `max_interval`. Each
    delay is randomly perturbed by up to `randomization_factor` in either
    direction, eg a factor of 0.5 turns a 2s interval into a random delay
    between 1s and 3s.

    Give up once `max_elapsed_time` seconds have passed since the last
    `reset` (or since the policy was created). Use `None` to retry forever.

    """
    def __init__(self,
                 initial_interval: float = 0.4,
                 multiplier: float = 5.0,
                 randomization_factor: float = 0.5,
                 max_interval: float = 30.0,
                 max_elapsed_time: float | None = 300.0):
        if initial_interval <= 0:
            raise ValueError(f"Initial interval must be positive, not {initial_interval}")
        if multiplier < 1:
            raise ValueError(f"Multiplier must be at least 1, not {multiplier}")
        if not 0 <= randomization_factor <= 1:
            raise ValueError(
                f"Randomization factor must be in [0, 1], not {randomization_factor}"
            )
        if max_interval < initial_interval:
            raise ValueError(
                f"Max interval ({max_interval}) is less than the "
                f"initial interval ({initial_interval})"
            )

        self.initial_interval = initial_interval
        self.multiplier = multiplier
        self.randomization_factor = randomization_factor
        self.max_interval = max_interval
        self.max_elapsed_time = max_elapsed_time

        self.current_interval = initial_interval
        self.start_time = time.monotonic()

    def reset(self) -> None:
        self.current_interval = self.initial_interval
        self.start_time = time.monotonic()

    def clone(self) -> "ExponentialBackoff":
        return ExponentialBackoff(
            initial_interval=self.initial_interval,
            multiplier=self.multiplier,
            randomization_factor=self.randomization_factor,
            max_interval=self.max_interval,
            max_elapsed_time=self.max_elapsed_time,
        )

    def elapsed(self) -> float:
        return time.monotonic() - self.start_time

    def next_delay(self) -> float | None:
        if self.max_elapsed_time is not None and self.elapsed() > self.max_elapsed_time:
            return None

        delta = self.randomization_factor * self.current_interval
        delay = random.uniform(self.current_interval - delta, self.current_interval + delta)

        self.current_interval = min(
            self.current_interval * self.multiplier, self.max_interval
        )
        return delay
