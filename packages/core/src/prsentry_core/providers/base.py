"""Base completion client implementing the retry policy.

All providers share the same call algorithm:
    complete() → _call_api()   ← only this differs per provider
               → on a retryable ModelError: Backoff.next_delay() → wait → retry

Subclasses implement two things only:
  - __init__: validate and store the SDK client
  - _call_api: make one raw API call, return the text response, and translate
    SDK failures into the ModelError hierarchy

Retry state lives in an explicit Backoff object rather than in recursion, so
the schedule can be tested with a seeded RNG and a fake sleep.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from prsentry_core.errors import ModelError, ModelTimeoutError

logger = logging.getLogger(__name__)

# Shared defaults; subclasses may override them as class attributes.
_MAX_ATTEMPTS = 4
_BASE_DELAY = 1.0
_MAX_DELAY = 30.0


@dataclass
class Backoff:
    """Exponential backoff with jitter for one call.

    ``attempt`` counts attempts already started. The delay before attempt
    n + 1 is ``base * 2 ** (n - 1)`` capped at ``max_delay``, then scaled by a
    random factor in ``[1 - jitter, 1]``.
    """

    max_attempts: int = _MAX_ATTEMPTS
    base_delay: float = _BASE_DELAY
    max_delay: float = _MAX_DELAY
    jitter: float = 0.5
    rng: random.Random = field(default_factory=random.Random)
    attempt: int = 0
    last_delay: float = 0.0

    def start_attempt(self) -> int:
        self.attempt += 1
        return self.attempt

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_delay(self, retry_after: float | None = None) -> float:
        delay = min(self.max_delay, self.base_delay * 2 ** max(self.attempt - 1, 0))
        delay *= 1 - self.jitter * self.rng.random()
        if retry_after is not None:
            # The server's hint wins but never beyond the cap.
            delay = min(max(delay, retry_after), self.max_delay)
        self.last_delay = delay
        return delay


class BaseModelClient(ABC):
    MAX_ATTEMPTS: int = _MAX_ATTEMPTS
    BASE_DELAY: float = _BASE_DELAY
    MAX_DELAY: float = _MAX_DELAY

    def __init__(
        self,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], None] | None = None,
        rng: random.Random | None = None,
    ):
        self.max_attempts = max_attempts or self.MAX_ATTEMPTS
        self.base_delay = base_delay or self.BASE_DELAY
        self.max_delay = max_delay or self.MAX_DELAY
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._rng_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> str:
        """Return the model's raw text response, retrying transient failures.

        AuthError and non-retryable ModelErrors propagate on the first
        occurrence. Retryable ones propagate once the attempt budget is spent
        or ``cancel`` is set. ``deadline`` (a ``time.monotonic()`` value) caps
        each attempt's timeout; once it has passed, no further attempt starts.
        """
        backoff = self.new_backoff()
        while True:
            if cancel is not None and cancel.is_set():
                raise ModelError("Review cancelled before the completion call.")
            timeout = None
            if deadline is not None:
                timeout = deadline - time.monotonic()
                if timeout <= 0:
                    raise ModelTimeoutError("Run deadline reached before the completion call.")
            backoff.start_attempt()
            try:
                return self._call_api(system_prompt, user_prompt, timeout=timeout)
            except ModelError as e:
                if not e.retryable:
                    raise
                if backoff.exhausted:
                    logger.error(
                        "%s failed after %d attempts: %s",
                        self.__class__.__name__,
                        backoff.attempt,
                        e,
                    )
                    raise
                delay = backoff.next_delay(getattr(e, "retry_after", None))
                logger.warning(
                    "%s error (attempt %d/%d): %s. Retrying in %.1fs...",
                    self.__class__.__name__,
                    backoff.attempt,
                    backoff.max_attempts,
                    e,
                    delay,
                )
                if self._wait(delay, cancel):
                    raise ModelError(f"Review cancelled while retrying: {e}") from e

    def new_backoff(self) -> Backoff:
        # Each call gets its own RNG seeded from the shared one, so concurrent
        # calls never touch the shared RNG outside the lock.
        with self._rng_lock:
            seed = self._rng.random()
        return Backoff(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            rng=random.Random(seed),
        )

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                                #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _call_api(self, system_prompt: str, user_prompt: str, timeout: float | None = None) -> str:
        """Make a single API call and return the raw text response.

        ``timeout``, when given, is the most this call may take in seconds.

        Must raise a ModelError subclass on failure; complete() decides
        whether to retry based on the error's ``retryable`` flag.
        """

    # ------------------------------------------------------------------ #
    # Shared implementations                                               #
    # ------------------------------------------------------------------ #

    def _wait(self, delay: float, cancel: threading.Event | None) -> bool:
        """Sleep for ``delay`` seconds; return True if cancelled meanwhile.

        An injected ``sleep`` always wins so tests can drive the schedule with
        a fake clock; otherwise the wait is interruptible through ``cancel``.
        """
        if self._sleep is not None:
            self._sleep(delay)
            return cancel is not None and cancel.is_set()
        if cancel is not None:
            return cancel.wait(delay)
        time.sleep(delay)
        return False
