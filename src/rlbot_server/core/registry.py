"""Registry of live bots keyed by player index."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from .errors import PolicyConstructionError
from .types import NEUTRAL_OUTPUT, ControlOutput, Snapshot

if TYPE_CHECKING:
    from ..policies.base import BotPolicy

logger = logging.getLogger(__name__)

PolicyFactory = Callable[[int], "BotPolicy"]


class BotState(Enum):
    """Lifecycle state of a bot handle."""

    CREATED = "created"
    ACTIVE = "active"
    RETIRED = "retired"


class BotHandle:
    """Lifecycle record for one controlled car.

    Owns the policy and a single worker thread so frames for the same
    index never run concurrently.
    """

    def __init__(
        self,
        index: int,
        bot_type: str,
        team: int,
        policy: Optional["BotPolicy"],
        owner: Optional[str] = None,
        error: Optional[BaseException] = None,
    ):
        self.index = index
        self.bot_type = bot_type
        self.team = team
        self.policy = policy
        self.owner = owner
        self.error = error

        self.created_at = time.monotonic()
        self.frames_processed = 0
        self.last_output: ControlOutput = NEUTRAL_OUTPUT
        self.retired_warning_logged = False

        # Overdue invocation whose result will be discarded
        self.overdue: Optional[Future] = None

        self._lock = threading.Lock()
        self._state = BotState.CREATED if policy is not None else BotState.RETIRED
        self._executor: Optional[ThreadPoolExecutor] = None
        if policy is not None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix=f"bot-{index}"
            )

    def __repr__(self) -> str:
        return (
            f"BotHandle(index={self.index}, bot_type={self.bot_type!r}, "
            f"team={self.team}, state={self._state.value})"
        )

    @property
    def state(self) -> BotState:
        return self._state

    @property
    def is_live(self) -> bool:
        return self._state is not BotState.RETIRED

    @property
    def failed(self) -> bool:
        """True if the policy could not be constructed."""
        return self.error is not None

    def submit(self, snapshot: Snapshot) -> Optional[Future]:
        """Schedule process_input on the bot's worker.

        Returns:
            Future for the output, or None if the handle is retired
        """
        with self._lock:
            if self._state is BotState.RETIRED or self._executor is None:
                return None
            try:
                return self._executor.submit(self.policy.process_input, snapshot)
            except RuntimeError:
                # Executor shut down by a concurrent retire
                return None

    def mark_overdue(self, future: Future) -> None:
        """Remember an invocation that missed its deadline."""
        with self._lock:
            self.overdue = future

    def overdue_running(self) -> bool:
        """True while an overdue invocation still occupies the worker."""
        with self._lock:
            if self.overdue is None:
                return False
            if self.overdue.done():
                self.overdue = None
                return False
            return True

    def record(self, output: ControlOutput) -> None:
        """Store a successfully computed output and mark the bot active."""
        with self._lock:
            self.last_output = output
            self.frames_processed += 1
            if self._state is BotState.CREATED:
                self._state = BotState.ACTIVE

    def mark_retired(self) -> bool:
        """Transition to RETIRED.

        Returns:
            True if this call performed the transition
        """
        with self._lock:
            if self._state is BotState.RETIRED:
                return False
            self._state = BotState.RETIRED
            executor, self._executor = self._executor, None

        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        return True


class BotRegistry:
    """Maps player index to bot handle.

    Creation and retirement hold a per-index lock; lookups read the dict
    without locking.
    """

    def __init__(
        self,
        retry_backoff: float = 5.0,
        retry_max: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize registry.

        Args:
            retry_backoff: Seconds before a failed index may be rebuilt
            retry_max: Upper bound for the doubled back-off
            clock: Monotonic time source
        """
        self.retry_backoff = retry_backoff
        self.retry_max = retry_max
        self._clock = clock

        self._handles: Dict[int, BotHandle] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        # index -> (consecutive failures, monotonic time when retry is allowed)
        self._failures: Dict[int, tuple] = {}

    def __len__(self) -> int:
        return len(self.live_indices())

    def __contains__(self, index: int) -> bool:
        handle = self._handles.get(index)
        return handle is not None and handle.is_live

    def _lock_for(self, index: int) -> threading.Lock:
        lock = self._locks.get(index)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(index, threading.Lock())
        return lock

    def lookup(self, index: int) -> Optional[BotHandle]:
        """Get the handle for an index without mutating anything."""
        return self._handles.get(index)

    def ensure(
        self,
        index: int,
        bot_type: str,
        team: int,
        factory: PolicyFactory,
        owner: Optional[str] = None,
    ) -> BotHandle:
        """Get the live handle for an index, constructing it if needed.

        The factory is called at most once per live handle. If it raises,
        a retired handle carrying the error is stored and further attempts
        are refused until the back-off window has passed.

        Args:
            index: Player index
            bot_type: Bot type tag
            team: Team id
            factory: Builds the policy from the index
            owner: Connection id that requested the bot

        Returns:
            The handle for the index
        """
        if index < 0:
            raise ValueError(f"Player index must be non-negative, got {index}")

        handle = self._handles.get(index)
        if handle is not None and handle.is_live:
            return handle

        with self._lock_for(index):
            handle = self._handles.get(index)
            if handle is not None and handle.is_live:
                return handle

            failures, retry_at = self._failures.get(index, (0, 0.0))
            if handle is not None and handle.failed and self._clock() < retry_at:
                return handle

            try:
                policy = factory(index)
            except Exception as e:
                failures += 1
                delay = min(self.retry_max, self.retry_backoff * 2 ** (failures - 1))
                self._failures[index] = (failures, self._clock() + delay)
                error = PolicyConstructionError(index, bot_type, e)
                logger.error("%s (retry allowed in %.1fs)", error, delay, exc_info=e)
                handle = BotHandle(index, bot_type, team, None, owner=owner, error=error)
                self._handles[index] = handle
                return handle

            self._failures.pop(index, None)
            handle = BotHandle(index, bot_type, team, policy, owner=owner)
            self._handles[index] = handle

        logger.info("Created %s bot for index %d (team %d)", bot_type, index, team)
        return handle

    def retire(self, index: int) -> bool:
        """Retire the bot at an index.

        Idempotent: unknown or already retired indices are a no-op.

        Returns:
            True if a live bot was retired by this call
        """
        return self._retire(index)

    def _retire(self, index: int, owner: Optional[str] = None, discard: bool = False) -> bool:
        if index not in self._handles:
            return False

        with self._lock_for(index):
            handle = self._handles.get(index)
            if handle is None or not handle.is_live:
                return False
            if owner is not None and handle.owner != owner:
                return False
            if discard:
                del self._handles[index]
            handle.mark_retired()

        try:
            handle.policy.retire()
        except Exception:
            logger.exception("Policy for index %d raised during retire", index)

        logger.info("Retired bot %d after %d frames", index, handle.frames_processed)
        return True

    def retire_owned(self, owner: str) -> List[int]:
        """Retire and discard every live bot created by a connection.

        Discarded indices count as unseen, so the next frame for one of
        them builds a fresh bot.

        Returns:
            Indices that were retired
        """
        owned = [
            index for index, handle in list(self._handles.items())
            if handle.owner == owner and handle.is_live
        ]
        return [index for index in owned if self._retire(index, owner=owner, discard=True)]

    def retire_all(self) -> List[int]:
        """Retire every live bot."""
        return [index for index in list(self._handles) if self.retire(index)]

    def live_indices(self) -> List[int]:
        """Sorted indices of all live bots."""
        return sorted(
            index for index, handle in list(self._handles.items()) if handle.is_live
        )

    def handles(self) -> List[BotHandle]:
        """All handles, live and retired, sorted by index."""
        return [handle for _, handle in sorted(list(self._handles.items()))]
