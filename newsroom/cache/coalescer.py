"""
In-process coalescing of blocking generations.

On a cold start every request in this process that finds an empty cache
would otherwise run the pipeline itself. The first caller runs it; later
callers wait for that run and share its result or its error.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("cache.coalescer")


@dataclass
class PendingGeneration:
    """A generation some caller in this process is currently running."""
    done: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.time)
    joined: int = 0


class GenerationCoalescer:
    """
    Shares one in-flight call per key among concurrent callers.

    Usage:
        coalescer = GenerationCoalescer(timeout=120.0)
        data = coalescer.run("homepage-result", coordinator.generate)
    """

    def __init__(self, timeout: float = 120.0):
        """
        Args:
            timeout: Max seconds a joining caller waits for the running call
        """
        self._pending: Dict[str, PendingGeneration] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    def run(self, key: str, fn: Callable[[], Any]) -> Any:
        """
        Run fn for key, or wait for the caller already running it.

        Raises:
            TimeoutError: If the running call does not finish in time
            Exception: Whatever fn raised, re-raised in every caller
        """
        with self._lock:
            pending = self._pending.get(key)
            owner = pending is None
            if owner:
                pending = PendingGeneration()
                self._pending[key] = pending
            else:
                pending.joined += 1
                logger.debug(f"Joining in-flight generation for {key} (joined: {pending.joined})")

        if owner:
            try:
                pending.result = fn()
            except Exception as e:
                pending.error = e
            finally:
                with self._lock:
                    self._pending.pop(key, None)
                pending.done.set()
        elif not pending.done.wait(timeout=self._timeout):
            logger.error(f"Timed out after {self._timeout}s waiting for generation of {key}")
            raise TimeoutError(f"Generation of {key} timed out after {self._timeout}s")

        if pending.error is not None:
            raise pending.error
        return pending.result

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._pending)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "in_flight": len(self._pending),
                "keys": list(self._pending.keys()),
            }
