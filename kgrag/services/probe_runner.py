"""
ProbeRunner - Fan-out/fan-in execution of independent retrieval probes.

Each call to ``run`` gets its own thread pool, so a probe that overran an
earlier request never holds a worker a later request needs. A probe that
raises or misses the request deadline becomes a ProbeFailure instead of
failing the request.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Set, Tuple

from kgrag import config
from kgrag.models import ProbeFailure

logger = logging.getLogger(__name__)


class ProbeRunner:
    """
    Runs named callables in parallel with a per-request timeout.

    ``max_workers`` caps the threads of a single request. Timed-out probes
    cannot be interrupted; their threads finish in the background and are
    not reused.
    """

    def __init__(self, max_workers: int = config.MAX_PARALLEL_PROBES):
        self.max_workers = max(1, max_workers)
        self._executors: Set[ThreadPoolExecutor] = set()
        self._lock = threading.Lock()

    def run(
        self,
        probes: Dict[str, Callable[[], Any]],
        timeout: float = config.PROBE_TIMEOUT_SECONDS,
    ) -> Tuple[Dict[str, Any], List[ProbeFailure]]:
        """
        Execute every probe and wait for all of them (bounded by ``timeout``).

        Args:
            probes: Probe name -> zero-argument callable
            timeout: Seconds the probes of this call may take, measured from
                submission

        Returns:
            (results keyed by probe name, failures in submission order)
        """
        if not probes:
            return {}, []

        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(probes)),
            thread_name_prefix="kgrag-probe",
        )
        with self._lock:
            self._executors.add(executor)

        try:
            future_to_name = {
                executor.submit(probe): name for name, probe in probes.items()
            }
            started = time.monotonic()
            done, _ = wait(future_to_name, timeout=timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            with self._lock:
                self._executors.discard(executor)

        results: Dict[str, Any] = {}
        failures: Dict[str, ProbeFailure] = {}

        for future, name in future_to_name.items():
            if future not in done:
                future.cancel()
                failures[name] = ProbeFailure(name, f"timed out after {timeout:g}s")
                logger.warning("Probe '%s' timed out after %.1fs", name, time.monotonic() - started)
                continue
            try:
                results[name] = future.result()
            except Exception as e:
                failures[name] = ProbeFailure(name, f"{type(e).__name__}: {e}")
                logger.warning("Probe '%s' failed: %s", name, e)

        ordered_failures = [failures[name] for name in probes if name in failures]
        return results, ordered_failures

    def shutdown(self):
        """Cancel queued probes of calls still in flight."""
        with self._lock:
            executors = list(self._executors)
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=False, cancel_futures=True)
