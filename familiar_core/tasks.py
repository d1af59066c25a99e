"""Run the cooperative optimizer on a worker thread with cancel and progress hooks."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from .conditions import ConditionEvaluator
from .models import ConditionalBonus, Familiar, OptimizerConfig, StrategyResults
from .optimizer import ProgressCallback, run_all_strategies

logger = logging.getLogger(__name__)


class BackgroundOptimizer:
    """Owns one background run of :func:`run_all_strategies`.

    The future returned by :meth:`start` is the completion signal. Calling
    :meth:`cancel` makes the run stop at its next cancellation check and
    resolve with the partial results gathered so far.
    """

    def __init__(
        self,
        combinations: Sequence[list[Familiar]],
        bonuses: Sequence[ConditionalBonus],
        config: Optional[OptimizerConfig] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        on_progress: Optional[ProgressCallback] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self._combinations = list(combinations)
        self._bonuses = list(bonuses)
        self._config = config
        self._evaluator = evaluator
        self._on_progress = on_progress
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="lineup-optimizer"
        )
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._progress = 0
        self._future: Optional[Future[StrategyResults]] = None

    @property
    def progress(self) -> int:
        """Latest reported completion percentage (0-100)."""

        with self._lock:
            return self._progress

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _record_progress(self, percent: int) -> None:
        with self._lock:
            if percent <= self._progress:
                return
            self._progress = percent
        if self._on_progress is not None:
            self._on_progress(percent)

    def _run(self) -> StrategyResults:
        logger.info("Background optimizer started (%d combinations)", len(self._combinations))
        results = asyncio.run(
            run_all_strategies(
                self._combinations,
                self._bonuses,
                on_progress=self._record_progress,
                should_cancel=self._cancel_event.is_set,
                config=self._config,
                evaluator=self._evaluator,
            )
        )
        logger.info(
            "Background optimizer %s", "cancelled" if self.cancelled else "finished"
        )
        return results

    def start(self) -> Future[StrategyResults]:
        """Submit the run; calling again returns the same future."""

        if self._future is None:
            self._future = self._executor.submit(self._run)
            if self._owns_executor:
                self._future.add_done_callback(lambda _: self._executor.shutdown(wait=False))
        return self._future

    def cancel(self) -> None:
        self._cancel_event.set()

    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def result(self, timeout: Optional[float] = None) -> StrategyResults:
        """Wait for the run (starting it if needed) and return its results."""

        return self.start().result(timeout=timeout)
