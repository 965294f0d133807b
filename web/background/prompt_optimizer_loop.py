"""Periodic batch aggregation for the login-prompt optimizer."""

from __future__ import annotations

import threading
from typing import Optional

from core.logging import get_logger
from services.prompt_optimizer import PromptOptimizer

logger = get_logger(__name__)


class PromptOptimizerLoop:
    """Runs ``PromptOptimizer.run_batch_update`` on a daemon thread.

    A failing tick is logged and the loop keeps going; a slow tick simply
    delays the next one.
    """

    def __init__(self, optimizer: PromptOptimizer, *, interval_seconds: Optional[float] = None) -> None:
        self.optimizer = optimizer
        self.interval_seconds = float(interval_seconds or optimizer.config.update_interval_seconds)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="prompt-optimizer", daemon=True)
        self._thread.start()
        logger.info("Prompt optimizer loop started (interval=%.1fs).", self.interval_seconds)

    def stop(self, *, timeout: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        self._thread = None

    def tick(self) -> None:
        try:
            self.optimizer.run_batch_update()
        except Exception:  # keep the loop alive; the next tick retries the sweep
            logger.exception("Prompt optimizer batch update failed.")
        finally:
            self.ticks += 1

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.tick()


_loop: Optional[PromptOptimizerLoop] = None


def start_prompt_optimizer_loop(optimizer: PromptOptimizer) -> PromptOptimizerLoop:
    global _loop
    if _loop is None:
        _loop = PromptOptimizerLoop(optimizer)
    _loop.start()
    return _loop


def stop_prompt_optimizer_loop() -> None:
    global _loop
    if _loop is not None:
        _loop.stop()
        _loop = None


__all__ = ["PromptOptimizerLoop", "start_prompt_optimizer_loop", "stop_prompt_optimizer_loop"]
