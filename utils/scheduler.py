# utils/scheduler.py
from __future__ import annotations
import threading
from typing import Callable, Optional

from utils.logger import logger_manager

logger = logger_manager.setup_logger(__name__)


class ScheduledTask:
    """
    Hilo con parada explícita que ejecuta ``step`` en bucle.

    - ``step(stop_evt)`` devuelve los segundos hasta la siguiente ejecución, o
      ``None`` para terminar.
    - ``cancel()`` marca la parada; se respeta entre ejecuciones, nunca a mitad.
    - Una excepción no controlada termina la tarea y queda en ``last_error``
      (quien la supervise decide si relanzarla).
    """

    def __init__(self, name: str, step: Callable[[threading.Event], Optional[float]], initial_delay: float = 0.0) -> None:
        self.name = name
        self._step = step
        self._initial_delay = max(0.0, float(initial_delay))
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_error: Optional[BaseException] = None
        self.finished = False

    def start(self) -> "ScheduledTask":
        if self._thread and self._thread.is_alive():
            return self
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"[{self.name}] tarea iniciada")
        return self

    def cancel(self) -> None:
        self._stop_evt.set()

    @property
    def cancelled(self) -> bool:
        return self._stop_evt.is_set()

    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _run_loop(self) -> None:
        if self._initial_delay and self._stop_evt.wait(self._initial_delay):
            return
        while not self._stop_evt.is_set():
            try:
                delay = self._step(self._stop_evt)
            except Exception as e:
                self.last_error = e
                logger.exception(f"[{self.name}] tarea abortada por error inesperado: {e}")
                return
            if delay is None:
                self.finished = True
                logger.debug(f"[{self.name}] tarea finalizada")
                return
            self._stop_evt.wait(max(0.0, float(delay)))
