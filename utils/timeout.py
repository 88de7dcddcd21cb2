from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Any, Callable, TypeVar

from utils.exceptions import ExternalCallTimeout

T = TypeVar("T")


def call_with_timeout(label: str, func: Callable[..., T], timeout_seconds: float, *args: Any, **kwargs: Any) -> T:
    """
    Ejecuta ``func`` con un plazo máximo. Si se supera, lanza ExternalCallTimeout.

    Usa un hilo auxiliar: la llamada original sigue viva en segundo plano si vence
    el plazo, así que ``func`` debe ser segura entre hilos.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"call-{label}")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as exc:
        raise ExternalCallTimeout(f"{label} sin respuesta tras {timeout_seconds}s") from exc
    finally:
        # no esperamos al hilo colgado
        executor.shutdown(wait=False)
