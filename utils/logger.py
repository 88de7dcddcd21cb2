from __future__ import annotations
import functools
import logging
import os
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pydantic import BaseModel, SecretStr

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_MAX_BYTES = int(os.getenv("LOG_MAX_BYTES", str(1024 * 1024)))
LOG_BACKUP_COUNT = int(os.getenv("LOG_BACKUP_COUNT", "3"))

_CONSOLE_FMT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"
_FILE_FMT = "%(asctime)s | %(levelname)s | %(threadName)s | %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"

# nombres de argumento/campo que nunca llegan a un log
_SECRET_FIELDS = {"private_key", "signing_key", "key"}


class _LoggerManager:
    """Consola en el root logger y un fichero rotativo por módulo en ``LOG_DIR``."""

    def __init__(self) -> None:
        self.level = getattr(logging, LOG_LEVEL, logging.INFO)
        self.log_dir = Path(os.getenv("LOG_DIR", "./logs"))
        self._console_ready = False
        self._files: dict[str, logging.Handler] = {}

    def _console(self) -> None:
        if self._console_ready:
            return
        root = logging.getLogger()
        root.setLevel(self.level)
        if not any(isinstance(h, logging.StreamHandler) for h in root.handlers):
            handler = logging.StreamHandler()
            handler.setLevel(self.level)
            handler.setFormatter(logging.Formatter(_CONSOLE_FMT, _DATE_FMT))
            root.addHandler(handler)
        self._console_ready = True

    def _file_handler(self, name: str) -> logging.Handler:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.log_dir / f"{name.replace('.', '_').replace('/', '_')}.log"
        handler = RotatingFileHandler(path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8")
        handler.setLevel(self.level)
        handler.setFormatter(logging.Formatter(_FILE_FMT, _DATE_FMT))
        return handler

    def setup_logger(self, name: str) -> logging.Logger:
        self._console()
        logger = logging.getLogger(name)
        if name in self._files:
            return logger
        try:
            handler = self._file_handler(name)
        except OSError as e:
            logging.getLogger(__name__).warning(f"{name} sin log a fichero: {e}")
            return logger
        self._files[name] = handler
        logger.addHandler(handler)
        return logger


logger_manager = _LoggerManager()


def _redact(value):
    """Representación apta para log: oculta material de claves."""
    if isinstance(value, SecretStr):
        return "***"
    if isinstance(value, BaseModel):
        fields = type(value).model_fields
        if _SECRET_FIELDS.isdisjoint(fields):
            return repr(value)
        shown = {k: getattr(value, k) for k in fields if k not in _SECRET_FIELDS}
        return f"{type(value).__name__}({shown})"
    # LocalAccount de eth_account
    if hasattr(value, "key") and hasattr(value, "address"):
        return f"<signer {value.address}>"
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(v) for v in value)
    return value


def log_function(func):
    """Traza entrada/salida a DEBUG; en error deja el traceback y relanza."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logger_manager.setup_logger(func.__module__)
        if logger.isEnabledFor(logging.DEBUG):
            safe_args = [_redact(a) for a in args]
            safe_kwargs = {k: "***" if k in _SECRET_FIELDS else _redact(v) for k, v in kwargs.items()}
            logger.debug(f"→ {func.__name__} args={safe_args} kwargs={safe_kwargs}")
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.exception(f"✗ {func.__name__}: {e}")
            raise
        logger.debug(f"← {func.__name__} ({(time.perf_counter() - started) * 1000:.1f} ms)")
        return result
    return wrapper
