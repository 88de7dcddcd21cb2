# services/backup_service.py
"""
Backups completos del estado persistido en ficheros JSON.

Cada backup es un único fichero ``backup_<id>.json`` con ``metadata`` (id,
fecha, recuentos, checksum) y ``data`` (snapshot de la persistencia). Se
escribe a un temporal y se renombra, así que nunca queda un backup a medias.
"""
from __future__ import annotations
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from services.persistence_service import PersistenceService
from utils.config import Settings
from utils.exceptions import BackupError
from utils.logger import logger_manager, log_function
from utils.scheduler import ScheduledTask

logger = logger_manager.setup_logger(__name__)

_PREFIX = "backup_"


def _checksum(data: Dict[str, Any]) -> str:
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class BackupService:
    def __init__(self, persistence: PersistenceService, settings: Settings) -> None:
        self.persistence = persistence
        self.backup_dir = Path(settings.backup_dir).expanduser()
        self.retention = max(1, int(settings.backup_retention))
        self.interval = float(settings.backup_interval_secs)
        self._task: Optional[ScheduledTask] = None

    def _path_for(self, backup_id: str) -> Path:
        return self.backup_dir / f"{_PREFIX}{backup_id}.json"

    @log_function
    def create_backup(self) -> Dict[str, Any]:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        data = self.persistence.export_snapshot()
        now_ns = time.time_ns()
        # el id ordena cronológicamente
        backup_id = f"{time.strftime('%Y%m%d_%H%M%S', time.localtime(now_ns // 1_000_000_000))}_{now_ns % 1_000_000_000:09d}"
        metadata = {
            "id": backup_id,
            "created_at": now_ns // 1_000_000_000,
            "counts": {k: len(v) for k, v in data.items()},
            "checksum": _checksum(data),
        }
        target = self._path_for(backup_id)
        tmp = target.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"metadata": metadata, "data": data}, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
        metadata["size"] = target.stat().st_size
        logger.info(f"💾 Backup {backup_id} creado ({metadata['counts']})")
        self.prune()
        return metadata

    def list_backups(self) -> List[Dict[str, Any]]:
        """Metadatos de los backups disponibles, el más reciente primero."""
        if not self.backup_dir.exists():
            return []
        found: List[Dict[str, Any]] = []
        for path in self.backup_dir.glob(f"{_PREFIX}*.json"):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    meta = json.load(f).get("metadata") or {}
            except (OSError, ValueError) as e:
                logger.warning(f"Backup ilegible {path.name}: {e}")
                continue
            meta["size"] = path.stat().st_size
            found.append(meta)
        return sorted(found, key=lambda m: str(m.get("id", "")), reverse=True)

    def prune(self) -> int:
        backups = self.list_backups()
        removed = 0
        for meta in backups[self.retention:]:
            try:
                self._path_for(meta["id"]).unlink()
                removed += 1
            except OSError as e:
                logger.warning(f"No se pudo borrar el backup {meta.get('id')}: {e}")
        if removed:
            logger.info(f"🧹 {removed} backups antiguos eliminados")
        return removed

    @log_function
    def restore_backup(self, backup_id: str) -> Dict[str, int]:
        path = self._path_for(backup_id)
        if not path.exists():
            raise BackupError(f"Backup {backup_id} no encontrado")
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, ValueError) as e:
            raise BackupError(f"Backup {backup_id} ilegible: {e}") from e
        data = payload.get("data") or {}
        expected = (payload.get("metadata") or {}).get("checksum")
        if expected != _checksum(data):
            raise BackupError(f"Checksum del backup {backup_id} no coincide")
        counts = self.persistence.import_snapshot(data)
        logger.info(f"♻️ Backup {backup_id} restaurado: {counts}")
        return counts

    # ---------- periódico ----------
    def _tick(self, _stop_evt) -> float:
        try:
            self.create_backup()
        except (OSError, BackupError) as e:
            logger.error(f"Backup periódico fallido: {e}")
        return self.interval

    def start(self) -> None:
        if self._task and self._task.is_alive():
            return
        self._task = ScheduledTask("Backup", self._tick, initial_delay=self.interval).start()
        logger.info(f"Backups automáticos cada {self.interval:.0f}s (se conservan {self.retention})")

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
