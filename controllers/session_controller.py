# controllers/session_controller.py
from __future__ import annotations
from typing import Any, Dict, Optional

from orchestrators.session_orchestrator import SessionOrchestrator
from services.backup_service import BackupService
from utils.exceptions import BackupError, ExternalCallTimeout, NoRoute, NotTradeable, SessionNotFound
from utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)


class SessionController:
    """
    Capa fina para API/CLI: traduce el orquestador a dicts ``{"ok": bool, ...}``.

    Nunca expone mínimos privilegiados, claves ni detalles internos; en error
    devuelve ``reason`` descriptivo.
    """

    def __init__(self, orchestrator: SessionOrchestrator, backups: Optional[BackupService] = None) -> None:
        self.orchestrator = orchestrator
        self.backups = backups

    @log_function
    def create(self, target_asset: str, owner_address: Optional[str] = None) -> Dict[str, Any]:
        try:
            created = self.orchestrator.create_session(target_asset, owner_address=owner_address)
        except NotTradeable as e:
            return {"ok": False, "reason": f"Activo sin mercado viable: {e}"}
        except NoRoute as e:
            return {"ok": False, "reason": f"Sin ruta de swap: {e}"}
        except ExternalCallTimeout as e:
            return {"ok": False, "reason": f"Validación de mercado sin respuesta: {e}"}
        except ValueError as e:
            return {"ok": False, "reason": str(e)}
        return {
            "ok": True,
            "session_id": created.session_id,
            "wallet_address": created.wallet_address,
            "minimum_deposit": str(self.orchestrator.settings.min_deposit),
        }

    def status(self, session_id: str) -> Dict[str, Any]:
        try:
            snap = self.orchestrator.get_session_status(session_id)
        except SessionNotFound as e:
            return {"ok": False, "reason": str(e)}
        return {"ok": True, "session": snap.to_dict()}

    @log_function
    def stop(self, session_id: str) -> Dict[str, Any]:
        try:
            snap = self.orchestrator.stop_session(session_id)
        except SessionNotFound as e:
            return {"ok": False, "reason": str(e)}
        return {"ok": True, "session_id": session_id, "state": snap.state}

    def list_active(self) -> Dict[str, Any]:
        sessions = [s.to_dict() for s in self.orchestrator.list_active_sessions()]
        return {"ok": True, "count": len(sessions), "sessions": sessions}

    @log_function
    def stop_all(self) -> Dict[str, Any]:
        stopped = self.orchestrator.stop_all_sessions()
        return {"ok": True, "stopped": stopped, "count": len(stopped)}

    def stats(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "sessions": self.orchestrator.session_stats(),
            "total_fees_collected": str(self.orchestrator.total_fees_collected()),
        }

    def create_backup(self) -> Dict[str, Any]:
        if self.backups is None:
            return {"ok": False, "reason": "Backups no configurados"}
        try:
            meta = self.backups.create_backup()
        except OSError as e:
            return {"ok": False, "reason": f"No se pudo escribir el backup: {e}"}
        return {"ok": True, "backup": meta}

    def restore_backup(self, backup_id: str) -> Dict[str, Any]:
        if self.backups is None:
            return {"ok": False, "reason": "Backups no configurados"}
        try:
            counts = self.backups.restore_backup(backup_id)
        except BackupError as e:
            return {"ok": False, "reason": str(e)}
        return {"ok": True, "restored": counts}
