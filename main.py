# main.py
from __future__ import annotations
import signal
import threading

from dotenv import load_dotenv

load_dotenv()

# ---- imports del proyecto ----
from controllers.session_controller import SessionController
from orchestrators.recovery_orchestrator import RecoveryOrchestrator
from orchestrators.session_orchestrator import SessionOrchestrator
from services.backup_service import BackupService
from services.fund_split_service import FundSplitLedger
from services.ledger_service import Web3LedgerService
from services.market_service import MarketService
from services.persistence_service import PersistenceService
from services.swap_service import Web3SwapService
from services.wallet_service import WalletLifecycleManager
from utils.config import Settings
from utils.logger import logger_manager

logger = logger_manager.setup_logger(__name__)


class App:
    """Cableado de servicios a partir de Settings."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.persistence = PersistenceService(settings.db_path)
        self.wallets = WalletLifecycleManager()
        self.funds = FundSplitLedger(settings)
        self.ledger = Web3LedgerService(settings)
        self.swap = Web3SwapService(settings)
        self.market = MarketService(settings)
        self.orchestrator = SessionOrchestrator(
            settings, self.persistence, self.wallets, self.funds,
            self.ledger, self.swap, self.market,
        )
        self.recovery = RecoveryOrchestrator(
            settings, self.orchestrator, self.persistence, self.wallets, self.funds, self.ledger,
        )
        self.backups = BackupService(self.persistence, settings)
        self.controller = SessionController(self.orchestrator, self.backups)

    def start(self) -> None:
        summary = self.recovery.recover_all()
        logger.info(f"Sesiones recuperadas al arrancar: {summary}")
        self.recovery.start_sweep()
        self.backups.start()

    def stop(self) -> None:
        # sin marcar STOPPED: al reiniciar se reanudan
        self.recovery.stop_sweep()
        self.backups.stop()
        self.orchestrator.shutdown()


# ------------------------------
# Señales / apagado limpio
# ------------------------------
stop_all_evt = threading.Event()


def shutdown(*_):
    logger.info("🛑 Señal de apagado recibida, deteniendo servicios...")
    stop_all_evt.set()


def main() -> None:
    settings = Settings.from_env()
    mode = "DRY_RUN" if settings.dry_run else "REAL"
    logger.info(f"🚀 Iniciando orquestador de sesiones ({mode}, chain_id={settings.chain_id})")

    app = App(settings)
    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    app.start()
    try:
        while not stop_all_evt.is_set():
            stop_all_evt.wait(0.5)
    finally:
        app.stop()
        logger.info("✅ Apagado completado.")


if __name__ == "__main__":
    main()
