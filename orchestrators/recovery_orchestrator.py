# orchestrators/recovery_orchestrator.py
from __future__ import annotations
import time
from decimal import Decimal
from typing import Dict, Optional

from enums.session_state import SessionState
from models.session import Session
from orchestrators.session_orchestrator import SessionOrchestrator
from services.fund_split_service import FundSplitLedger
from services.interfaces import LedgerClient
from services.persistence_service import PersistenceService
from services.wallet_service import WalletLifecycleManager
from utils.config import Settings
from utils.exceptions import ExternalCallTimeout, LedgerError
from utils.logger import logger_manager, log_function
from utils.scheduler import ScheduledTask
from utils.timeout import call_with_timeout
from utils.web3_utils import quantize

logger = logger_manager.setup_logger(__name__)

PURGE_EVERY_SECS = 3600


class RecoveryOrchestrator:
    """
    Reanuda las sesiones no terminales tras un arranque y, en periódico,
    relanza las que perdieron su tarea.

    Resultado por sesión: ``resumed``, ``skipped`` (ya tiene tarea viva),
    ``depleted``, ``failed`` o ``deferred`` (ledger no disponible; se
    reintenta en el siguiente barrido).
    """

    def __init__(
        self,
        settings: Settings,
        orchestrator: SessionOrchestrator,
        persistence: PersistenceService,
        wallets: WalletLifecycleManager,
        funds: FundSplitLedger,
        ledger: LedgerClient,
    ) -> None:
        self.settings = settings
        self.orchestrator = orchestrator
        self.persistence = persistence
        self.wallets = wallets
        self.funds = funds
        self.ledger = ledger
        self._sweep: Optional[ScheduledTask] = None
        self._last_purge = 0.0

    @log_function
    def recover_all(self) -> Dict[str, int]:
        """Carga wallets y repartos en memoria y reanuda cada sesión no terminal."""
        self.wallets.restore(self.persistence.list_wallets())
        self.funds.restore(self.persistence.list_splits(), self.persistence.list_fee_transfers())

        summary = {"resumed": 0, "skipped": 0, "depleted": 0, "failed": 0, "deferred": 0}
        for persisted in self.persistence.load_all_non_terminal_sessions():
            outcome = self.recover_session(persisted)
            summary[outcome] += 1
        if any(summary[k] for k in ("resumed", "depleted", "failed", "deferred")):
            logger.info(f"♻️ Recuperación: {summary}")
        return summary

    def recover_session(self, persisted: Session) -> str:
        sid = persisted.session_id
        if self.orchestrator.is_loop_alive(sid):
            return "skipped"
        session = self.orchestrator.live_session(sid) or persisted
        if session.is_terminal:
            return "skipped"

        record = self.wallets.get_by_address(session.wallet_address)
        if record is None:
            record = self.persistence.wallets.get_by_address(session.wallet_address)
            if record is not None:
                self.wallets.register(record)
        if record is None:
            self.orchestrator.fail_session(
                session, f"RecoveryInconsistent: sin WalletRecord para {session.wallet_address}"
            )
            return "failed"

        if session.state in (SessionState.CREATED, SessionState.MONITORING):
            logger.info(f"🔄 [{sid}] reanudando monitorización")
            self.orchestrator.resume_monitoring(session)
            return "resumed"

        if session.state is SessionState.FUNDED:
            split = self.funds.get_split(sid) or self.persistence.get_split(sid)
            if split is None:
                logger.warning(f"[{sid}] FUNDED sin reparto registrado; vuelve a monitorización")
                self.orchestrator.resume_monitoring(session)
                return "resumed"
            if session.operating_balance <= 0:
                session.operating_balance = split.operating_amount
            logger.info(f"🔄 [{sid}] FUNDED con reparto; pasa a TRADING")
            self.orchestrator.resume_trading(session)
            return "resumed"

        # TRADING: primero los intentos registrados que la sesión no llegó a contar
        self._apply_unrecorded_trades(session)

        # y después se verifica el saldo real antes de reanudar
        try:
            onchain = call_with_timeout(
                "recovery_balance", self.ledger.get_balance,
                self.settings.external_call_timeout_secs, session.wallet_address,
            )
        except (LedgerError, ExternalCallTimeout) as e:
            logger.warning(f"[{sid}] saldo no verificable ({e}); se reintenta en el siguiente barrido")
            return "deferred"

        if onchain < self.settings.trade_floor:
            logger.info(f"🏁 [{sid}] saldo on-chain {onchain} < suelo; DEPLETED sin reanudar")
            self.orchestrator.mark_depleted(session)
            return "depleted"

        if onchain < session.operating_balance:
            logger.info(f"[{sid}] saldo operativo ajustado {session.operating_balance} → {onchain}")
            session.operating_balance = onchain
        if session.operating_balance < self.settings.trade_floor:
            self.orchestrator.mark_depleted(session)
            return "depleted"

        logger.info(f"🔄 [{sid}] reanudando trading (saldo operativo {session.operating_balance})")
        self.orchestrator.resume_trading(session)
        return "resumed"

    def _apply_unrecorded_trades(self, session: Session) -> int:
        """
        El trade y la sesión se guardan en transacciones distintas; tras una caída
        entre ambas, los intentos con número >= ``next_sequence`` no están en los
        contadores. Se aplican aquí igual que en el tick; el guardado lo hace
        ``resume_trading`` o ``mark_depleted``.
        """
        sid = session.session_id
        applied = 0
        for trade in self.persistence.trades_since(sid, session.next_sequence):
            if trade.sequence < session.next_sequence:
                continue
            if trade.ok:
                session.operating_balance = max(Decimal("0"), quantize(session.operating_balance - trade.amount))
                session.trade_count += 1
                session.volume = quantize(session.volume + trade.amount)
                session.consecutive_failures = 0
                session.last_error = None
            else:
                session.failed_trade_count += 1
                session.consecutive_failures += 1
                session.last_error = trade.reason
                if trade.stranded > 0:
                    session.operating_balance = max(Decimal("0"), quantize(session.operating_balance - trade.stranded))
            applied += 1
        if applied:
            logger.info(
                f"🧾 [{sid}] {applied} intentos del registro aplicados a la sesión "
                f"(trades={session.trade_count}, fallidos={session.failed_trade_count}, "
                f"saldo operativo={session.operating_balance})"
            )
        return applied

    # ---------- barrido periódico ----------
    def sweep_once(self) -> Dict[str, int]:
        summary = {"resumed": 0, "skipped": 0, "depleted": 0, "failed": 0, "deferred": 0}
        for persisted in self.persistence.load_all_non_terminal_sessions():
            sid = persisted.session_id
            if self.orchestrator.is_loop_alive(sid):
                summary["skipped"] += 1
                continue
            logger.warning(f"⚠️ [{sid}] sin tarea viva en estado {persisted.state.value}; relanzando")
            summary[self.recover_session(persisted)] += 1
        if time.time() - self._last_purge >= PURGE_EVERY_SECS:
            self._last_purge = time.time()
            self.persistence.purge_terminal_sessions(self.settings.retention_days)
        return summary

    def _tick(self, _stop_evt) -> float:
        try:
            self.sweep_once()
        except Exception as e:
            # el barrido no debe morir nunca
            logger.exception(f"Error en barrido de recuperación: {e}")
        return self.settings.sweep_interval_secs

    def start_sweep(self) -> None:
        if self._sweep and self._sweep.is_alive():
            return
        self._sweep = ScheduledTask(
            "RecoverySweep", self._tick, initial_delay=self.settings.sweep_interval_secs
        ).start()
        logger.info(f"Barrido de recuperación cada {self.settings.sweep_interval_secs:.0f}s")

    def stop_sweep(self) -> None:
        if self._sweep:
            self._sweep.cancel()

    def is_sweep_alive(self) -> bool:
        return bool(self._sweep and self._sweep.is_alive())
