# orchestrators/session_orchestrator.py
from __future__ import annotations
import random
import secrets
import threading
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from enums.session_state import SessionState, TradeSide, TxStatus
from models.funding_split import FeeTransfer, FundingSplit
from models.session import Session
from models.trade_record import TradeRecord, TradeResult
from schemas.session_schema import SessionCreated, SessionSnapshot
from services.fund_split_service import FundSplitLedger, make_idempotency_key
from services.interfaces import LedgerClient, MarketValidator, SwapExecutionProvider
from services.persistence_service import PersistenceService
from services.wallet_service import WalletLifecycleManager
from utils.config import NATIVE_ASSET, Settings
from utils.exceptions import (
    BelowMinimum,
    DuplicateSplit,
    ExecutionError,
    ExternalCallTimeout,
    InsufficientBalance,
    KeyMaterialCorrupt,
    LedgerError,
    NoRoute,
    RecoveryInconsistent,
    SessionNotFound,
)
from utils.logger import logger_manager, log_function
from utils.scheduler import ScheduledTask
from utils.timeout import call_with_timeout
from utils.web3_utils import quantize, quantize_down, short_address

logger = logger_manager.setup_logger(__name__)

# Transiciones válidas. FUNDED -> MONITORING solo la usa la recuperación
# cuando no encuentra el reparto.
_ALLOWED: Dict[SessionState, frozenset] = {
    SessionState.CREATED: frozenset({SessionState.MONITORING, SessionState.STOPPED, SessionState.FAILED}),
    SessionState.MONITORING: frozenset({SessionState.FUNDED, SessionState.STOPPED, SessionState.FAILED}),
    SessionState.FUNDED: frozenset({SessionState.TRADING, SessionState.MONITORING, SessionState.STOPPED, SessionState.FAILED}),
    SessionState.TRADING: frozenset({SessionState.DEPLETED, SessionState.STOPPED, SessionState.FAILED}),
}

# Errores de ejecución que se convierten en trade fallido
_TRADE_ERRORS = (NoRoute, ExecutionError, LedgerError, ExternalCallTimeout, InsufficientBalance)


@dataclass
class SessionHandle:
    """Tareas vivas de una sesión. El lock serializa ticks, parada y recuperación."""

    session_id: str
    lock: threading.RLock = field(default_factory=threading.RLock)
    monitor: Optional[ScheduledTask] = None
    trader: Optional[ScheduledTask] = None

    def is_alive(self) -> bool:
        return any(t is not None and t.is_alive() for t in (self.monitor, self.trader))

    def cancel(self) -> None:
        for t in (self.monitor, self.trader):
            if t is not None:
                t.cancel()


class SessionOrchestrator:
    """
    Máquina de estados y bucle de trading de cada sesión.

    CREATED -> MONITORING -> FUNDED -> TRADING -> {DEPLETED | STOPPED | FAILED}

    - Cada sesión tiene su propia tarea (monitor y luego trader); no hay lock global.
    - Todo cambio de estado y todo intento de trade se persiste antes de
      programar la siguiente iteración.
    - Los fallos de ledger/swap/timeout dentro del bucle son TradeResult
      fallidos; nunca sacan la sesión de TRADING.
    """

    def __init__(
        self,
        settings: Settings,
        persistence: PersistenceService,
        wallets: WalletLifecycleManager,
        funds: FundSplitLedger,
        ledger: LedgerClient,
        swap: SwapExecutionProvider,
        market: MarketValidator,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings
        self.persistence = persistence
        self.wallets = wallets
        self.funds = funds
        self.ledger = ledger
        self.swap = swap
        self.market = market
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}
        self._handles: Dict[str, SessionHandle] = {}

    # =====================================================================
    # Superficie de control
    # =====================================================================
    @log_function
    def create_session(self, target_asset: str, owner_address: Optional[str] = None) -> SessionCreated:
        """
        Registra una sesión nueva y arranca la vigilancia de su wallet.

        ``owner_address`` no se verifica: el ledger no dice quién envió el
        depósito, así que si está en ``privileged_addresses`` la sesión se
        financia con ``privileged_min_deposit`` aunque el dinero venga de otro.
        Solo un llamador de confianza debe rellenarlo; sin él rige ``min_deposit``.

        Raises:
            NotTradeable / NoRoute: el activo no tiene mercado viable (no se crea nada).
            ExternalCallTimeout: el validador de mercado no respondió.
        """
        target_asset = (target_asset or "").strip()
        if not target_asset:
            raise ValueError("target_asset vacío")

        market_id = self._call("find_best_market", self.market.find_best_market, target_asset)

        session_id = f"session_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        record = self.wallets.issue_session_wallet(session_id)
        self.persistence.save(record)

        session = Session(
            session_id=session_id,
            target_asset=target_asset,
            wallet_address=record.address,
            market_id=market_id,
            owner_address=owner_address,
        )
        self.persistence.save(session)
        with self._lock:
            self._sessions[session_id] = session
        handle = self._handle(session_id)
        with handle.lock:
            self._transition(session, SessionState.MONITORING)
            self._start_monitor(session)

        logger.info(f"🆕 [{session_id}] sesión creada para {target_asset} (mercado {market_id}); wallet {record.address}")
        return SessionCreated(session_id=session_id, wallet_address=record.address)

    def get_session_status(self, session_id: str) -> SessionSnapshot:
        session = self._get_session(session_id)
        return SessionSnapshot.from_session(session, loop_alive=self.is_loop_alive(session_id))

    @log_function
    def stop_session(self, session_id: str) -> SessionSnapshot:
        """Para la sesión. La iteración en curso termina; no se programa otra."""
        session = self._get_session(session_id)
        handle = self._handle(session_id)
        with handle.lock:
            if not session.is_terminal:
                self._transition(session, SessionState.STOPPED)
                logger.info(f"🛑 [{session_id}] sesión detenida a petición")
        handle.cancel()
        return SessionSnapshot.from_session(session, loop_alive=False)

    def list_active_sessions(self) -> List[SessionSnapshot]:
        snapshots = []
        for persisted in self.persistence.load_all_non_terminal_sessions():
            session = self.live_session(persisted.session_id) or persisted
            if session.is_terminal:
                continue
            snapshots.append(SessionSnapshot.from_session(session, loop_alive=self.is_loop_alive(session.session_id)))
        return snapshots

    @log_function
    def stop_all_sessions(self) -> List[str]:
        stopped = []
        for snap in self.list_active_sessions():
            try:
                self.stop_session(snap.session_id)
                stopped.append(snap.session_id)
            except SessionNotFound:
                continue
        logger.warning(f"🛑 Parada general: {len(stopped)} sesiones detenidas")
        return stopped

    def session_stats(self) -> Dict[str, int]:
        stats = self.persistence.session_stats()
        with self._lock:
            handles = list(self._handles.values())
        stats["running_loops"] = sum(1 for h in handles if h.is_alive())
        return stats

    def total_fees_collected(self) -> Decimal:
        return self.funds.total_fees_collected()

    def is_loop_alive(self, session_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(session_id)
        return bool(handle and handle.is_alive())

    def live_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def shutdown(self, join_timeout: float = 2.0) -> None:
        """Cancela todas las tareas sin tocar el estado: al reiniciar se reanudan."""
        with self._lock:
            handles = list(self._handles.values())
        for h in handles:
            h.cancel()
        for h in handles:
            for t in (h.monitor, h.trader):
                if t is not None:
                    t.join(join_timeout)
        logger.info(f"Orquestador parado ({len(handles)} sesiones en memoria)")

    # =====================================================================
    # Reanudación (la usa la recuperación)
    # =====================================================================
    def resume_monitoring(self, session: Session) -> None:
        handle = self._attach(session)
        with handle.lock:
            session = self._sessions[session.session_id]
            if session.state is not SessionState.MONITORING:
                self._transition(session, SessionState.MONITORING)
            self._start_monitor(session)

    def resume_trading(self, session: Session) -> None:
        handle = self._attach(session)
        with handle.lock:
            session = self._sessions[session.session_id]
            if session.state is not SessionState.TRADING:
                self._transition(session, SessionState.TRADING)
            else:
                self.persistence.save(session)
            self._start_trading(session)

    def mark_depleted(self, session: Session) -> None:
        handle = self._attach(session)
        with handle.lock:
            session = self._sessions[session.session_id]
            if session.state is SessionState.FUNDED:
                self._transition(session, SessionState.TRADING)
            self._transition(session, SessionState.DEPLETED)
        handle.cancel()

    def fail_session(self, session: Session, reason: str) -> None:
        handle = self._attach(session)
        with handle.lock:
            session = self._sessions[session.session_id]
            session.last_error = reason
            if not session.is_terminal:
                self._transition(session, SessionState.FAILED)
        handle.cancel()
        logger.error(f"❌ [{session.session_id}] sesión FAILED: {reason}")

    # =====================================================================
    # Monitorización
    # =====================================================================
    def monitor_tick(self, session_id: str) -> Optional[float]:
        """Una consulta de saldo. Devuelve el siguiente retardo o None si el monitor termina."""
        handle = self._handle(session_id)
        with handle.lock:
            session = self.live_session(session_id)
            if session is None or session.state is not SessionState.MONITORING:
                return None
            try:
                existing = self.funds.get_split(session_id)
                if existing is not None:
                    # reparto ya hecho (reinicio a mitad de la financiación)
                    self._enter_trading(session, existing)
                    return None

                balance = self._call("get_balance", self.ledger.get_balance, session.wallet_address)
                depositor = session.owner_address or session.wallet_address
                if not self.funds.meets_minimum(balance, depositor):
                    logger.debug(f"[{session_id}] esperando depósito (saldo={balance})")
                    return self.settings.poll_interval_secs

                logger.info(f"💰 [{session_id}] depósito detectado: {balance}")
                self._handle_funding(session, balance, depositor)
                return None
            except (LedgerError, ExternalCallTimeout, BelowMinimum) as e:
                logger.warning(f"[{session_id}] monitorización: {e}")
                return self.settings.poll_interval_secs
            except (KeyMaterialCorrupt, RecoveryInconsistent) as e:
                self.fail_session(session, f"{type(e).__name__}: {e}")
                return None

    def _handle_funding(self, session: Session, balance: Decimal, depositor: str) -> None:
        sid = session.session_id
        key = make_idempotency_key(sid, balance, session.wallet_address)
        try:
            split = self.funds.record_split(sid, balance, key, depositor=depositor)
        except DuplicateSplit as e:
            split = self.funds.get_split(sid) or self.persistence.get_split(sid)
            if split is None:
                raise
            logger.warning(f"[{sid}] {e}; se continúa con el reparto existente sin volver a cobrar")
            if not self.persistence.has_fee_transfer(sid):
                logger.error(f"[{sid}] reparto sin transferencia de comisión registrada: revisar a mano")
        else:
            self.persistence.save(split)
            self._collect_fee(session, split)
        self._enter_trading(session, split)

    def _collect_fee(self, session: Session, split: FundingSplit) -> None:
        """Una sola transferencia al pool de comisiones. Si falla queda auditada y no se reintenta."""
        signer = self._session_signer(session)
        tx_ref, ok, reason = None, True, None
        try:
            tx_ref = self._call("fee_transfer", self.ledger.transfer, signer, split.fee_address, split.fee_amount)
        except (LedgerError, ExternalCallTimeout) as e:
            ok, reason = False, f"{type(e).__name__}: {e}"
        transfer = FeeTransfer(
            session_id=session.session_id,
            from_address=signer.address,
            to_address=split.fee_address,
            amount=split.fee_amount,
            ok=ok,
            tx_ref=tx_ref,
            reason=reason,
        )
        self.funds.record_fee_transfer(transfer)
        self.persistence.add_fee_transfer(transfer)

    def _enter_trading(self, session: Session, split: FundingSplit) -> None:
        handle = self._handle(session.session_id)
        session.operating_balance = split.operating_amount
        self._transition(session, SessionState.FUNDED)
        self._transition(session, SessionState.TRADING)
        if handle.monitor is not None:
            handle.monitor.cancel()
        self._start_trading(session)

    # =====================================================================
    # Trading
    # =====================================================================
    def compute_trade_amount(self, balance: Decimal) -> Decimal:
        """Fracción aleatoria del saldo, acotada por techo y suelo y nunca mayor que el saldo."""
        s = self.settings
        fraction = Decimal(str(self._rng.uniform(float(s.trade_fraction_min), float(s.trade_fraction_max))))
        amount = quantize_down(Decimal(balance) * fraction)
        amount = min(amount, s.trade_ceiling)
        amount = max(amount, s.trade_floor)
        return min(amount, quantize(balance))

    def next_side(self, session_id: str) -> Tuple[TradeSide, Optional[TradeRecord]]:
        last = self.persistence.last_trade(session_id)
        if last is None:
            return TradeSide.BUY, None
        return (last.side.flipped() if last.ok else last.side), last

    def trading_tick(self, session_id: str, stop_evt: Optional[threading.Event] = None) -> Optional[float]:
        """
        Un intento de trade. Devuelve el retardo hasta el siguiente o None si la
        sesión ya no está en TRADING.
        """
        stop_evt = stop_evt or threading.Event()
        handle = self._handle(session_id)
        with handle.lock:
            session = self.live_session(session_id)
            if session is None or session.state is not SessionState.TRADING:
                return None
            if session.operating_balance < self.settings.trade_floor:
                logger.info(f"🏁 [{session_id}] saldo operativo {session.operating_balance} < suelo; sesión agotada")
                self._transition(session, SessionState.DEPLETED)
                return None
            side, last = self.next_side(session_id)
            sequence = max(session.next_sequence, (last.sequence + 1) if last else 1)
            amount = self.compute_trade_amount(session.operating_balance)

        try:
            result, trade_wallet = self._execute_trade(session, side, sequence, amount, stop_evt)
        except (KeyMaterialCorrupt, RecoveryInconsistent) as e:
            self.fail_session(session, f"{type(e).__name__}: {e}")
            return None

        with handle.lock:
            self.persistence.append_trade(TradeRecord(
                session_id=session_id,
                sequence=sequence,
                side=side,
                amount=amount,
                ok=result.ok,
                tx_ref=result.tx_ref,
                reason=result.reason,
                trade_wallet=trade_wallet,
                stranded=result.stranded,
            ))
            if result.ok:
                session.operating_balance = max(Decimal("0"), quantize(session.operating_balance - amount))
                session.trade_count += 1
                session.volume = quantize(session.volume + amount)
                session.consecutive_failures = 0
                session.last_error = None
                logger.info(
                    f"✅ [{session_id}] trade #{sequence} {side.value} {amount} tx={result.tx_ref} "
                    f"restante={session.operating_balance}"
                )
            else:
                session.failed_trade_count += 1
                session.consecutive_failures += 1
                session.last_error = result.reason
                if result.stranded > 0:
                    session.operating_balance = max(Decimal("0"), quantize(session.operating_balance - result.stranded))
                logger.warning(
                    f"[{session_id}] trade_failed side={side.value} sequence={sequence} amount={amount} "
                    f"consecutive={session.consecutive_failures} reason={result.reason}"
                )
            session.touch()

            if session.state is not SessionState.TRADING:
                # parada llegada durante el trade: se guarda el resultado y no hay más iteraciones
                self.persistence.save(session)
                return None
            if session.operating_balance < self.settings.trade_floor:
                logger.info(f"🏁 [{session_id}] saldo operativo agotado tras {session.trade_count} trades")
                self._transition(session, SessionState.DEPLETED)
                return None
            self.persistence.save(session)

        if result.ok:
            return self.settings.trade_interval_secs
        return self.settings.trade_interval_secs + self.settings.retry_delay_secs

    def _execute_trade(
        self,
        session: Session,
        side: TradeSide,
        sequence: int,
        amount: Decimal,
        stop_evt: threading.Event,
    ) -> Tuple[TradeResult, Optional[str]]:
        trade_wallet = self.wallets.issue_trade_wallet(session.session_id, sequence, side)
        self.persistence.save(trade_wallet)
        session_signer = self._session_signer(session)
        trade_signer = self.wallets.reconstruct_signing_key(trade_wallet)
        funding: Optional[Decimal] = None  # lo enviado a la trade wallet (solo BUY)
        try:
            if side is TradeSide.BUY:
                quote = self._call("quote", self.swap.quote, NATIVE_ASSET, session.target_asset, amount)
                quote = quote.model_copy(update={"route": {**quote.route, "recipient": session.wallet_address}})
                funding = Decimal("0")
                self._call("fund_trade_wallet", self.ledger.transfer,
                           session_signer, trade_wallet.address, amount + self.settings.gas_reserve)
                funding = amount + self.settings.gas_reserve
                tx_ref = self._call("submit", self.swap.submit, quote, trade_signer)
            else:
                quote = self._call("quote", self.swap.quote, session.target_asset, NATIVE_ASSET, amount)
                quote = quote.model_copy(update={"route": {**quote.route, "recipient": trade_wallet.address}})
                tx_ref = self._call("submit", self.swap.submit, quote, session_signer)

            result = TradeResult.success(tx_ref)
            if self.settings.confirm_trades:
                status = self._await_confirmation(tx_ref, stop_evt)
                if status is not TxStatus.CONFIRMED:
                    result = TradeResult.failure(f"tx {status.value}", tx_ref=tx_ref)
        except _TRADE_ERRORS as e:
            result = TradeResult.failure(f"{type(e).__name__}: {e}")

        if not result.ok and funding is not None:
            result = self._reclaim_trade_funds(session, trade_wallet.address, trade_signer, funding, result)
        return result, trade_wallet.address

    def _reclaim_trade_funds(
        self,
        session: Session,
        trade_address: str,
        trade_signer,
        funding: Decimal,
        result: TradeResult,
    ) -> TradeResult:
        """
        Devuelve a la wallet de sesión lo que quedó en la trade wallet tras un BUY
        fallido, dejando ``gas_reserve`` para pagar el propio envío.

        ``funding`` es lo enviado; 0 si el envío lanzó error (entonces cuenta lo
        que llegara igualmente). Lo no recuperado va en ``stranded`` y en el motivo.
        """
        sid = session.session_id
        held: Optional[Decimal] = None
        refund = Decimal("0")
        try:
            held = Decimal(self._call("trade_wallet_balance", self.ledger.get_balance, trade_address))
            if quantize_down(held - self.settings.gas_reserve) > 0:
                refund = quantize_down(held - self.settings.gas_reserve)
                self._call("reclaim_trade_funds", self.ledger.transfer, trade_signer, session.wallet_address, refund)
                logger.info(f"↩️ [{sid}] {refund} devueltos desde {short_address(trade_address)}")
        except _TRADE_ERRORS as e:
            refund = Decimal("0")
            logger.warning(f"[{sid}] no se pudo recuperar {short_address(trade_address)}: {e}")

        sent = funding if funding > 0 else (held or Decimal("0"))
        stranded = max(Decimal("0"), quantize(sent - refund))
        if stranded == 0:
            return result
        return replace(result, reason=f"{result.reason}; sin recuperar={stranded}", stranded=stranded)

    def _await_confirmation(self, tx_ref: str, stop_evt: threading.Event) -> TxStatus:
        deadline = time.monotonic() + self.settings.confirm_timeout_secs
        while True:
            status = self._call("confirm_transaction", self.ledger.confirm_transaction, tx_ref)
            if status is not TxStatus.PENDING:
                return status
            if time.monotonic() >= deadline:
                return TxStatus.PENDING
            if stop_evt.wait(self.settings.confirm_poll_secs):
                return TxStatus.PENDING

    # =====================================================================
    # Internos
    # =====================================================================
    def _call(self, label: str, func: Callable, *args):
        return call_with_timeout(label, func, self.settings.external_call_timeout_secs, *args)

    def _get_session(self, session_id: str) -> Session:
        session = self.live_session(session_id)
        if session is None:
            session = self.persistence.get_session(session_id)
            if session is None:
                raise SessionNotFound(f"Sesión {session_id} no encontrada")
            with self._lock:
                session = self._sessions.setdefault(session_id, session)
        return session

    def _handle(self, session_id: str) -> SessionHandle:
        with self._lock:
            handle = self._handles.get(session_id)
            if handle is None:
                handle = self._handles[session_id] = SessionHandle(session_id)
            return handle

    def _attach(self, session: Session) -> SessionHandle:
        """Registra (o sustituye) la sesión en memoria si no tiene tareas vivas."""
        handle = self._handle(session.session_id)
        with handle.lock:
            with self._lock:
                current = self._sessions.get(session.session_id)
                if current is None or not handle.is_alive():
                    self._sessions[session.session_id] = session
        return handle

    def _session_signer(self, session: Session):
        record = self.wallets.get_by_address(session.wallet_address)
        if record is None:
            record = self.persistence.wallets.get_by_address(session.wallet_address)
            if record is None:
                raise RecoveryInconsistent(f"[{session.session_id}] sin WalletRecord para {session.wallet_address}")
            self.wallets.register(record)
        if not record.has_key_material:
            replacement = self.wallets.replacement_for(record.address)
            if replacement is None:
                replacement = self.wallets.emergency_regenerate(record)
                self.persistence.save(replacement)
            record = replacement
        return self.wallets.reconstruct_signing_key(record)

    def _transition(self, session: Session, new_state: SessionState) -> None:
        old = session.state
        if new_state is old:
            return
        allowed = _ALLOWED.get(old, frozenset())
        if new_state not in allowed:
            raise ValueError(f"[{session.session_id}] transición no permitida {old.value} -> {new_state.value}")
        session.state = new_state
        session.touch()
        if new_state.is_terminal:
            session.completed_at = int(time.time())
        self.persistence.save(session)
        logger.info(f"[{session.session_id}] {old.value} → {new_state.value}")

    def _start_monitor(self, session: Session) -> None:
        sid = session.session_id
        handle = self._handle(sid)
        with handle.lock:
            if handle.is_alive():
                logger.debug(f"[{sid}] ya tiene tarea viva; no se duplica")
                return
            handle.monitor = ScheduledTask(
                f"Session-{sid}-monitor",
                lambda _evt: self.monitor_tick(sid),
                initial_delay=self.settings.poll_interval_secs,
            ).start()
            logger.info(f"👀 [{sid}] vigilando {short_address(session.wallet_address)}")

    def _start_trading(self, session: Session) -> None:
        sid = session.session_id
        handle = self._handle(sid)
        with handle.lock:
            if handle.trader is not None and handle.trader.is_alive():
                logger.debug(f"[{sid}] bucle de trading ya activo; no se duplica")
                return
            handle.trader = ScheduledTask(
                f"Session-{sid}-trade",
                lambda evt: self.trading_tick(sid, evt),
                initial_delay=self.settings.first_trade_delay_secs,
            ).start()
            logger.info(f"🚀 [{sid}] bucle de trading iniciado (saldo operativo {session.operating_balance})")
