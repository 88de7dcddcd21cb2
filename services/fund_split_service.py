# services/fund_split_service.py
from __future__ import annotations
import hashlib
import threading
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Set

from models.funding_split import FeeTransfer, FundingSplit
from utils.config import Settings
from utils.exceptions import BelowMinimum, DuplicateSplit
from utils.logger import logger_manager, log_function
from utils.web3_utils import quantize

logger = logger_manager.setup_logger(__name__)


def make_idempotency_key(session_id: str, amount: Decimal, observed_address: str) -> str:
    """Clave de un evento de depósito: misma sesión, mismo importe y misma wallet observada."""
    raw = f"{session_id}:{quantize(amount)}:{(observed_address or '').lower()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class FundSplitLedger:
    """
    Reparto único de cada depósito entre el pool operativo y el de comisiones.

    - Como mucho un FundingSplit por sesión; un segundo intento lanza DuplicateSplit.
    - Una clave de idempotencia ya vista también lanza DuplicateSplit.
    - operating + fee == total exactamente con 8 decimales: la comisión se
      redondea y el operativo es el resto.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._lock = threading.Lock()
        self._splits: Dict[str, FundingSplit] = {}
        self._keys: Set[str] = set()
        self._transfers: List[FeeTransfer] = []
        self._privileged = {a.lower() for a in settings.privileged_addresses}

    # ---------- mínimos ----------
    def minimum_for(self, depositor: Optional[str] = None) -> Decimal:
        if depositor and depositor.lower() in self._privileged:
            return self.settings.privileged_min_deposit
        return self.settings.min_deposit

    def meets_minimum(self, amount: Decimal, depositor: Optional[str] = None) -> bool:
        return quantize(amount) >= self.minimum_for(depositor)

    # ---------- reparto ----------
    @log_function
    def record_split(
        self,
        session_id: str,
        observed_amount: Decimal,
        idempotency_key: str,
        depositor: Optional[str] = None,
    ) -> FundingSplit:
        total = quantize(observed_amount)
        with self._lock:
            if session_id in self._splits:
                raise DuplicateSplit(f"[{session_id}] la sesión ya tiene reparto registrado")
            if idempotency_key in self._keys:
                raise DuplicateSplit(f"[{session_id}] evento de depósito ya procesado")
            if total < self.minimum_for(depositor):
                # el mensaje cita siempre el mínimo estándar
                raise BelowMinimum(
                    f"Depósito {total} por debajo del mínimo requerido {self.settings.min_deposit}"
                )

            fee = quantize(total * self.settings.fee_ratio, rounding=ROUND_HALF_UP)
            operating = total - fee
            split = FundingSplit(
                session_id=session_id,
                total_amount=total,
                operating_amount=operating,
                fee_amount=fee,
                fee_address=self.settings.fee_address,
                idempotency_key=idempotency_key,
            )
            self._splits[session_id] = split
            self._keys.add(idempotency_key)

        logger.info(f"💰 [{session_id}] reparto: total={total} operativo={operating} comisión={fee}")
        return split

    def get_split(self, session_id: str) -> Optional[FundingSplit]:
        with self._lock:
            return self._splits.get(session_id)

    # ---------- auditoría de comisiones ----------
    def record_fee_transfer(self, transfer: FeeTransfer) -> None:
        with self._lock:
            self._transfers.append(transfer)
        if transfer.ok:
            logger.info(f"🏦 [{transfer.session_id}] comisión {transfer.amount} → {transfer.to_address} tx={transfer.tx_ref}")
        else:
            logger.error(
                f"[{transfer.session_id}] fee_transfer_failed amount={transfer.amount} "
                f"to={transfer.to_address} reason={transfer.reason}"
            )

    def fee_transfers(self, session_id: Optional[str] = None) -> List[FeeTransfer]:
        with self._lock:
            return [t for t in self._transfers if session_id is None or t.session_id == session_id]

    def total_fees_collected(self) -> Decimal:
        with self._lock:
            return sum((t.amount for t in self._transfers if t.ok), Decimal("0"))

    # ---------- recuperación ----------
    def restore(self, splits: Iterable[FundingSplit], transfers: Iterable[FeeTransfer] = ()) -> None:
        with self._lock:
            for s in splits:
                self._splits[s.session_id] = s
                self._keys.add(s.idempotency_key)
            known = {(t.session_id, t.tx_ref, t.created_at) for t in self._transfers}
            for t in transfers:
                if (t.session_id, t.tx_ref, t.created_at) not in known:
                    self._transfers.append(t)
