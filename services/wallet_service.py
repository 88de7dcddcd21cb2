# services/wallet_service.py
"""
Emisión y reconstrucción de wallets de sesión y de trade.

La clave de cada wallet es ``sha256(semilla)`` y la semilla combina un timestamp
de alta resolución, un nonce aleatorio y la identidad de la sesión. La
derivación es una función pura ``semilla -> clave``; solo la fuente de semillas
tiene estado, y los tests la sustituyen por una fija.

El gestor guarda cada WalletRecord emitido en memoria; persistirlo es cosa del
llamante.
"""
from __future__ import annotations
import hashlib
import secrets
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount

from enums.session_state import TradeSide
from models.wallet_record import WalletKind, WalletRecord
from utils.exceptions import KeyMaterialCorrupt
from utils.logger import logger_manager, log_function
from utils.web3_utils import short_address

logger = logger_manager.setup_logger(__name__)

_MAX_REHASH = 8


class SeedSource(ABC):
    """Origen del timestamp y el nonce que entran en cada semilla."""

    @abstractmethod
    def timestamp_ns(self) -> int: ...

    @abstractmethod
    def nonce(self) -> str: ...


class SystemSeedSource(SeedSource):
    def timestamp_ns(self) -> int:
        return time.time_ns()

    def nonce(self) -> str:
        return secrets.token_hex(16)


def derive_account(seed: str) -> LocalAccount:
    """Clave = sha256(semilla). Si el hash no es una clave secp256k1 válida se re-hashea."""
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    for _ in range(_MAX_REHASH):
        try:
            return Account.from_key(digest)
        except ValueError:
            digest = hashlib.sha256(digest).digest()
    raise KeyMaterialCorrupt(f"La semilla no produce una clave válida tras {_MAX_REHASH} intentos")


def encode_key(account: LocalAccount) -> str:
    return "0x" + bytes(account.key).hex()


class WalletLifecycleManager:
    def __init__(self, seed_source: Optional[SeedSource] = None) -> None:
        self.seed_source = seed_source or SystemSeedSource()
        self._lock = threading.Lock()
        self._by_key: Dict[str, WalletRecord] = {}
        self._by_address: Dict[str, WalletRecord] = {}

    # ---------- emisión ----------
    @log_function
    def issue_session_wallet(self, session_id: str) -> WalletRecord:
        seed = f"SESSION_WALLET|{self.seed_source.timestamp_ns()}|{self.seed_source.nonce()}|{session_id}"
        account = derive_account(seed)
        record = WalletRecord(
            address=account.address,
            private_key=encode_key(account),
            session_id=session_id,
            kind=WalletKind.SESSION,
        )
        self.register(record)
        logger.info(f"✅ [{session_id}] wallet de sesión emitida: {account.address}")
        return record

    @log_function
    def issue_trade_wallet(self, session_id: str, sequence: int, side: TradeSide) -> WalletRecord:
        seed = (
            f"TRADE_WALLET|{session_id}|{int(sequence)}|{side.value}|"
            f"{self.seed_source.timestamp_ns()}|{self.seed_source.nonce()}"
        )
        account = derive_account(seed)
        record = WalletRecord(
            address=account.address,
            private_key=encode_key(account),
            session_id=session_id,
            kind=WalletKind.TRADE,
            sequence=int(sequence),
            side=side,
        )
        self.register(record)
        logger.debug(f"🔄 [{session_id}] wallet de trade {side.value} #{sequence}: {short_address(account.address)}")
        return record

    @log_function
    def emergency_regenerate(self, record: WalletRecord) -> WalletRecord:
        """
        Emite una wallet NUEVA para una sesión cuyo registro perdió la clave.

        No recupera el acceso a ``record.address``: la dirección resultante es
        otra y los fondos de la original quedan fuera de alcance.
        """
        seed = (
            f"EMERGENCY_WALLET|{self.seed_source.timestamp_ns()}|{self.seed_source.nonce()}|"
            f"{record.session_id}|{record.address}"
        )
        account = derive_account(seed)
        fresh = WalletRecord(
            address=account.address,
            private_key=encode_key(account),
            session_id=record.session_id,
            kind=WalletKind.EMERGENCY,
            replaces=record.address,
        )
        self.register(fresh)
        logger.warning(
            f"⚠️ [{record.session_id}] clave ausente para {record.address}; "
            f"regenerada wallet de emergencia {account.address} (la original NO se recupera)"
        )
        return fresh

    # ---------- firma ----------
    def reconstruct_signing_key(self, record: WalletRecord) -> LocalAccount:
        if not record.has_key_material:
            raise KeyMaterialCorrupt(f"[{record.session_id}] sin material de clave para {record.address}")
        try:
            account = Account.from_key(record.private_key.get_secret_value().strip())
        except Exception as e:
            raise KeyMaterialCorrupt(f"[{record.session_id}] clave ilegible para {record.address}: {e}") from e
        if account.address.lower() != record.address.lower():
            raise KeyMaterialCorrupt(
                f"[{record.session_id}] la clave guardada no corresponde a {record.address}"
            )
        return account

    # ---------- registro en memoria ----------
    def register(self, record: WalletRecord) -> None:
        with self._lock:
            self._by_key[record.record_key] = record
            self._by_address[record.address.lower()] = record

    def restore(self, records: List[WalletRecord]) -> int:
        for r in records:
            self.register(r)
        if records:
            logger.info(f"🔄 {len(records)} wallets restauradas en memoria")
        return len(records)

    def get_session_wallet(self, session_id: str) -> Optional[WalletRecord]:
        with self._lock:
            return self._by_key.get(session_id)

    def get_by_address(self, address: str) -> Optional[WalletRecord]:
        with self._lock:
            return self._by_address.get((address or "").lower())

    def replacement_for(self, address: str) -> Optional[WalletRecord]:
        """Wallet de emergencia ya emitida para ``address``, si la hay."""
        addr = (address or "").lower()
        with self._lock:
            for r in self._by_key.values():
                if r.kind is WalletKind.EMERGENCY and (r.replaces or "").lower() == addr:
                    return r
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_key)
