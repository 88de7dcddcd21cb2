from __future__ import annotations
from time import sleep
from typing import Any, Callable, Dict, List, Optional

from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from utils.config import Settings
from utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)

TRANSFER_GAS_LIMIT = 21000
ZERO_TX_HASH = "0x" + "0" * 64

_FEE_KEYS = ("gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "accessList")


class Web3Client:
    """
    Conexión EVM compartida por el ledger y el proveedor de swaps.

    - Recorre ``settings.rpc_urls`` en orden; cada llamada reintenta con
      backoff lineal y salta al siguiente nodo tras un fallo.
    - El modo de gas (legacy / 1559) se fija al conectar salvo que venga forzado.
    - No hay cuenta global: cada envío firma con el signer que recibe.
    - Con ``dry_run`` se construye todo pero nada se emite.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.dry_run = settings.dry_run
        self._rpc_urls: List[str] = [u.strip().rstrip("/") for u in settings.rpc_urls if u.strip()]
        if not self._rpc_urls:
            raise ValueError("rpc_urls vacío")
        self._rpc_idx = 0
        self._w3 = self._open_first_available()
        self._gas_mode = settings.gas_mode if settings.gas_mode != "auto" else self._probe_gas_mode()
        logger.debug(f"Nodo {self.active_rpc} (chain_id={settings.chain_id}, gas={self._gas_mode})")

    # ---------- nodos ----------
    def _open(self, url: str) -> Web3:
        w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": self.settings.rpc_timeout_secs}))
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        if not w3.is_connected():
            raise ConnectionError(f"Nodo sin respuesta: {url}")
        return w3

    def _open_first_available(self) -> Web3:
        errors = []
        for idx, url in enumerate(self._rpc_urls):
            try:
                w3 = self._open(url)
            except Exception as e:
                errors.append(f"{url}: {e}")
                logger.warning(f"RPC descartada {url}: {e}")
                continue
            self._rpc_idx = idx
            return w3
        raise ConnectionError("Ningún RPC disponible: " + "; ".join(errors))

    def _next_rpc(self) -> None:
        if len(self._rpc_urls) == 1:
            return
        self._rpc_idx = (self._rpc_idx + 1) % len(self._rpc_urls)
        logger.info(f"Failover a {self.active_rpc}")
        self._w3 = self._open(self.active_rpc)

    @property
    def active_rpc(self) -> str:
        return self._rpc_urls[self._rpc_idx]

    @property
    def w3(self) -> Web3:
        return self._w3

    def _rpc_call(self, label: str, fn: Callable[[], Any], retries: Optional[int] = None) -> Any:
        """``fn()`` con reintentos; entre intentos se cambia de nodo. Propaga el último error."""
        attempts = max(1, retries if retries is not None else self.settings.rpc_retries)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except Exception as e:
                if attempt == attempts:
                    raise
                logger.warning(f"[RPC:{label}] {attempt}/{attempts}: {e}")
                try:
                    self._next_rpc()
                except ConnectionError as rotate_err:
                    logger.warning(f"[RPC:{label}] failover fallido: {rotate_err}")
                sleep(self.settings.rpc_retry_backoff_secs * attempt)

    # ---------- direcciones ----------
    def checksum(self, address: str) -> str:
        return Web3.to_checksum_address(address)

    def nonce(self, address: str) -> int:
        addr = self.checksum(address)
        return int(self._rpc_call("nonce", lambda: self._w3.eth.get_transaction_count(addr, "pending")))

    # ---------- gas ----------
    def _probe_gas_mode(self) -> str:
        try:
            block = self._rpc_call("latest_block", lambda: self._w3.eth.get_block("latest"))
        except Exception as e:
            logger.debug(f"Bloque no disponible ({e}); gas legacy")
            return "legacy"
        return "1559" if block.get("baseFeePerGas") is not None else "legacy"

    def _gas_fields(self) -> Dict[str, int]:
        s = self.settings
        if self._gas_mode == "legacy":
            price = s.gas_price_wei or int(self._rpc_call("gas_price", lambda: self._w3.eth.gas_price))
            return {"type": 0, "gasPrice": int(price)}

        block = self._rpc_call("latest_block", lambda: self._w3.eth.get_block("latest"))
        base_fee = block.get("baseFeePerGas")
        if base_fee is None:
            base_fee = self._rpc_call("gas_price", lambda: self._w3.eth.gas_price)
        try:
            tip = int(self._rpc_call("priority_fee", lambda: self._w3.eth.max_priority_fee, retries=1))
        except Exception:
            tip = int(Web3.to_wei(s.priority_fee_gwei, "gwei"))
        return {
            "type": 2,
            "maxPriorityFeePerGas": tip,
            "maxFeePerGas": int(int(base_fee) * s.max_fee_multiplier + tip),
        }

    def apply_gas_fields(self, tx: dict) -> dict:
        # un nodo rechaza la tx si mezcla gasPrice con campos 1559
        for key in _FEE_KEYS:
            tx.pop(key, None)
        tx.update(self._gas_fields())
        return tx

    def estimate_gas(self, tx: dict, label: str) -> int:
        if self.dry_run:
            return self.settings.swap_gas_limit
        estimated = int(self._rpc_call(f"estimate_{label}", lambda: self._w3.eth.estimate_gas(tx)))
        return int(estimated * self.settings.gas_limit_multiplier)

    # ---------- envío ----------
    @log_function
    def sign_and_send(self, tx: dict, signer) -> str:
        if self.dry_run:
            logger.info(f"[DRY_RUN] tx de {signer.address} a {tx.get('to')} no emitida")
            return ZERO_TX_HASH
        raw = signer.sign_transaction(tx).raw_transaction
        tx_hash = self._rpc_call("send_raw_tx", lambda: self._w3.eth.send_raw_transaction(raw), retries=1)
        return Web3.to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: int = 120):
        return self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
