# services/ledger_service.py
from __future__ import annotations
from decimal import Decimal

from web3.exceptions import TransactionNotFound

from enums.session_state import TxStatus
from services.interfaces import LedgerClient
from services.web3_service import TRANSFER_GAS_LIMIT, ZERO_TX_HASH, Web3Client
from utils.exceptions import InsufficientBalance, LedgerError
from utils.logger import logger_manager, log_function
from utils.web3_utils import native_to_wei, short_address, wei_to_native

logger = logger_manager.setup_logger(__name__)


class Web3LedgerService(Web3Client, LedgerClient):
    """Saldos, confirmaciones y transferencias de coin nativo sobre RPC EVM."""

    @log_function
    def get_balance(self, address: str) -> Decimal:
        addr = self.checksum(address)
        try:
            wei = int(self._rpc_call("get_balance", lambda: self._w3.eth.get_balance(addr)))
        except Exception as e:
            raise LedgerError(f"get_balance {short_address(address)}: {e}") from e
        return wei_to_native(wei)

    def confirm_transaction(self, reference: str) -> TxStatus:
        if reference == ZERO_TX_HASH:
            return TxStatus.CONFIRMED if self.dry_run else TxStatus.FAILED
        try:
            receipt = self._w3.eth.get_transaction_receipt(reference)
        except TransactionNotFound:
            return TxStatus.PENDING
        except Exception as e:
            raise LedgerError(f"receipt {reference}: {e}") from e
        return TxStatus.CONFIRMED if int(receipt.get("status", 0)) == 1 else TxStatus.FAILED

    @log_function
    def transfer(self, signing_key, to_address: str, amount: Decimal) -> str:
        value = native_to_wei(amount)
        if value <= 0:
            raise LedgerError(f"Importe de transferencia no válido: {amount}")
        sender = signing_key.address
        try:
            if not self.dry_run:
                balance = int(self._rpc_call("get_balance", lambda: self._w3.eth.get_balance(self.checksum(sender))))
                if balance < value:
                    raise InsufficientBalance(
                        f"{short_address(sender)} tiene {wei_to_native(balance)} y se piden {amount}"
                    )
            tx = {
                "from": self.checksum(sender),
                "to": self.checksum(to_address),
                "value": value,
                "gas": TRANSFER_GAS_LIMIT,
                "nonce": self.nonce(sender),
                "chainId": self.settings.chain_id,
            }
            tx = self.apply_gas_fields(tx)
            tx_hash = self.sign_and_send(tx, signing_key)
        except InsufficientBalance as e:
            raise LedgerError(str(e)) from e
        except Exception as e:
            raise LedgerError(f"transfer {short_address(sender)} → {short_address(to_address)}: {e}") from e
        logger.info(f"💸 {amount} de {short_address(sender)} a {short_address(to_address)} tx={tx_hash}")
        return tx_hash
