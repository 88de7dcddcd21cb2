# services/interfaces.py
"""
Contratos de los colaboradores externos.

El orquestador solo depende de estas clases base; las implementaciones reales
(web3, DexScreener) y las de prueba se inyectan en el arranque.
"""
from __future__ import annotations
from abc import ABC, abstractmethod
from decimal import Decimal

from enums.session_state import TxStatus
from models.trade_record import SwapQuote


class LedgerClient(ABC):
    """Saldos, confirmaciones y transferencias de coin nativo."""

    @abstractmethod
    def get_balance(self, address: str) -> Decimal:
        """
        Saldo nativo de ``address`` con 8 decimales.

        Raises:
            LedgerError: si el nodo no responde tras los reintentos.
        """

    @abstractmethod
    def confirm_transaction(self, reference: str) -> TxStatus:
        """Estado de una transacción enviada (CONFIRMED, FAILED o PENDING)."""

    @abstractmethod
    def transfer(self, signing_key, to_address: str, amount: Decimal) -> str:
        """
        Envía ``amount`` de coin nativo firmado con ``signing_key``.

        Returns:
            La referencia (hash) de la transacción.

        Raises:
            LedgerError: si la firma o el envío fallan.
        """


class SwapExecutionProvider(ABC):
    @abstractmethod
    def quote(self, from_asset: str, to_asset: str, amount: Decimal) -> SwapQuote:
        """
        Cotiza el swap de ``amount`` (medido en coin nativo en ambos sentidos).

        Raises:
            NoRoute: si no hay ruta para el par o el importe.
        """

    @abstractmethod
    def submit(self, quote: SwapQuote, signing_key) -> str:
        """
        Ejecuta el swap cotizado.

        Raises:
            ExecutionError: si el envío o la ejecución fallan.
        """


class MarketValidator(ABC):
    @abstractmethod
    def find_best_market(self, asset: str) -> str:
        """
        Identificador del mercado con más liquidez para ``asset``.

        Raises:
            NotTradeable: si no existe ningún mercado viable.
        """
