"""
Excepciones del dominio de sesiones.

Los errores de configuración (``BelowMinimum``, ``NoRoute``/``NotTradeable`` al
crear sesión) se devuelven al llamante. Los errores de ejecución dentro del bucle
de trading se convierten en ``TradeResult`` fallidos y nunca salen del bucle.
"""

from __future__ import annotations


class SessionError(Exception):
    """Base de todos los errores propios."""


class BelowMinimum(SessionError):
    """Depósito por debajo del mínimo aplicable."""


class DuplicateSplit(SessionError):
    """Ya existe un reparto para la sesión o la clave de idempotencia ya se usó."""


class KeyMaterialCorrupt(SessionError):
    """Los bytes guardados no decodifican a una clave válida para la dirección."""


class NoRoute(SessionError):
    """El proveedor de swaps no encuentra ruta para el par/importe."""


class NotTradeable(NoRoute):
    """El activo no tiene ningún mercado viable."""


class ExecutionError(SessionError):
    """Fallo al enviar o ejecutar un swap."""


class InsufficientBalance(SessionError):
    """Saldo insuficiente para la operación pedida."""


class SessionNotFound(SessionError):
    """No existe sesión con ese id."""


class RecoveryInconsistent(SessionError):
    """Estado persistido que referencia una wallet sin WalletRecord."""


class LedgerError(SessionError):
    """Fallo del cliente de ledger (RPC, firma, envío)."""


class ExternalCallTimeout(SessionError):
    """Llamada externa que no respondió dentro del plazo."""


class BackupError(SessionError):
    """Backup inexistente, ilegible o con checksum que no cuadra."""
