"""
Configuration loading for the session orchestrator.

Values are layered: model defaults, then ``config.yaml`` at the project root,
then environment variables (``main.py`` loads ``.env`` first when present).
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List

import yaml  # type: ignore
from pydantic import BaseModel, Field, field_validator

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# BSC: coin nativo y router PancakeSwap V2
NATIVE_ASSET = "native"
DEFAULT_FEE_ADDRESS = "0x8b2ce1d6f0dc7cc3e2f2a5bb2c1ad4d0b3f6e5a1"


def load_config(path: str | os.PathLike | None = None) -> Dict[str, Any]:
    """Load application configuration from ``config.yaml``.

    :returns: A dictionary representing the configuration. Missing files
        quietly yield an empty dictionary.
    """
    config_path = Path(path) if path else PROJECT_ROOT / "config.yaml"
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    return {}


def _split_csv(raw: str) -> List[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


class Settings(BaseModel):
    # ---------- persistencia ----------
    db_path: str = str(PROJECT_ROOT / "data" / "sessions.db")
    backup_dir: str = str(PROJECT_ROOT / "backups")
    backup_interval_secs: float = 1800.0
    backup_retention: int = 24
    retention_days: int = 30

    # ---------- red ----------
    chain_id: int = 56
    chain_name: str = "bsc"
    rpc_urls: List[str] = Field(default_factory=lambda: ["https://bsc-dataseed.binance.org"])
    wrapped_native_address: str = "0xBB4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c"
    router_address: str = "0x10ED43C718714eb63d5aA57B78B54704E256024E"
    dexscreener_base_url: str = "https://api.dexscreener.com"
    min_market_liquidity_usd: float = 1000.0
    slippage_percent: float = 3.0
    dry_run: bool = True

    # ---------- rpc / gas ----------
    rpc_timeout_secs: float = 30.0
    rpc_retries: int = 3
    rpc_retry_backoff_secs: float = 0.4
    gas_mode: str = "auto"  # auto | legacy | 1559
    gas_price_wei: int = 0  # > 0 fuerza gasPrice
    priority_fee_gwei: float = 1.5
    max_fee_multiplier: float = 2.0
    gas_limit_multiplier: float = 1.2
    swap_gas_limit: int = 350_000

    # ---------- reparto ----------
    fee_address: str = DEFAULT_FEE_ADDRESS
    fee_ratio: Decimal = Decimal("0.25")
    min_deposit: Decimal = Decimal("0.1")
    privileged_min_deposit: Decimal = Decimal("0.01")
    privileged_addresses: List[str] = Field(default_factory=list)

    # ---------- trading ----------
    trade_floor: Decimal = Decimal("0.001")
    trade_ceiling: Decimal = Decimal("0.0035")
    trade_fraction_min: Decimal = Decimal("0.02")
    trade_fraction_max: Decimal = Decimal("0.10")
    gas_reserve: Decimal = Decimal("0.0002")
    confirm_trades: bool = True

    # ---------- tiempos (segundos) ----------
    poll_interval_secs: float = 3.0
    first_trade_delay_secs: float = 2.0
    trade_interval_secs: float = 7.0
    retry_delay_secs: float = 10.0
    external_call_timeout_secs: float = 45.0
    confirm_timeout_secs: float = 90.0
    confirm_poll_secs: float = 3.0
    sweep_interval_secs: float = 10.0

    @field_validator("fee_ratio")
    @classmethod
    def _ratio_in_range(cls, v: Decimal) -> Decimal:
        if not (Decimal("0") < v < Decimal("1")):
            raise ValueError("fee_ratio debe estar en (0, 1)")
        return v

    @field_validator("trade_fraction_max")
    @classmethod
    def _fraction_max(cls, v: Decimal) -> Decimal:
        if not (Decimal("0") < v <= Decimal("1")):
            raise ValueError("trade_fraction_max debe estar en (0, 1]")
        return v

    @field_validator("gas_mode")
    @classmethod
    def _gas_mode(cls, v: str) -> str:
        v = (v or "auto").strip().lower()
        if v not in ("auto", "legacy", "1559"):
            raise ValueError("gas_mode debe ser auto, legacy o 1559")
        return v

    @classmethod
    def from_env(cls, config_path: str | None = None) -> "Settings":
        """Defaults < config.yaml < variables de entorno."""
        data: Dict[str, Any] = dict(load_config(config_path))
        for name, field in cls.model_fields.items():
            raw = os.getenv(name.upper())
            if raw is None:
                continue
            if name in ("rpc_urls", "privileged_addresses"):
                data[name] = _split_csv(raw)
            elif field.annotation is bool:
                data[name] = raw.strip().lower() in ("1", "true", "yes", "on")
            else:
                data[name] = raw
        # compat con el nombre de variable histórico
        if "rpc_urls" not in data and os.getenv("RPC_URL"):
            data["rpc_urls"] = _split_csv(os.getenv("RPC_URL", ""))
        return cls(**data)
