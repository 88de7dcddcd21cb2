# services/market_service.py
from __future__ import annotations
import requests
from typing import Any, Dict, List, Optional

from services.interfaces import MarketValidator
from utils.config import Settings
from utils.exceptions import NoRoute, NotTradeable
from utils.logger import logger_manager, log_function

logger = logger_manager.setup_logger(__name__)


class MarketService(MarketValidator):
    """
    Validación de mercado contra Dexscreener.

    Elige el par de la red configurada con más liquidez en USD y lo descarta si
    no llega a ``min_market_liquidity_usd``.
    """

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        self.base_url = settings.dexscreener_base_url.rstrip("/")
        self.chain_name = settings.chain_name
        self.min_liquidity_usd = float(settings.min_market_liquidity_usd)
        self.timeout = min(12.0, float(settings.external_call_timeout_secs))
        self.http = session or requests.Session()

    def _url(self, asset: str) -> str:
        return f"{self.base_url}/latest/dex/tokens/{asset}"

    def _fetch_pairs(self, asset: str) -> List[Dict[str, Any]]:
        url = self._url(asset)
        logger.debug(f"[market] GET {url} (chain={self.chain_name})")
        try:
            r = self.http.get(url, timeout=self.timeout)
            r.raise_for_status()
            data = r.json() or {}
        except (requests.RequestException, ValueError) as e:
            raise NoRoute(f"No se pudo consultar Dexscreener para {asset}: {e}") from e
        pairs = data.get("pairs", []) or []
        return [p for p in pairs if p.get("chainId") == self.chain_name]

    @staticmethod
    def _liquidity_usd(pair: Dict[str, Any]) -> float:
        try:
            return float((pair.get("liquidity") or {}).get("usd") or 0.0)
        except (TypeError, ValueError):
            return 0.0

    @log_function
    def find_best_market(self, asset: str) -> str:
        pairs = self._fetch_pairs(asset)
        if not pairs:
            raise NotTradeable(f"{asset} no tiene pares en {self.chain_name}")

        best = max(pairs, key=self._liquidity_usd)
        liquidity = self._liquidity_usd(best)
        if liquidity < self.min_liquidity_usd:
            raise NotTradeable(
                f"{asset}: liquidez máxima {liquidity:.0f} USD por debajo de {self.min_liquidity_usd:.0f} USD"
            )
        market_id = best.get("pairAddress") or ""
        if not market_id:
            raise NotTradeable(f"{asset}: el mejor par no trae pairAddress")
        logger.info(f"[market] {asset} → {market_id} ({best.get('dexId')}, liquidez {liquidity:.0f} USD)")
        return market_id
