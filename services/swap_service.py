from __future__ import annotations
import time
from decimal import Decimal
from typing import List

from web3.exceptions import ContractLogicError

from enums.session_state import TradeSide
from models.trade_record import SwapQuote
from services.interfaces import SwapExecutionProvider
from services.web3_service import Web3Client
from utils.config import NATIVE_ASSET, Settings
from utils.exceptions import ExecutionError, NoRoute
from utils.logger import logger_manager, log_function
from utils.web3_utils import native_to_wei, short_address

logger = logger_manager.setup_logger(__name__)

DEADLINE_SECS = 60
MAX_UINT256 = 2 ** 256 - 1

# ABI mínima del router PancakeSwap V2
PANCAKE_ROUTER_ABI = [
    {"name": "factory", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "address"}]},
    {"name": "getAmountsOut", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
    {"name": "getAmountsIn", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "amountOut", "type": "uint256"}, {"name": "path", "type": "address[]"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
    {"name": "swapExactETHForTokens", "type": "function", "stateMutability": "payable",
     "inputs": [{"name": "amountOutMin", "type": "uint256"}, {"name": "path", "type": "address[]"},
                {"name": "to", "type": "address"}, {"name": "deadline", "type": "uint256"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
    {"name": "swapExactTokensForETH", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "amountOutMin", "type": "uint256"},
                {"name": "path", "type": "address[]"}, {"name": "to", "type": "address"},
                {"name": "deadline", "type": "uint256"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
]

# ABI mínima de la factory (para comprobar pares)
PANCAKE_FACTORY_ABI = [
    {"name": "getPair", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "tokenA", "type": "address"}, {"name": "tokenB", "type": "address"}],
     "outputs": [{"name": "pair", "type": "address"}]},
]

ERC20_ABI = [
    {"name": "decimals", "type": "function", "stateMutability": "view", "inputs": [],
     "outputs": [{"name": "", "type": "uint8"}]},
    {"name": "balanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}], "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "allowance", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "approve", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
]


class Web3SwapService(Web3Client, SwapExecutionProvider):
    """
    Swaps nativo <-> token en el router PancakeSwap V2.

    Los importes se miden siempre en coin nativo: BUY gasta ``amount`` de nativo;
    SELL vende los tokens necesarios para obtener ``amount`` de nativo.
    El destinatario del swap va en ``quote.route["recipient"]`` (por defecto, el firmante).
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._wbnb_addr = self.checksum(settings.wrapped_native_address)
        self._router_addr = self.checksum(settings.router_address)
        self._router = self._w3.eth.contract(address=self._router_addr, abi=PANCAKE_ROUTER_ABI)
        try:
            factory_addr = self._rpc_call("router.factory", lambda: self._router.functions.factory().call())
            self._factory = self._w3.eth.contract(address=self.checksum(factory_addr), abi=PANCAKE_FACTORY_ABI)
        except Exception as e:
            logger.warning(f"No se pudo obtener la factory del router: {e}")
            self._factory = None
        self._decimals_cache: dict[str, int] = {}

    def _erc20(self, address: str):
        return self._w3.eth.contract(address=self.checksum(address), abi=ERC20_ABI)

    def token_decimals(self, token: str) -> int:
        key = token.lower()
        if key not in self._decimals_cache:
            try:
                self._decimals_cache[key] = int(self._rpc_call("decimals", lambda: self._erc20(token).functions.decimals().call()))
            except ContractLogicError:
                # tokens que no implementan bien ERC20 -> 18
                self._decimals_cache[key] = 18
        return self._decimals_cache[key]

    # ---------- pares ----------
    def _pair_exists(self, token_a: str, token_b: str) -> bool:
        if not self._factory:
            return True
        pair = self._rpc_call(
            "factory.getPair",
            lambda: self._factory.functions.getPair(self.checksum(token_a), self.checksum(token_b)).call(),
        )
        return int(pair, 16) != 0

    def _path(self, from_asset: str, to_asset: str) -> tuple[TradeSide, List[str]]:
        if from_asset == NATIVE_ASSET and to_asset != NATIVE_ASSET:
            return TradeSide.BUY, [self._wbnb_addr, self.checksum(to_asset)]
        if to_asset == NATIVE_ASSET and from_asset != NATIVE_ASSET:
            return TradeSide.SELL, [self.checksum(from_asset), self._wbnb_addr]
        raise NoRoute(f"Par no soportado: {from_asset} -> {to_asset}")

    # ---------- cotización ----------
    @log_function
    def quote(self, from_asset: str, to_asset: str, amount: Decimal) -> SwapQuote:
        side, path = self._path(from_asset, to_asset)
        amount_wei = native_to_wei(amount)
        if amount_wei <= 0:
            raise NoRoute(f"Importe no válido para cotizar: {amount}")
        try:
            if not self._pair_exists(path[0], path[1]):
                raise NoRoute(f"No existe pool {path[0]} -> {path[1]} en Pancake")
            probe_wei = max(amount_wei // 100, 10 ** 9)
            if side is TradeSide.BUY:
                out_raw = int(self._rpc_call("router.getAmountsOut",
                                             lambda: self._router.functions.getAmountsOut(amount_wei, path).call())[-1])
                probe_out = int(self._rpc_call("router.getAmountsOut.probe",
                                               lambda: self._router.functions.getAmountsOut(probe_wei, path).call())[-1])
                if out_raw <= 0 or probe_out <= 0:
                    raise NoRoute(f"Sin liquidez para {amount} en {path[1]}")
                decimals = self.token_decimals(path[1])
                expected = Decimal(out_raw) / (Decimal(10) ** decimals)
                spot = Decimal(probe_out) / Decimal(probe_wei)
                execution = Decimal(out_raw) / Decimal(amount_wei)
                impact = max(Decimal(0), 1 - execution / spot)
                route = {"side": side.value, "path": path, "amount_in_raw": amount_wei, "amount_out_raw": out_raw}
            else:
                in_raw = int(self._rpc_call("router.getAmountsIn",
                                            lambda: self._router.functions.getAmountsIn(amount_wei, path).call())[0])
                probe_in = int(self._rpc_call("router.getAmountsIn.probe",
                                              lambda: self._router.functions.getAmountsIn(probe_wei, path).call())[0])
                if in_raw <= 0 or probe_in <= 0:
                    raise NoRoute(f"Sin liquidez para vender {path[0]} por {amount}")
                expected = Decimal(amount)
                spot = Decimal(probe_in) / Decimal(probe_wei)
                execution = Decimal(in_raw) / Decimal(amount_wei)
                impact = max(Decimal(0), execution / spot - 1)
                route = {"side": side.value, "path": path, "amount_in_raw": in_raw, "amount_out_raw": amount_wei}
        except NoRoute:
            raise
        except Exception as e:
            raise NoRoute(f"Cotización fallida {from_asset} -> {to_asset}: {e}") from e

        return SwapQuote(
            from_asset=from_asset,
            to_asset=to_asset,
            amount=Decimal(amount),
            expected_output=expected,
            price_impact=float(impact),
            route=route,
        )

    # ---------- ejecución ----------
    @log_function
    def submit(self, quote: SwapQuote, signing_key) -> str:
        route = quote.route
        try:
            side = TradeSide(route["side"])
            path = [self.checksum(p) for p in route["path"]]
            recipient = self.checksum(route.get("recipient") or signing_key.address)
            min_out = int(int(route["amount_out_raw"]) * (1 - self.settings.slippage_percent / 100.0))
            deadline = int(time.time()) + DEADLINE_SECS
            sender = self.checksum(signing_key.address)

            if side is TradeSide.BUY:
                func = self._router.functions.swapExactETHForTokens(min_out, path, recipient, deadline)
                tx = func.build_transaction({
                    "from": sender,
                    "value": int(route["amount_in_raw"]),
                    "nonce": self.nonce(sender),
                    "chainId": self.settings.chain_id,
                    "gas": self.settings.swap_gas_limit,
                })
            else:
                amount_in = int(route["amount_in_raw"])
                nonce = self.nonce(sender)
                if self._ensure_allowance(path[0], signing_key, amount_in, nonce):
                    nonce += 1
                func = self._router.functions.swapExactTokensForETH(amount_in, min_out, path, recipient, deadline)
                tx = func.build_transaction({
                    "from": sender,
                    "nonce": nonce,
                    "chainId": self.settings.chain_id,
                    "gas": self.settings.swap_gas_limit,
                })
            tx = self.apply_gas_fields(tx)
            tx["gas"] = self.estimate_gas(tx, side.value.lower())
            tx_hash = self.sign_and_send(tx, signing_key)
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"swap {route.get('side')} {quote.amount}: {e}") from e
        logger.info(f"🔁 swap {side.value} {quote.amount} desde {short_address(sender)} tx={tx_hash}")
        return tx_hash

    def _ensure_allowance(self, token: str, signing_key, amount_raw: int, nonce: int) -> bool:
        """Aprueba el router si el allowance no llega. Devuelve True si envió aprobación."""
        owner = self.checksum(signing_key.address)
        erc20 = self._erc20(token)
        current = int(self._rpc_call("allowance",
                                     lambda: erc20.functions.allowance(owner, self._router_addr).call()))
        if current >= amount_raw:
            return False
        tx = erc20.functions.approve(self._router_addr, MAX_UINT256).build_transaction({
            "from": owner,
            "nonce": nonce,
            "chainId": self.settings.chain_id,
            "gas": self.settings.swap_gas_limit,
        })
        tx = self.apply_gas_fields(tx)
        tx["gas"] = self.estimate_gas(tx, "approve")
        tx_hash = self.sign_and_send(tx, signing_key)
        if not self.dry_run:
            receipt = self.wait_for_receipt(tx_hash)
            if int(receipt.get("status", 0)) != 1:
                raise ExecutionError(f"approve revertida para {short_address(token)} tx={tx_hash}")
        logger.info(f"✅ approve {short_address(token)} para el router tx={tx_hash}")
        return True
