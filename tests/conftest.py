import os
import tempfile

# los logs de los tests no ensucian el proyecto
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="session-logs-"))

import random
import threading
import time
from decimal import Decimal

import pytest

from enums.session_state import TxStatus
from models.trade_record import SwapQuote
from orchestrators.recovery_orchestrator import RecoveryOrchestrator
from orchestrators.session_orchestrator import SessionOrchestrator
from services.fund_split_service import FundSplitLedger
from services.interfaces import LedgerClient, MarketValidator, SwapExecutionProvider
from services.persistence_service import PersistenceService
from services.wallet_service import SeedSource, WalletLifecycleManager
from utils.config import NATIVE_ASSET, Settings
from utils.exceptions import ExecutionError, LedgerError, NoRoute, NotTradeable

TOKEN = "0x1111111111111111111111111111111111111111"
PRIVILEGED = "0x2222222222222222222222222222222222222222"
FEE_ADDRESS = "0x3333333333333333333333333333333333333333"


class FixedSeedSource(SeedSource):
    """Semillas deterministas y distintas en cada llamada."""

    def __init__(self, start: int = 1_700_000_000_000_000_000) -> None:
        self._ts = start
        self._n = 0
        self._lock = threading.Lock()

    def timestamp_ns(self) -> int:
        with self._lock:
            self._ts += 1
            return self._ts

    def nonce(self) -> str:
        with self._lock:
            self._n += 1
            return f"{self._n:032x}"


class FakeLedger(LedgerClient):
    def __init__(self) -> None:
        self.balances = {}
        self.transfers = []
        self.confirm_status = TxStatus.CONFIRMED
        self.fail_transfers = False
        self.fail_balance = False

    def set_balance(self, address: str, amount) -> None:
        self.balances[address.lower()] = Decimal(str(amount))

    def get_balance(self, address: str) -> Decimal:
        if self.fail_balance:
            raise LedgerError("nodo caído")
        return self.balances.get(address.lower(), Decimal("0"))

    def confirm_transaction(self, reference: str) -> TxStatus:
        return self.confirm_status

    def transfer(self, signing_key, to_address: str, amount: Decimal) -> str:
        if self.fail_transfers:
            raise LedgerError("transferencia rechazada")
        sender = signing_key.address.lower()
        self.balances[sender] = self.balances.get(sender, Decimal("0")) - Decimal(amount)
        self.balances[to_address.lower()] = self.balances.get(to_address.lower(), Decimal("0")) + Decimal(amount)
        self.transfers.append({"from": signing_key.address, "to": to_address, "amount": Decimal(amount)})
        return f"0xtransfer{len(self.transfers)}"


class FakeSwap(SwapExecutionProvider):
    def __init__(self) -> None:
        self.quotes = []
        self.submits = []
        self.fail_submit_calls = set()   # índices (1-based) de submit que fallan
        self.always_fail = False
        self.no_route = False
        self.submit_delay = 0.0

    def quote(self, from_asset: str, to_asset: str, amount: Decimal) -> SwapQuote:
        if self.no_route:
            raise NoRoute("sin ruta")
        side = "BUY" if from_asset == NATIVE_ASSET else "SELL"
        q = SwapQuote(from_asset=from_asset, to_asset=to_asset, amount=amount,
                      expected_output=amount * 1000, price_impact=0.001, route={"side": side})
        self.quotes.append(q)
        return q

    def submit(self, quote: SwapQuote, signing_key) -> str:
        if self.submit_delay:
            time.sleep(self.submit_delay)
        self.submits.append((quote, signing_key.address))
        n = len(self.submits)
        if self.always_fail or n in self.fail_submit_calls:
            raise ExecutionError(f"swap #{n} revertido")
        return f"0xswap{n}"


class FakeMarket(MarketValidator):
    def __init__(self) -> None:
        self.untradeable = set()

    def find_best_market(self, asset: str) -> str:
        if asset in self.untradeable:
            raise NotTradeable(f"{asset} sin mercado")
        return "0xpair" + asset[-4:]


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        db_path=str(tmp_path / "sessions.db"),
        backup_dir=str(tmp_path / "backups"),
        fee_address=FEE_ADDRESS,
        privileged_addresses=[PRIVILEGED],
        poll_interval_secs=3600,
        first_trade_delay_secs=3600,
        trade_interval_secs=7,
        retry_delay_secs=10,
        sweep_interval_secs=3600,
        external_call_timeout_secs=5,
        confirm_timeout_secs=1,
        confirm_poll_secs=0.01,
    )
    values.update(overrides)
    return Settings(**values)


class Harness:
    """Orquestador con colaboradores falsos y acceso a todas sus piezas."""

    def __init__(self, settings: Settings, ledger: FakeLedger = None, swap: FakeSwap = None,
                 market: FakeMarket = None, seed: int = 7) -> None:
        self.settings = settings
        self.persistence = PersistenceService(settings.db_path)
        self.wallets = WalletLifecycleManager(FixedSeedSource())
        self.funds = FundSplitLedger(settings)
        self.ledger = ledger or FakeLedger()
        self.swap = swap or FakeSwap()
        self.market = market or FakeMarket()
        self.orchestrator = SessionOrchestrator(
            settings, self.persistence, self.wallets, self.funds,
            self.ledger, self.swap, self.market, rng=random.Random(seed),
        )
        self.recovery = RecoveryOrchestrator(
            settings, self.orchestrator, self.persistence, self.wallets, self.funds, self.ledger,
        )

    def create_funded(self, amount="1.0"):
        """Crea una sesión, deposita ``amount`` y ejecuta el tick de monitorización."""
        created = self.orchestrator.create_session(TOKEN)
        self.ledger.set_balance(created.wallet_address, amount)
        self.orchestrator.monitor_tick(created.session_id)
        return created

    def session(self, session_id):
        return self.orchestrator.live_session(session_id)

    def close(self) -> None:
        self.recovery.stop_sweep()
        self.orchestrator.shutdown(join_timeout=1.0)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def harness(settings):
    h = Harness(settings)
    yield h
    h.close()


def wait_until(predicate, timeout=5.0, interval=0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
