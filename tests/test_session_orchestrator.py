from decimal import Decimal

import pytest
from eth_account import Account
from pydantic import SecretStr

from conftest import FEE_ADDRESS, TOKEN, FakeLedger, FakeSwap, Harness, make_settings, wait_until
from enums.session_state import SessionState, TradeSide, TxStatus
from services.wallet_service import encode_key
from utils.exceptions import LedgerError, NotTradeable, SessionNotFound


class TestCreateSession:
    def test_two_sessions_same_asset_are_distinct(self, harness):
        a = harness.orchestrator.create_session(TOKEN)
        b = harness.orchestrator.create_session(TOKEN)
        assert a.session_id != b.session_id
        assert a.wallet_address != b.wallet_address

    def test_session_is_persisted_monitoring_with_wallet(self, harness):
        created = harness.orchestrator.create_session(TOKEN)
        stored = harness.persistence.get_session(created.session_id)
        assert stored.state is SessionState.MONITORING
        assert stored.market_id
        assert harness.persistence.get_session_wallet(created.session_id).address == created.wallet_address
        assert harness.orchestrator.is_loop_alive(created.session_id)

    def test_untradeable_asset_creates_nothing(self, harness):
        harness.market.untradeable.add(TOKEN)
        with pytest.raises(NotTradeable):
            harness.orchestrator.create_session(TOKEN)
        assert harness.persistence.list_sessions() == []
        assert len(harness.wallets) == 0

    def test_empty_asset_is_rejected(self, harness):
        with pytest.raises(ValueError):
            harness.orchestrator.create_session("  ")


class TestMonitoring:
    def test_waits_while_below_minimum(self, harness, settings):
        created = harness.orchestrator.create_session(TOKEN)
        harness.ledger.set_balance(created.wallet_address, "0.05")
        assert harness.orchestrator.monitor_tick(created.session_id) == settings.poll_interval_secs
        assert harness.session(created.session_id).state is SessionState.MONITORING
        assert harness.funds.get_split(created.session_id) is None

    def test_ledger_error_keeps_monitoring(self, harness, settings):
        created = harness.orchestrator.create_session(TOKEN)
        harness.ledger.fail_balance = True
        assert harness.orchestrator.monitor_tick(created.session_id) == settings.poll_interval_secs
        assert harness.session(created.session_id).state is SessionState.MONITORING

    def test_funding_splits_collects_fee_and_starts_trading(self, harness):
        created = harness.create_funded("1.0")
        sid = created.session_id
        session = harness.session(sid)
        assert session.state is SessionState.TRADING
        assert session.operating_balance == Decimal("0.75")

        split = harness.persistence.get_split(sid)
        assert (split.operating_amount, split.fee_amount) == (Decimal("0.75"), Decimal("0.25"))

        fee = harness.ledger.transfers[0]
        assert fee["to"] == FEE_ADDRESS and fee["amount"] == Decimal("0.25")
        assert fee["from"] == created.wallet_address
        audit = harness.persistence.list_fee_transfers(sid)
        assert len(audit) == 1 and audit[0].ok
        assert harness.orchestrator.total_fees_collected() == Decimal("0.25")

    def test_failed_fee_transfer_is_audited_not_retried(self, harness):
        harness.ledger.fail_transfers = True
        created = harness.create_funded("1.0")
        audit = harness.persistence.list_fee_transfers(created.session_id)
        assert len(audit) == 1 and not audit[0].ok
        assert harness.session(created.session_id).state is SessionState.TRADING
        assert harness.orchestrator.total_fees_collected() == Decimal("0")

    def test_existing_split_is_reused_without_second_fee(self, harness):
        created = harness.orchestrator.create_session(TOKEN)
        sid = created.session_id
        harness.funds.record_split(sid, Decimal("2"), "earlier-event")
        harness.ledger.set_balance(created.wallet_address, "5")
        assert harness.orchestrator.monitor_tick(sid) is None
        assert harness.session(sid).state is SessionState.TRADING
        assert harness.session(sid).operating_balance == Decimal("1.5")
        assert harness.ledger.transfers == []

    def test_privileged_owner_funds_with_lower_deposit(self, harness):
        from conftest import PRIVILEGED
        created = harness.orchestrator.create_session(TOKEN, owner_address=PRIVILEGED)
        harness.ledger.set_balance(created.wallet_address, "0.02")
        harness.orchestrator.monitor_tick(created.session_id)
        assert harness.session(created.session_id).state is SessionState.TRADING

    def test_without_owner_the_standard_minimum_applies(self, harness, settings):
        created = harness.orchestrator.create_session(TOKEN)
        harness.ledger.set_balance(created.wallet_address, "0.02")
        assert harness.orchestrator.monitor_tick(created.session_id) == settings.poll_interval_secs
        assert harness.session(created.session_id).state is SessionState.MONITORING

    def test_corrupt_session_key_fails_the_session(self, harness):
        created = harness.orchestrator.create_session(TOKEN)
        record = harness.wallets.get_session_wallet(created.session_id)
        broken = record.model_copy(update={"private_key": SecretStr(encode_key(Account.create()))})
        harness.wallets.register(broken)
        harness.ledger.set_balance(created.wallet_address, "1")
        assert harness.orchestrator.monitor_tick(created.session_id) is None
        stored = harness.persistence.get_session(created.session_id)
        assert stored.state is SessionState.FAILED
        assert "KeyMaterialCorrupt" in stored.last_error


class TestTradingLoop:
    def _sides(self, harness, sid):
        return [(t.side, t.ok) for t in harness.persistence.list_trades(sid)]

    def test_sides_alternate_starting_with_buy(self, harness, settings):
        sid = harness.create_funded().session_id
        delays = [harness.orchestrator.trading_tick(sid) for _ in range(4)]
        assert delays == [settings.trade_interval_secs] * 4
        assert self._sides(harness, sid) == [
            (TradeSide.BUY, True), (TradeSide.SELL, True), (TradeSide.BUY, True), (TradeSide.SELL, True)
        ]
        session = harness.session(sid)
        trades = harness.persistence.list_trades(sid)
        spent = sum(t.amount for t in trades)
        assert session.trade_count == 4
        assert session.volume == spent
        assert session.operating_balance == Decimal("0.75") - spent
        assert [t.sequence for t in trades] == [1, 2, 3, 4]

    def test_failed_sell_is_retried_as_sell(self, harness, settings):
        sid = harness.create_funded().session_id
        harness.swap.fail_submit_calls = {2}
        delays = [harness.orchestrator.trading_tick(sid) for _ in range(4)]
        assert self._sides(harness, sid) == [
            (TradeSide.BUY, True), (TradeSide.SELL, False), (TradeSide.SELL, True), (TradeSide.BUY, True)
        ]
        assert delays[1] == settings.trade_interval_secs + settings.retry_delay_secs
        session = harness.session(sid)
        assert session.trade_count == 3 and session.failed_trade_count == 1
        assert session.consecutive_failures == 0

    def test_ten_failures_never_fail_the_session(self, harness, settings):
        sid = harness.create_funded().session_id
        harness.swap.always_fail = True
        for _ in range(10):
            assert harness.orchestrator.trading_tick(sid) is not None
        session = harness.persistence.get_session(sid)
        assert session.state is SessionState.TRADING
        assert session.failed_trade_count == 10
        assert session.consecutive_failures == 10
        # cada BUY fallido pierde la reserva de gas que se queda en su trade wallet
        assert session.operating_balance == Decimal("0.75") - 10 * settings.gas_reserve
        assert {side for side, _ in self._sides(harness, sid)} == {TradeSide.BUY}
        assert "ExecutionError" in session.last_error

    def test_failed_buys_return_funds_to_session_wallet(self, harness, settings):
        created = harness.create_funded()
        sid = created.session_id
        harness.swap.always_fail = True
        for _ in range(5):
            harness.orchestrator.trading_tick(sid)
        session = harness.session(sid)
        assert harness.ledger.get_balance(created.wallet_address) >= session.operating_balance
        trades = harness.persistence.list_trades(sid)
        for t in trades:
            assert harness.ledger.get_balance(t.trade_wallet) == settings.gas_reserve
            assert t.stranded == settings.gas_reserve
        refunds = [x for x in harness.ledger.transfers if x["to"] == created.wallet_address]
        assert [x["amount"] for x in refunds] == [t.amount for t in trades]

    def test_unreclaimable_buy_is_charged_to_operating_balance(self, harness, settings):
        created = harness.create_funded()
        sid = created.session_id
        harness.swap.always_fail = True
        for _ in range(3):
            harness.orchestrator.trading_tick(sid)
        # la devolución también falla: todo lo enviado queda fuera de los libros
        original = harness.ledger.transfer

        def fund_only(signing_key, to_address, amount):
            if to_address == created.wallet_address:
                raise LedgerError("devolución rechazada")
            return original(signing_key, to_address, amount)

        harness.ledger.transfer = fund_only
        before = harness.session(sid).operating_balance
        harness.orchestrator.trading_tick(sid)
        trade = harness.persistence.last_trade(sid)
        assert trade.stranded == trade.amount + settings.gas_reserve
        assert "sin recuperar" in trade.reason
        session = harness.session(sid)
        assert session.operating_balance == before - trade.stranded
        assert harness.ledger.get_balance(created.wallet_address) >= session.operating_balance

    def test_repeated_unreclaimable_buys_end_depleted(self, harness):
        created = harness.create_funded()
        sid = created.session_id
        harness.swap.always_fail = True
        original = harness.ledger.transfer

        def fund_only(signing_key, to_address, amount):
            if to_address == created.wallet_address:
                raise LedgerError("devolución rechazada")
            return original(signing_key, to_address, amount)

        harness.ledger.transfer = fund_only
        harness.session(sid).operating_balance = Decimal("0.01")
        ticks = 0
        while harness.orchestrator.trading_tick(sid) is not None:
            ticks += 1
            assert ticks < 20
        assert harness.persistence.get_session(sid).state is SessionState.DEPLETED

    def test_balance_below_floor_depletes_without_trading(self, harness):
        sid = harness.create_funded().session_id
        harness.session(sid).operating_balance = Decimal("0.0009")
        assert harness.orchestrator.trading_tick(sid) is None
        assert harness.persistence.get_session(sid).state is SessionState.DEPLETED
        assert harness.swap.submits == []
        # ticks posteriores no hacen nada
        assert harness.orchestrator.trading_tick(sid) is None
        assert harness.persistence.list_trades(sid) == []

    def test_runs_until_depleted(self, harness, settings):
        sid = harness.create_funded().session_id
        harness.session(sid).operating_balance = Decimal("0.0042")
        ticks = 0
        while harness.orchestrator.trading_tick(sid) is not None:
            ticks += 1
            assert ticks < 10
        session = harness.persistence.get_session(sid)
        assert session.state is SessionState.DEPLETED
        assert session.completed_at is not None
        assert session.operating_balance < settings.trade_floor
        assert all(t.amount >= settings.trade_floor for t in harness.persistence.list_trades(sid))

    def test_buy_funds_ephemeral_wallet_and_sell_pays_it(self, harness, settings):
        created = harness.create_funded()
        sid = created.session_id
        harness.orchestrator.trading_tick(sid)
        harness.orchestrator.trading_tick(sid)
        buy, sell = harness.persistence.list_trades(sid)

        funding = harness.ledger.transfers[1]
        assert funding["from"] == created.wallet_address
        assert funding["to"] == buy.trade_wallet
        assert funding["amount"] == buy.amount + settings.gas_reserve

        (buy_quote, buy_signer), (sell_quote, sell_signer) = harness.swap.submits
        assert buy_signer == buy.trade_wallet
        assert buy_quote.route["recipient"] == created.wallet_address
        assert sell_signer == created.wallet_address
        assert sell_quote.route["recipient"] == sell.trade_wallet
        assert buy.trade_wallet != sell.trade_wallet
        assert len(harness.persistence.list_wallets(sid)) == 3

    def test_unconfirmed_swap_counts_as_failure(self, harness):
        sid = harness.create_funded().session_id
        harness.ledger.confirm_status = TxStatus.FAILED
        harness.orchestrator.trading_tick(sid)
        trade = harness.persistence.last_trade(sid)
        assert not trade.ok and trade.tx_ref == "0xswap1"
        assert trade.reason.startswith("tx failed")
        assert trade.stranded == harness.settings.gas_reserve
        assert harness.session(sid).failed_trade_count == 1

    def test_no_route_is_a_failed_trade(self, harness):
        sid = harness.create_funded().session_id
        harness.swap.no_route = True
        harness.orchestrator.trading_tick(sid)
        trade = harness.persistence.last_trade(sid)
        assert not trade.ok and "NoRoute" in trade.reason
        assert harness.session(sid).state is SessionState.TRADING

    def test_slow_swap_times_out_as_failure(self, tmp_path):
        h = Harness(make_settings(tmp_path, external_call_timeout_secs=0.2), swap=FakeSwap())
        try:
            sid = h.create_funded().session_id
            h.swap.submit_delay = 1.0
            h.orchestrator.trading_tick(sid)
            trade = h.persistence.last_trade(sid)
            assert not trade.ok and "ExternalCallTimeout" in trade.reason
            assert h.session(sid).state is SessionState.TRADING
        finally:
            h.close()


class TestTradeAmount:
    @pytest.mark.parametrize("balance", ["0.75", "0.02", "0.0015", "0.001"])
    def test_amount_respects_bounds(self, harness, settings, balance):
        balance = Decimal(balance)
        for _ in range(50):
            amount = harness.orchestrator.compute_trade_amount(balance)
            assert settings.trade_floor <= amount <= min(settings.trade_ceiling, balance)

    def test_large_balance_is_capped_at_ceiling(self, harness, settings):
        assert harness.orchestrator.compute_trade_amount(Decimal("10")) == settings.trade_ceiling

    def test_amount_is_random_within_range(self, settings):
        h = Harness(settings, seed=1)
        try:
            amounts = {h.orchestrator.compute_trade_amount(Decimal("0.03")) for _ in range(20)}
            assert len(amounts) > 1
        finally:
            h.close()


class TestStop:
    def test_stop_is_terminal_and_halts_the_loop(self, harness):
        sid = harness.create_funded().session_id
        snap = harness.orchestrator.stop_session(sid)
        assert snap.state == "stopped"
        assert harness.orchestrator.trading_tick(sid) is None
        stored = harness.persistence.get_session(sid)
        assert stored.state is SessionState.STOPPED and stored.completed_at
        assert harness.persistence.list_trades(sid) == []

    def test_stop_twice_is_an_ack(self, harness):
        sid = harness.orchestrator.create_session(TOKEN).session_id
        harness.orchestrator.stop_session(sid)
        assert harness.orchestrator.stop_session(sid).state == "stopped"

    def test_stop_unknown_session(self, harness):
        with pytest.raises(SessionNotFound):
            harness.orchestrator.stop_session("missing")

    def test_stop_all_and_listing(self, harness):
        a = harness.orchestrator.create_session(TOKEN).session_id
        b = harness.create_funded().session_id
        assert {s.session_id for s in harness.orchestrator.list_active_sessions()} == {a, b}
        assert set(harness.orchestrator.stop_all_sessions()) == {a, b}
        assert harness.orchestrator.list_active_sessions() == []
        stats = harness.orchestrator.session_stats()
        assert stats["stopped"] == 2 and stats["active"] == 0


class TestStatus:
    def test_snapshot_has_no_key_material(self, harness):
        created = harness.create_funded()
        snap = harness.orchestrator.get_session_status(created.session_id).to_dict()
        assert snap["state"] == "trading"
        assert snap["operating_balance"] == "0.75000000"
        assert "private_key" not in snap
        assert snap["loop_alive"] is True

    def test_unknown_session(self, harness):
        with pytest.raises(SessionNotFound):
            harness.orchestrator.get_session_status("nope")


def test_threaded_loop_trades_until_stopped(tmp_path):
    settings = make_settings(
        tmp_path, poll_interval_secs=0.01, first_trade_delay_secs=0.01,
        trade_interval_secs=0.01, retry_delay_secs=0.01,
    )
    h = Harness(settings, ledger=FakeLedger())
    try:
        created = h.orchestrator.create_session(TOKEN)
        h.ledger.set_balance(created.wallet_address, "1.0")
        sid = created.session_id
        assert wait_until(lambda: h.session(sid).trade_count >= 3)
        sides = [t.side for t in h.persistence.list_trades(sid)][:3]
        assert sides == [TradeSide.BUY, TradeSide.SELL, TradeSide.BUY]

        h.orchestrator.stop_session(sid)
        assert wait_until(lambda: not h.orchestrator.is_loop_alive(sid))
        count = len(h.persistence.list_trades(sid))
        assert h.persistence.get_session(sid).state is SessionState.STOPPED
        assert not wait_until(lambda: len(h.persistence.list_trades(sid)) > count, timeout=0.2)
    finally:
        h.close()
