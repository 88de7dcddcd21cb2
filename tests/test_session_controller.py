import pytest

from conftest import TOKEN
from controllers.session_controller import SessionController
from services.backup_service import BackupService


@pytest.fixture
def controller(harness, settings):
    return SessionController(harness.orchestrator, BackupService(harness.persistence, settings))


def test_create_reports_wallet_and_standard_minimum(controller):
    res = controller.create(TOKEN)
    assert res["ok"] is True
    assert res["session_id"].startswith("session_")
    assert res["minimum_deposit"] == "0.1"
    assert "private_key" not in res


def test_privileged_owner_is_not_revealed(controller):
    from conftest import PRIVILEGED
    res = controller.create(TOKEN, owner_address=PRIVILEGED)
    assert res["minimum_deposit"] == "0.1"


def test_create_untradeable_asset(controller, harness):
    harness.market.untradeable.add(TOKEN)
    res = controller.create(TOKEN)
    assert res["ok"] is False
    assert "mercado" in res["reason"]


def test_create_empty_asset(controller):
    assert controller.create("")["ok"] is False


def test_status_stop_and_listing(controller, harness):
    sid = harness.create_funded().session_id
    status = controller.status(sid)
    assert status["ok"] and status["session"]["state"] == "trading"
    assert controller.list_active()["count"] == 1

    res = controller.stop(sid)
    assert res == {"ok": True, "session_id": sid, "state": "stopped"}
    assert controller.list_active()["count"] == 0


def test_unknown_session(controller):
    assert controller.status("missing")["ok"] is False
    assert controller.stop("missing")["ok"] is False


def test_stats_and_stop_all(controller, harness):
    harness.create_funded("1.0")
    controller.create(TOKEN)
    stats = controller.stats()
    assert stats["sessions"]["active"] == 2
    assert stats["total_fees_collected"] == "0.25000000"
    assert controller.stop_all()["count"] == 2


def test_backups_through_controller(controller):
    controller.create(TOKEN)
    created = controller.create_backup()
    assert created["ok"]
    assert controller.restore_backup(created["backup"]["id"])["ok"]
    assert controller.restore_backup("missing")["ok"] is False


def test_backups_not_configured(harness):
    bare = SessionController(harness.orchestrator)
    assert bare.create_backup()["ok"] is False
    assert bare.restore_backup("x")["ok"] is False
