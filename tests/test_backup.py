import json
from decimal import Decimal

import pytest

from enums.session_state import SessionState
from services.backup_service import BackupService
from services.persistence_service import PersistenceService
from utils.exceptions import BackupError


@pytest.fixture
def backups(harness, settings):
    return BackupService(harness.persistence, settings)


def test_backup_contains_full_state(harness, backups):
    created = harness.create_funded("1.0")
    harness.orchestrator.trading_tick(created.session_id)

    meta = backups.create_backup()
    assert meta["counts"]["sessions"] == 1
    assert meta["counts"]["fee_transfers"] == 1
    assert meta["counts"]["trades"] == 1
    assert meta["counts"]["wallets"] == 2
    assert [b["id"] for b in backups.list_backups()] == [meta["id"]]
    assert not list(backups.backup_dir.glob("*.tmp"))


def test_restore_into_fresh_database(harness, backups, settings, tmp_path):
    created = harness.create_funded("1.0")
    meta = backups.create_backup()

    fresh = PersistenceService(str(tmp_path / "fresh.db"))
    counts = BackupService(fresh, settings).restore_backup(meta["id"])
    assert counts["sessions"] == 1
    restored = fresh.get_session(created.session_id)
    assert restored.state is SessionState.TRADING
    assert restored.operating_balance == Decimal("0.75")
    # la clave de la wallet viaja en el backup
    original = harness.persistence.get_session_wallet(created.session_id)
    copy = fresh.get_session_wallet(created.session_id)
    assert copy.private_key.get_secret_value() == original.private_key.get_secret_value()


def test_tampered_backup_is_rejected(harness, backups):
    harness.create_funded("1.0")
    meta = backups.create_backup()
    path = backups.backup_dir / f"backup_{meta['id']}.json"
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["data"]["sessions"][0]["operating_balance"] = "99"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(BackupError):
        backups.restore_backup(meta["id"])


def test_missing_or_unreadable_backup(backups):
    with pytest.raises(BackupError):
        backups.restore_backup("nope")
    backups.backup_dir.mkdir(parents=True, exist_ok=True)
    (backups.backup_dir / "backup_broken.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(BackupError):
        backups.restore_backup("broken")
    assert backups.list_backups() == []


def test_retention_keeps_newest(harness, settings):
    service = BackupService(harness.persistence, settings.model_copy(update={"backup_retention": 2}))
    ids = [service.create_backup()["id"] for _ in range(4)]
    kept = [b["id"] for b in service.list_backups()]
    assert len(kept) == 2
    assert set(kept) <= set(ids)
    assert ids[-1] in kept


def test_restore_never_revives_a_depleted_session(harness, backups):
    created = harness.create_funded("1.0")
    sid = created.session_id
    meta = backups.create_backup()

    harness.session(sid).operating_balance = Decimal("0.0009")
    assert harness.orchestrator.trading_tick(sid) is None
    assert harness.persistence.get_session(sid).state is SessionState.DEPLETED

    counts = backups.restore_backup(meta["id"])
    assert counts["sessions"] == 0 and counts["funding_splits"] == 0 and counts["wallets"] == 0
    kept = harness.persistence.get_session(sid)
    assert kept.state is SessionState.DEPLETED
    assert kept.operating_balance == Decimal("0.0009")
    assert harness.persistence.load_all_non_terminal_sessions() == []


def test_restore_keeps_newer_live_progress(harness, backups):
    sid = harness.create_funded("1.0").session_id
    meta = backups.create_backup()
    harness.orchestrator.trading_tick(sid)
    harness.orchestrator.trading_tick(sid)
    progressed = harness.persistence.get_session(sid)

    backups.restore_backup(meta["id"])
    kept = harness.persistence.get_session(sid)
    assert kept.trade_count == progressed.trade_count == 2
    assert kept.operating_balance == progressed.operating_balance
