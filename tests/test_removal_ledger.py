import json
from datetime import timedelta

from core.removal_ledger import Holding, RemovalLedger
from infra.state_store import REMOVAL_LIST_FILE, removal_list_store


def _ledger(tmp_path, clock, grace_hours=24):
    return RemovalLedger(removal_list_store(tmp_path), grace_hours, clock=clock).load()


def test_new_ineligible_holding_gets_grace_period(tmp_path, clock):
    ledger = _ledger(tmp_path, clock)

    due = ledger.scan([Holding("XRP", True)], eligible=["BTC"], excluded=[])

    assert due == []
    assert ledger.get("XRP").execute_at == clock.now + timedelta(hours=24)


def test_dust_holding_is_ignored(tmp_path, clock):
    ledger = _ledger(tmp_path, clock)
    assert ledger.scan([Holding("XRP", False)], eligible=["BTC"], excluded=[]) == []
    assert "XRP" not in ledger


def test_pending_entry_is_not_due(tmp_path, clock):
    """XRP waits out its grace period even though it left the tradable set."""
    ledger = _ledger(tmp_path, clock)
    ledger.add("XRP", now=clock.now - timedelta(hours=1))

    assert ledger.scan([Holding("XRP", True)], eligible=["BTC"], excluded=[]) == []
    assert "XRP" in ledger


def test_excluded_coin_is_due_immediately(tmp_path, clock):
    ledger = _ledger(tmp_path, clock)
    ledger.add("XRP")

    assert ledger.scan([Holding("XRP", True)], eligible=["BTC"], excluded=["XRP"]) == ["XRP"]


def test_excluded_coin_without_entry_is_recorded_and_due(tmp_path, clock):
    ledger = _ledger(tmp_path, clock)
    assert ledger.scan([Holding("DOGE", True)], eligible=[], excluded=["DOGE"]) == ["DOGE"]
    assert "DOGE" in ledger


def test_expired_entry_is_due(tmp_path, clock):
    ledger = _ledger(tmp_path, clock, grace_hours=24)
    ledger.add("XRP")
    clock.advance(hours=24, seconds=1)

    assert ledger.scan([Holding("XRP", True)], eligible=["BTC"], excluded=[]) == ["XRP"]


def test_eligible_coin_entry_is_deleted(tmp_path, clock):
    ledger = _ledger(tmp_path, clock)
    ledger.add("XRP")
    ledger.add("ADA")

    ledger.scan([Holding("XRP", True)], eligible=["XRP", "ADA"], excluded=[])

    assert len(ledger) == 0


def test_ledger_round_trips_through_disk(tmp_path, clock):
    ledger = _ledger(tmp_path, clock)
    ledger.add("XRP")
    ledger.save()

    raw = json.loads((tmp_path / REMOVAL_LIST_FILE).read_text())
    assert raw == [{"coin": "XRP", "execute": (clock.now + timedelta(hours=24)).isoformat()}]

    reloaded = _ledger(tmp_path, clock)
    assert reloaded.get("XRP").execute_at == clock.now + timedelta(hours=24)


def test_load_dedups_and_drops_malformed_entries(tmp_path, clock):
    (tmp_path / REMOVAL_LIST_FILE).write_text(json.dumps([
        {"coin": "XRP", "execute": "2024-01-02T00:00:00+00:00"},
        {"coin": "xrp", "execute": "2030-01-01T00:00:00+00:00"},
        {"coin": "ADA"},
        {"coin": "DOT", "execute": 1704067200000},
    ]))

    ledger = _ledger(tmp_path, clock)

    assert ledger.symbols() == ["XRP", "DOT"]
    assert ledger.get("XRP").execute_at.year == 2024
    assert ledger.get("DOT").execute_at.isoformat() == "2024-01-01T00:00:00+00:00"


def test_corrupt_file_starts_empty(tmp_path, clock):
    (tmp_path / REMOVAL_LIST_FILE).write_text("{not json")
    assert len(_ledger(tmp_path, clock)) == 0
