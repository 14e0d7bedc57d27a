import json

from infra.state_store import (
    PORTFOLIO_ATH_FILE,
    REMOVAL_LIST_FILE,
    StateStore,
    portfolio_ath_store,
    removal_list_store,
)


def test_missing_file_returns_default(tmp_path):
    store = StateStore(tmp_path / "nested" / "state.json", default_factory=dict)
    assert store.load() == {}
    assert (tmp_path / "nested").is_dir()


def test_save_replaces_atomically(tmp_path):
    store = StateStore(tmp_path / "state.json", default_factory=list)

    assert store.save([{"coin": "XRP"}])
    assert store.save([{"coin": "ADA"}])

    assert json.loads((tmp_path / "state.json").read_text()) == [{"coin": "ADA"}]
    assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


def test_corrupt_file_returns_default(tmp_path):
    path = tmp_path / "state.json"
    path.write_text('{"active": tr')
    assert StateStore(path, default_factory=dict).load() == {}


def test_unserialisable_value_is_not_written(tmp_path):
    store = StateStore(tmp_path / "state.json", default_factory=dict)
    store.save({"ok": True})

    assert not store.save({"bad": object()})

    assert json.loads((tmp_path / "state.json").read_text()) == {"ok": True}
    assert [p.name for p in tmp_path.iterdir()] == ["state.json"]


def test_named_stores(tmp_path):
    assert removal_list_store(tmp_path).state_file == tmp_path / REMOVAL_LIST_FILE
    assert removal_list_store(tmp_path).load() == []
    assert portfolio_ath_store(tmp_path).state_file == tmp_path / PORTFOLIO_ATH_FILE
    assert portfolio_ath_store(tmp_path).load() == {}
