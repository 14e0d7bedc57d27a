import yaml

from core.models import TrailingStopState
from infra.metrics import MetricsRecorder
from runner.main_loop import JOB_INVEST, JOB_REBALANCE, JOB_TRAILING_STOP, PortfolioBot, main
from tests.helpers import make_config


def _write_config(tmp_path, **overrides):
    raw = {
        "exchange": {"api_key": "key", "api_secret": "secret", "order_delay_seconds": 0},
        "include": [],
        "exclude": [],
        "state": {"data_dir": str(tmp_path / "data")},
        "logging": {"file": str(tmp_path / "logs" / "bot.log")},
    }
    raw.update(overrides)
    path = tmp_path / "bot.yaml"
    path.write_text(yaml.safe_dump(raw))
    return path


def test_bot_exposes_three_jobs(tmp_path, exchange, market_cap, notifier):
    bot = PortfolioBot(make_config(tmp_path), exchange=exchange, market_cap=market_cap,
                       notifier=notifier, install_signals=False)

    assert set(bot.jobs()) == {JOB_INVEST, JOB_REBALANCE, JOB_TRAILING_STOP}
    assert bot.executor.dry_run is False


def test_run_once_records_job_and_trades(tmp_path, exchange, market_cap, notifier):
    exchange.add_coin("BTC", 50000, balance=1.0)
    exchange.add_coin("ETH", 3000, balance=10.0)
    market_cap.top_coins = ["BTC", "ETH"]
    bot = PortfolioBot(make_config(tmp_path), exchange=exchange, market_cap=market_cap,
                       notifier=notifier, install_signals=False)

    bot.run_once(JOB_REBALANCE)

    assert len(exchange.orders) == 2
    assert bot.metrics.last_job().job == JOB_REBALANCE
    assert bot.metrics.last_job().status == "ok"
    assert bot.metrics.order_counts() == {"SELL:filled": 1, "BUY:filled": 1}
    assert bot.metrics.removal_ledger_size() == 0


def test_trailing_stop_job_reports_state(tmp_path, exchange, market_cap, notifier):
    bot = PortfolioBot(make_config(tmp_path), exchange=exchange, market_cap=market_cap,
                       notifier=notifier, install_signals=False)
    assert bot.trailing_stop.check() == TrailingStopState.DISABLED


def test_dry_run_config_never_sends_orders(tmp_path, exchange, market_cap, notifier):
    exchange.add_coin("BTC", 50000, balance=1.0)
    exchange.add_coin("ETH", 3000, balance=10.0)
    exchange.set_cash(20000)
    market_cap.top_coins = ["BTC", "ETH"]
    bot = PortfolioBot(make_config(tmp_path, dry_run=True), exchange=exchange, market_cap=market_cap,
                       notifier=notifier, install_signals=False)

    bot.run_once(JOB_REBALANCE)

    assert exchange.orders == []
    assert MetricsRecorder().order_counts() == {"SELL:dry_run": 1, "BUY:dry_run": 1}


def test_main_rejects_invalid_config(tmp_path, caplog):
    path = _write_config(tmp_path, weights={"BTC": 70, "ETH": 40})

    assert main(["--config", str(path)]) == 1
    assert "CONFIGURATION VALIDATION FAILED" in caplog.text
    assert "sum of weights exceeds 100%" in caplog.text


def test_main_missing_config(tmp_path):
    assert main(["--config", str(tmp_path / "absent.yaml")]) == 1


def test_main_once_runs_single_job(tmp_path, monkeypatch, exchange, market_cap):
    exchange.add_coin("BTC", 50000, balance=1.0)
    exchange.add_coin("ETH", 3000, balance=10.0)
    market_cap.top_coins = ["BTC", "ETH"]
    monkeypatch.setattr("runner.main_loop.CryptoComExchange", lambda **kwargs: exchange)
    monkeypatch.setattr("runner.main_loop.CoinGeckoClient", lambda **kwargs: market_cap)
    monkeypatch.setattr("runner.main_loop.signal.signal", lambda *args: None)
    path = _write_config(tmp_path)

    assert main(["--config", str(path), "--once", JOB_REBALANCE]) == 0
    assert [o.side for o in exchange.orders] == ["SELL", "BUY"]
    assert (tmp_path / "data" / "CoinRemovalList.json").exists()


def test_main_fails_startup_check(tmp_path, monkeypatch, exchange, market_cap):
    exchange.fail_balances = True
    monkeypatch.setattr("runner.main_loop.CryptoComExchange", lambda **kwargs: exchange)
    monkeypatch.setattr("runner.main_loop.CoinGeckoClient", lambda **kwargs: market_cap)
    monkeypatch.setattr("runner.main_loop.signal.signal", lambda *args: None)

    assert main(["--config", str(_write_config(tmp_path)), "--once", JOB_INVEST]) == 1
    assert exchange.orders == []
