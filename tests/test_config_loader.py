from pathlib import Path

import pytest

from shared.config.config_loader import load_config
from shared.config.schema import MainConfig, SniperConfig


def test_load_default_config():
    cfg_path = Path("config/config.yml")
    assert cfg_path.exists(), "示例配置缺失"
    cfg = load_config(str(cfg_path), load_env=False)
    assert isinstance(cfg, MainConfig)
    assert cfg.symbol == "BTCUSDT"
    assert cfg.instance_symbols == ["BTCUSDT"]
    assert cfg.strategy == SniperConfig()
    assert cfg.backtest is not None
    assert cfg.backtest.symbol == "BTCUSDT"
    assert cfg.backtest.interval == cfg.timeframe


def test_env_expansion_and_mode_normalization(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SNIPER_SYMBOL", "ETHUSDT")
    cfg_file = tmp_path / "config.yml"
    cfg_file.write_text(
        "symbol: ${SNIPER_SYMBOL}\n"
        "symbols: [ETHUSDT, SOLUSDT]\n"
        "mode: DRY_RUN\n"
        "strategy:\n"
        "  use_scalp_mode: true\n"
        "  risk_per_trade: 5\n",
        encoding="utf-8",
    )
    cfg = load_config(str(cfg_file), load_env=False)
    assert cfg.symbol == "ETHUSDT"
    assert cfg.mode == "dry-run"
    assert cfg.instance_symbols == ["ETHUSDT", "SOLUSDT"]
    assert cfg.strategy.use_scalp_mode is True
    assert cfg.strategy.risk_per_trade == 5


def test_dotenv_file_is_loaded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("SNIPER_TEST_SYMBOL", raising=False)
    (tmp_path / ".env").write_text("SNIPER_TEST_SYMBOL='BNBUSDT'\n", encoding="utf-8")
    cfg_file = tmp_path / "config.yml"
    cfg_file.write_text("symbol: ${SNIPER_TEST_SYMBOL}\n", encoding="utf-8")
    cfg = load_config(str(cfg_file))
    assert cfg.symbol == "BNBUSDT"
    monkeypatch.delenv("SNIPER_TEST_SYMBOL", raising=False)


def test_missing_env_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("SNIPER_MISSING", raising=False)
    cfg_file = tmp_path / "config.yml"
    cfg_file.write_text("symbol: ${SNIPER_MISSING}\n", encoding="utf-8")
    with pytest.raises(ValueError) as exc:
        load_config(str(cfg_file), load_env=False)
    assert "Missing environment variable" in str(exc.value)


def test_unknown_keys_and_bad_values_rejected(tmp_path: Path):
    cfg_file = tmp_path / "config.yml"
    cfg_file.write_text("symbol: BTCUSDT\nstrategy:\n  lenght: 6\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(cfg_file), load_env=False)

    cfg_file.write_text("symbol: BTCUSDT\nstrategy:\n  fast_multiplier: 10\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(cfg_file), load_env=False)


def test_missing_file_raises():
    with pytest.raises(FileNotFoundError):
        load_config("config/does-not-exist.yml")


def test_sniper_config_is_immutable_and_validated():
    cfg = SniperConfig()
    with pytest.raises(Exception):
        cfg.period = 10  # type: ignore[misc]
    with pytest.raises(ValueError):
        SniperConfig(risk_per_trade=0)
    with pytest.raises(ValueError):
        SniperConfig(risk_per_trade=150)
    assert SniperConfig(use_leverage=True, leverage_amount=3).effective_leverage == 3
    assert SniperConfig(use_leverage=False, leverage_amount=3).effective_leverage == 1.0
