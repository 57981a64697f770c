#!/usr/bin/env python
"""
Tests for configuration loading and the symbol registry
"""
import sys
sys.path.insert(0, '.')

import pytest

from config import Config, config
from config.symbols import SymbolConfig, SymbolRegistry, TradeMode, load_symbols, parse_symbol
from strategy.errors import ConfigurationError


def test_bundled_config_defines_four_symbol_allocation():
    registry = load_symbols(config)
    assert registry.symbols() == ['IP/USDT:USDT', 'PEOPLE/USDT:USDT', 'AVNT/USDT:USDT', '0G/USDT:USDT']
    assert registry.total_allocation == pytest.approx(1.0)
    assert registry.planned_margin(config.trading['leverage']) == pytest.approx(500.0)
    assert registry.get('IP/USDT:USDT').mode is TradeMode.LONG_ONLY
    assert registry.get('PEOPLE/USDT:USDT').mode is TradeMode.LONG_SHORT
    assert registry.get('PEOPLE/USDT:USDT').slow == 34


def test_env_placeholders_resolve_or_become_none(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "exchange:\n"
        "  api_key: ${TEST_TRADER_KEY}\n"
        "  secret: ${TEST_TRADER_MISSING}\n"
        "trading:\n"
        "  leverage: 3\n"
    )
    monkeypatch.setenv('TEST_TRADER_KEY', 'abc')
    monkeypatch.delenv('TEST_TRADER_MISSING', raising=False)
    cfg = Config(str(path))
    assert cfg.exchange['api_key'] == 'abc'
    assert cfg.exchange.get('secret') is None
    assert cfg.trading.leverage == 3
    assert cfg.get('missing') is None


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = tmp_path / 'alt.yaml'
    path.write_text("trading:\n  start_capital: 500\n")
    monkeypatch.setenv('TRADER_CONFIG', str(path))
    assert Config().trading['start_capital'] == 500


def test_missing_config_file_raises(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'absent.yaml'))


def test_parse_symbol_applies_default_periods():
    cfg = parse_symbol(
        {'symbol': 'IP', 'notional': 1250, 'mode': 'long_short', 'allocation': 0.5},
        {'default_fast': 10, 'default_slow': 30, 'default_signal': 7},
    )
    assert (cfg.fast, cfg.slow, cfg.signal) == (10, 30, 7)
    assert cfg.mode is TradeMode.LONG_SHORT
    assert cfg.to_dict()['mode'] == 'LONG_SHORT'


@pytest.mark.parametrize('entry', [
    {'notional': 100},
    {'symbol': 'X', 'notional': -1},
    {'symbol': 'X', 'notional': 100, 'mode': 'SIDEWAYS'},
    {'symbol': 'X', 'notional': 100, 'allocation': 1.5},
    {'symbol': 'X', 'notional': 100, 'fast': -3},
])
def test_parse_symbol_rejects_bad_entries(entry):
    with pytest.raises(ConfigurationError):
        parse_symbol(entry)


def test_registry_rejects_over_allocation():
    with pytest.raises(ConfigurationError):
        SymbolRegistry([
            SymbolConfig('A', 100.0, TradeMode.LONG_ONLY, 0.7),
            SymbolConfig('B', 100.0, TradeMode.LONG_ONLY, 0.4),
        ])


def test_registry_rejects_duplicates_and_unknown_symbols():
    with pytest.raises(ConfigurationError):
        SymbolRegistry([
            SymbolConfig('A', 100.0, TradeMode.LONG_ONLY, 0.1),
            SymbolConfig('A', 200.0, TradeMode.LONG_ONLY, 0.1),
        ])
    registry = SymbolRegistry([SymbolConfig('A', 100.0, TradeMode.LONG_ONLY, 0.1)])
    assert 'A' in registry
    assert 'B' not in registry
    with pytest.raises(ConfigurationError):
        registry.get('B')


def test_bundled_config_validates():
    config.validate()
    assert config.section('trading')['stop_loss_pct'] == 0.22
    assert len(config.section('nonexistent')) == 0


@pytest.mark.parametrize('body', [
    "trading:\n  leverage: 5\nsymbols:\n  - symbol: A\n    notional: 1\n",
    "exchange:\n  id: bitget\ntrading:\n  leverage: 0\nsymbols:\n  - symbol: A\n    notional: 1\n",
    "exchange:\n  id: bitget\ntrading:\n  stop_loss_pct: 1.5\nsymbols:\n  - symbol: A\n    notional: 1\n",
    "exchange:\n  id: bitget\ntrading:\n  leverage: 5\nsymbols:\n  symbol: A\n",
])
def test_validate_rejects_incomplete_config(tmp_path, body):
    path = tmp_path / 'bad.yaml'
    path.write_text(body)
    with pytest.raises(ConfigurationError):
        Config(str(path)).validate()
