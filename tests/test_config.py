"""Tests for environment-driven configuration."""

from decimal import Decimal

import pytest

import config as config_module
from config import Config, ConfigError, get_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ('DATABASE_URL', 'TELEGRAM_BOT_TOKEN', 'ADMIN_CHAT_ID', 'DEFAULT_FEE_PERCENT',
                'DEFAULT_FEE_BEARER', 'API_PORT', 'LOG_LEVEL', 'DEPOSIT_CODE_PREFIX'):
        monkeypatch.delenv(key, raising=False)


def test_defaults():
    cfg = Config()

    assert cfg.default_fee_percent == Decimal('5')
    assert cfg.default_dispute_hours == 24
    assert cfg.default_fee_bearer == 'seller'
    assert cfg.deposit_code_prefix == 'NAP'
    assert cfg.has_database_config is False
    assert cfg.has_telegram_config is False


def test_values_from_environment(monkeypatch):
    monkeypatch.setenv('DATABASE_URL', 'postgresql://escrow@localhost/escrow')
    monkeypatch.setenv('TELEGRAM_BOT_TOKEN', '123:abc')
    monkeypatch.setenv('ADMIN_CHAT_ID', '-1001234')
    monkeypatch.setenv('DEFAULT_FEE_BEARER', 'SPLIT')
    monkeypatch.setenv('DEPOSIT_CODE_PREFIX', 'topup')

    cfg = Config()

    assert cfg.has_database_config
    assert cfg.has_telegram_config
    assert cfg.default_fee_bearer == 'split'
    assert cfg.deposit_code_prefix == 'TOPUP'
    assert '123:abc' not in repr(cfg)


def test_env_file_is_loaded(tmp_path, monkeypatch):
    env_file = tmp_path / 'escrow.env'
    env_file.write_text('DEFAULT_FEE_PERCENT=2.5\n', encoding='utf-8')
    # Registers the variable with monkeypatch so the value loaded from the file is undone
    monkeypatch.setenv('DEFAULT_FEE_PERCENT', '5')
    monkeypatch.delenv('DEFAULT_FEE_PERCENT')

    assert Config(str(env_file)).default_fee_percent == Decimal('2.5')


@pytest.mark.parametrize('key, value', [
    ('DEFAULT_FEE_PERCENT', '120'),
    ('DEFAULT_FEE_PERCENT', 'five'),
    ('DEFAULT_FEE_BEARER', 'platform'),
    ('API_PORT', '70000'),
    ('API_PORT', 'http'),
    ('LOG_LEVEL', 'LOUD'),
    ('ADMIN_CHAT_ID', 'ops-channel'),
])
def test_invalid_values_raise(monkeypatch, key, value):
    monkeypatch.setenv(key, value)

    with pytest.raises(ConfigError):
        Config()


def test_get_config_caches_until_reload(monkeypatch):
    monkeypatch.setattr(config_module, '_config_instance', None)

    first = get_config()
    assert get_config() is first
    assert get_config(reload=True) is not first
