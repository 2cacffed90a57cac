import pytest
from keyring.errors import KeyringError

import utils.credentials as credentials


def test_load_wallet_key_prefers_config(monkeypatch):
    monkeypatch.setenv(credentials.DEFAULT_WALLET_KEY_ENV, "env-key")
    monkeypatch.setattr(
        credentials.keyring,
        "get_password",
        lambda service, username: f"ring-{username}",
    )

    key = credentials.load_wallet_api_key(config={"wallet_api_key": "config-key"})

    assert key == "config-key"


def test_load_wallet_key_resolves_placeholder(monkeypatch):
    monkeypatch.setenv("MY_WALLET_KEY", " placeholder-key ")

    key = credentials.load_wallet_api_key(config={"wallet_api_key": "${MY_WALLET_KEY}"})

    assert key == "placeholder-key"


def test_load_wallet_key_uses_env_then_keyring(monkeypatch):
    monkeypatch.setenv(credentials.DEFAULT_WALLET_KEY_ENV, "env-key")
    monkeypatch.setattr(
        credentials.keyring,
        "get_password",
        lambda service, username: f"ring-{username}",
    )
    assert credentials.load_wallet_api_key(config={}) == "env-key"

    monkeypatch.delenv(credentials.DEFAULT_WALLET_KEY_ENV)
    assert credentials.load_wallet_api_key(config={}) == "ring-wallet_api_key"


def test_missing_wallet_key_is_none(monkeypatch):
    monkeypatch.delenv(credentials.DEFAULT_WALLET_KEY_ENV, raising=False)
    monkeypatch.setattr(
        credentials.keyring, "get_password", lambda service, username: None
    )

    assert credentials.load_wallet_api_key() is None


def test_store_wallet_key_uses_keyring(monkeypatch):
    stored = {}

    def fake_set_password(service, username, value):
        stored[(service, username)] = value

    monkeypatch.setattr(credentials.keyring, "set_password", fake_set_password)

    credentials.store_wallet_api_key("token-liquidity", "  secret  ")

    assert stored == {("token-liquidity", "wallet_api_key"): "secret"}


def test_store_wallet_key_errors(monkeypatch):
    def failing_set_password(service, username, value):
        raise KeyringError("no backend")

    monkeypatch.setattr(credentials.keyring, "set_password", failing_set_password)

    with pytest.raises(ValueError):
        credentials.store_wallet_api_key("token-liquidity", "   ")
    with pytest.raises(RuntimeError):
        credentials.store_wallet_api_key("token-liquidity", "secret")
