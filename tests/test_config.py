"""Tests for settings, network presets and the key store."""

import json
import logging

import pytest

from ethconsole.common.config import (
    KEY_CONTRACT_ADDRESS,
    KEY_OPENAI_API_KEY,
    NETWORK_CONFIGS,
    SEPOLIA,
    KeyStore,
    Settings,
)


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.chain_id == 1
        assert settings.poll_interval == 10.0
        assert not settings.follow_proxies
        assert not settings.cache_surfaces

    def test_consensus_rpc_override(self):
        settings = Settings(network=SEPOLIA)
        assert settings.chain_id == 11155111
        assert settings.effective_consensus_rpc == SEPOLIA.consensus_rpc
        settings.consensus_rpc = "http://localhost:5052"
        assert settings.effective_consensus_rpc == "http://localhost:5052"

    def test_presets(self):
        assert set(NETWORK_CONFIGS) == {"mainnet", "sepolia", "holesky"}


class TestKeyStore:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "keys.json"
        store = KeyStore(path)
        store.set(KEY_CONTRACT_ADDRESS, "0x" + "11" * 20)
        store.set(KEY_OPENAI_API_KEY, "sk-test")

        reloaded = KeyStore(path)
        assert reloaded.load() == {
            KEY_CONTRACT_ADDRESS: "0x" + "11" * 20,
            KEY_OPENAI_API_KEY: "sk-test",
        }

    def test_missing_file(self, tmp_path):
        store = KeyStore(tmp_path / "absent.json")
        assert store.load() == {}
        assert store.get(KEY_OPENAI_API_KEY) is None

    def test_unknown_key(self, keystore):
        with pytest.raises(KeyError):
            keystore.set("private_key", "0x01")

    def test_empty_value_removes(self, keystore):
        keystore.set(KEY_OPENAI_API_KEY, "sk-test")
        keystore.set(KEY_OPENAI_API_KEY, "")
        assert keystore.get(KEY_OPENAI_API_KEY) is None
        assert json.loads(keystore.path.read_text()) == {}

    def test_unknown_entries_dropped_on_load(self, tmp_path):
        path = tmp_path / "keys.json"
        path.write_text(json.dumps({KEY_OPENAI_API_KEY: "sk-test", "extra": "x"}))
        assert KeyStore(path).load() == {KEY_OPENAI_API_KEY: "sk-test"}

    def test_malformed_file(self, tmp_path, caplog):
        path = tmp_path / "keys.json"
        path.write_text("{broken")
        with caplog.at_level(logging.WARNING, logger="ethconsole.common.config"):
            assert KeyStore(path).load() == {}
        assert "Could not read key store" in caplog.text

    def test_non_object_file(self, tmp_path):
        path = tmp_path / "keys.json"
        path.write_text("[1, 2]")
        assert KeyStore(path).load() == {}
