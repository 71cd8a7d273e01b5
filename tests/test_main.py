"""Tests for CLI argument parsing."""

from pathlib import Path

import pytest

from ethconsole.common.config import HOLESKY, MAINNET
from ethconsole.main import build_parser, settings_from_args


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args(["--rpc-url", "http://localhost:8545"])
        settings = settings_from_args(args)
        assert settings.rpc_url == "http://localhost:8545"
        assert settings.network == MAINNET
        assert settings.consensus_rpc is None
        assert settings.lookup_signatures
        assert not settings.follow_proxies
        assert settings.port == 8000

    def test_rpc_url_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_overrides(self):
        args = build_parser().parse_args([
            "--rpc-url", "http://localhost:8545",
            "--network", "holesky",
            "--poll-interval", "2.5",
            "--follow-proxies",
            "--max-proxy-hops", "3",
            "--no-signature-lookup",
            "--cache-surfaces",
            "--generation-model", "local-model",
            "--keystore", "/tmp/ethconsole-keys.json",
            "--port", "9000",
        ])
        settings = settings_from_args(args)
        assert settings.network == HOLESKY
        assert settings.poll_interval == 2.5
        assert settings.follow_proxies
        assert settings.max_proxy_hops == 3
        assert not settings.lookup_signatures
        assert settings.cache_surfaces
        assert settings.generation_model == "local-model"
        assert settings.keystore_path == Path("/tmp/ethconsole-keys.json")
        assert settings.port == 9000

    def test_unknown_network(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--rpc-url", "x", "--network", "goerli"])
