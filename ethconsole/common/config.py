"""
Runtime configuration and persisted keys.

Network presets mirror the networks the upstream light client can follow.
Settings hold everything the session needs; the KeyStore keeps the few
user-entered strings (contract address, API keys) across restarts.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Network presets
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NetworkConfig:
    chain_id: int
    chain_name: str
    consensus_rpc: str
    sourcify_chain: Optional[int] = None


MAINNET = NetworkConfig(
    chain_id=1,
    chain_name="mainnet",
    consensus_rpc="https://www.lightclientdata.org",
    sourcify_chain=1,
)

SEPOLIA = NetworkConfig(
    chain_id=11155111,
    chain_name="sepolia",
    consensus_rpc="http://unstable.sepolia.beacon-api.nimbus.team",
    sourcify_chain=11155111,
)

HOLESKY = NetworkConfig(
    chain_id=17000,
    chain_name="holesky",
    consensus_rpc="http://testing.holesky.beacon-api.nimbus.team",
    sourcify_chain=17000,
)

NETWORK_CONFIGS: dict[str, NetworkConfig] = {
    "mainnet": MAINNET,
    "sepolia": SEPOLIA,
    "holesky": HOLESKY,
}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_MAX_PROXY_HOPS = 8
DEFAULT_MAX_INSTRUCTIONS = 100_000
DEFAULT_GENERATION_URL = "https://api.openai.com/v1"
DEFAULT_GENERATION_MODEL = "gpt-4o"
DEFAULT_KEYSTORE_PATH = Path.home() / ".ethconsole" / "keys.json"


@dataclass
class Settings:
    rpc_url: str = "https://eth-mainnet.g.alchemy.com/v2/"
    network: NetworkConfig = field(default_factory=lambda: MAINNET)
    consensus_rpc: Optional[str] = None

    poll_interval: float = DEFAULT_POLL_INTERVAL
    follow_proxies: bool = False
    max_proxy_hops: int = DEFAULT_MAX_PROXY_HOPS
    max_instructions: int = DEFAULT_MAX_INSTRUCTIONS
    lookup_signatures: bool = True

    generation_url: str = DEFAULT_GENERATION_URL
    generation_model: str = DEFAULT_GENERATION_MODEL
    cache_surfaces: bool = False
    request_timeout: float = 30.0

    keystore_path: Path = DEFAULT_KEYSTORE_PATH
    host: str = "127.0.0.1"
    port: int = 8000

    @property
    def chain_id(self) -> int:
        return self.network.chain_id

    @property
    def effective_consensus_rpc(self) -> str:
        return self.consensus_rpc or self.network.consensus_rpc


# ---------------------------------------------------------------------------
# Persisted keys
# ---------------------------------------------------------------------------

KEY_CONTRACT_ADDRESS = "contract_address"
KEY_OPENAI_API_KEY = "openai_api_key"
KEY_ETHERSCAN_API_KEY = "etherscan_api_key"

PERSISTED_KEYS = (KEY_CONTRACT_ADDRESS, KEY_OPENAI_API_KEY, KEY_ETHERSCAN_API_KEY)


class KeyStore:
    """Flat string key/value store persisted as a JSON object.

    Values are opaque strings. Unknown keys are rejected so typos do not
    silently create new entries.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._values: dict[str, str] = {}

    def load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read key store %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring malformed key store %s", self.path)
            return {}
        self._values = {
            k: str(v) for k, v in data.items() if k in PERSISTED_KEYS and v is not None
        }
        return dict(self._values)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._values.get(key, default)

    def set(self, key: str, value: Optional[str]) -> None:
        if key not in PERSISTED_KEYS:
            raise KeyError(f"Unknown persisted key: {key}")
        if value:
            self._values[key] = value
        else:
            self._values.pop(key, None)
        self._save()

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(self._values, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)
