"""
tapwallet configuration.

One explicit object, loaded once at the edge (CLI or agent host) and passed
into constructors. Environment variables are read only here.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .ledger import BASE_MAINNET, USDC_BASE_MAINNET
from .limits import SpendLimits
from .registry import DEFAULT_REGISTRY_URL
from .storage import atomic_write_json, ensure_private_dir, read_json

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".tapwallet"
DEFAULT_RPC_URL = "https://mainnet.base.org"

ENV_HOME = "TAPWALLET_HOME"
ENV_REGISTRY_URL = "TAPWALLET_REGISTRY_URL"
ENV_TAP_DEMO = "TAPWALLET_TAP_DEMO"
ENV_RPC_URL = "TAPWALLET_RPC_URL"
ENV_AUDIT_KEY = "TAPWALLET_AUDIT_HMAC_KEY"

_TRUE = {"1", "true", "yes", "on"}


@dataclass
class TapWalletConfig:
    home: Path = DEFAULT_HOME
    registry_url: str = DEFAULT_REGISTRY_URL
    tap_demo: bool = False
    network: str = BASE_MAINNET
    rpc_url: str = DEFAULT_RPC_URL
    usdc_contract: str = USDC_BASE_MAINNET
    timeout_seconds: float = 30.0
    verification_poll_interval_seconds: float = 5.0
    verification_timeout_seconds: float = 600.0
    limits: SpendLimits = field(default_factory=SpendLimits)
    # Never written to config.json
    audit_hmac_key: Optional[str] = field(default=None, repr=False)

    @property
    def config_path(self) -> Path:
        return self.home / "config.json"

    @property
    def secrets_dir(self) -> Path:
        # Sibling of the profile dir: ~/.tapwallet -> ~/.tapwallet-secrets
        return self.home.with_name(self.home.name + "-secrets")

    @property
    def keys_dir(self) -> Path:
        return self.secrets_dir / "keys"

    @property
    def credentials_dir(self) -> Path:
        return self.home / "tap"

    @property
    def ledger_dir(self) -> Path:
        return self.home / "ledger"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def audit_key_path(self) -> Path:
        return self.secrets_dir / "audit_hmac.key"

    def to_dict(self) -> dict:
        return {
            "registry_url": self.registry_url,
            "tap_demo": self.tap_demo,
            "network": self.network,
            "rpc_url": self.rpc_url,
            "usdc_contract": self.usdc_contract,
            "timeout_seconds": self.timeout_seconds,
            "verification_poll_interval_seconds": self.verification_poll_interval_seconds,
            "verification_timeout_seconds": self.verification_timeout_seconds,
            "limits": self.limits.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: dict, home: Path) -> TapWalletConfig:
        defaults = cls(home=home)
        return cls(
            home=home,
            registry_url=str(d.get("registry_url", defaults.registry_url)),
            tap_demo=bool(d.get("tap_demo", defaults.tap_demo)),
            network=str(d.get("network", defaults.network)),
            rpc_url=str(d.get("rpc_url", defaults.rpc_url)),
            usdc_contract=str(d.get("usdc_contract", defaults.usdc_contract)),
            timeout_seconds=float(d.get("timeout_seconds", defaults.timeout_seconds)),
            verification_poll_interval_seconds=float(
                d.get("verification_poll_interval_seconds", defaults.verification_poll_interval_seconds)
            ),
            verification_timeout_seconds=float(
                d.get("verification_timeout_seconds", defaults.verification_timeout_seconds)
            ),
            limits=SpendLimits.from_dict(d.get("limits") or {}),
        )

    @classmethod
    def load(
        cls,
        home: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> TapWalletConfig:
        """Read config.json under the profile home, then apply env overrides."""
        env = os.environ if environ is None else environ
        if home is None:
            home = Path(env[ENV_HOME]).expanduser() if env.get(ENV_HOME) else DEFAULT_HOME

        raw = read_json(home / "config.json")
        if raw is None and (home / "config.json").exists():
            logger.warning("Ignoring unreadable config file at %s", home / "config.json")
        config = cls.from_dict(raw or {}, home=home)

        if env.get(ENV_REGISTRY_URL):
            config.registry_url = env[ENV_REGISTRY_URL]
        if env.get(ENV_TAP_DEMO):
            config.tap_demo = env[ENV_TAP_DEMO].strip().lower() in _TRUE
        if env.get(ENV_RPC_URL):
            config.rpc_url = env[ENV_RPC_URL]
        if env.get(ENV_AUDIT_KEY):
            config.audit_hmac_key = env[ENV_AUDIT_KEY]
        return config

    def save(self) -> Path:
        ensure_private_dir(self.home)
        atomic_write_json(self.config_path, self.to_dict())
        return self.config_path
