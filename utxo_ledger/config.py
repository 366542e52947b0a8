"""
Engine configuration.

Values come from keyword arguments, a JSON file, or UTXO_LEDGER_*
environment variables:

    UTXO_LEDGER_ATTESTOR_KEY        hex private key of the attestor
    UTXO_LEDGER_TRUSTED_SIGNER      address the vault trusts
    UTXO_LEDGER_STORE_DIR           directory of the encrypted store
    UTXO_LEDGER_STORE_SECRET        hex master secret of the store
    UTXO_LEDGER_RECEIPT_TIMEOUT     seconds to wait for a receipt
    UTXO_LEDGER_NONCE_RETRIES       resubmissions after a nonce conflict
    UTXO_LEDGER_MAX_SPLIT_OUTPUTS   outputs allowed in one split
    UTXO_LEDGER_VERIFY_HASHES       "1" to cross-check hashes with the vault
    UTXO_LEDGER_MODE                implementation mode ("zk")
    UTXO_LEDGER_LOG_LEVEL           logging level name
"""

from __future__ import annotations
from dataclasses import dataclass, asdict
import json
import logging
import os
from pathlib import Path
from typing import Dict, Mapping, Optional

from .core import ConfigError, MAX_SPLIT_OUTPUTS
from .store import EncryptedLocalStore

logger = logging.getLogger(__name__)

ENV_PREFIX = "UTXO_LEDGER_"

# Implementation modes. One canonical implementation exists per mode.
MODE_ZK = "zk"
SUPPORTED_MODES = (MODE_ZK,)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class EngineConfig:
    """Configuration of an engine and the sessions it opens."""
    attestor_key: Optional[str] = None
    trusted_signer: Optional[str] = None
    store_dir: Optional[str] = None
    store_secret: Optional[str] = None
    receipt_timeout: float = 120.0
    nonce_retry_limit: int = 3
    max_split_outputs: int = MAX_SPLIT_OUTPUTS
    verify_hashes_remotely: bool = False
    mode: str = MODE_ZK
    log_level: str = "INFO"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.mode not in SUPPORTED_MODES:
            raise ConfigError(f"unknown mode {self.mode!r}; supported: {', '.join(SUPPORTED_MODES)}")
        if self.receipt_timeout <= 0:
            raise ConfigError("receipt_timeout must be positive")
        if self.nonce_retry_limit < 0:
            raise ConfigError("nonce_retry_limit must be >= 0")
        if not 1 <= self.max_split_outputs <= MAX_SPLIT_OUTPUTS:
            raise ConfigError(f"max_split_outputs must be in [1, {MAX_SPLIT_OUTPUTS}]")
        if self.store_secret is not None and len(self.store_secret_bytes()) < 16:
            raise ConfigError("store_secret must be at least 16 bytes of hex")
        if logging.getLevelName(self.log_level.upper()) not in (
                logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR, logging.CRITICAL):
            raise ConfigError(f"unknown log level {self.log_level!r}")

    def store_secret_bytes(self) -> bytes:
        if self.store_secret is None:
            raise ConfigError("store_secret is not configured")
        text = self.store_secret[2:] if self.store_secret.startswith("0x") else self.store_secret
        try:
            return bytes.fromhex(text)
        except ValueError as e:
            raise ConfigError("store_secret must be hex") from e

    def open_store(self) -> EncryptedLocalStore:
        """
        Open the encrypted store described by store_dir and store_secret.

        Without store_dir the store keeps its encrypted partitions in memory.

        Raises:
            ConfigError: If store_secret is not configured
        """
        store = EncryptedLocalStore(self.store_secret_bytes(), root=self.store_dir)
        logger.info("opened store at %s", self.store_dir or "<memory>")
        return store

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> EngineConfig:
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        kwargs: Dict[str, object] = {
            "attestor_key": get("ATTESTOR_KEY"),
            "trusted_signer": get("TRUSTED_SIGNER"),
            "store_dir": get("STORE_DIR"),
            "store_secret": get("STORE_SECRET"),
        }
        try:
            if get("RECEIPT_TIMEOUT") is not None:
                kwargs["receipt_timeout"] = float(get("RECEIPT_TIMEOUT"))
            if get("NONCE_RETRIES") is not None:
                kwargs["nonce_retry_limit"] = int(get("NONCE_RETRIES"))
            if get("MAX_SPLIT_OUTPUTS") is not None:
                kwargs["max_split_outputs"] = int(get("MAX_SPLIT_OUTPUTS"))
        except ValueError as e:
            raise ConfigError(f"invalid numeric setting: {e}") from e
        if get("VERIFY_HASHES") is not None:
            kwargs["verify_hashes_remotely"] = get("VERIFY_HASHES").lower() in ("1", "true", "yes")
        if get("MODE") is not None:
            kwargs["mode"] = get("MODE")
        if get("LOG_LEVEL") is not None:
            kwargs["log_level"] = get("LOG_LEVEL")
        return cls(**kwargs)

    @classmethod
    def from_file(cls, path: str) -> EngineConfig:
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"cannot read config {path}: {e}") from e
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigError(f"unknown config keys: {sorted(unknown)}")
        return cls(**data)

    def to_dict(self, redact: bool = True) -> Dict[str, object]:
        data = asdict(self)
        if redact:
            for secret in ("attestor_key", "store_secret"):
                if data[secret] is not None:
                    data[secret] = "***"
        return data


def configure_logging(config: EngineConfig) -> None:
    """Apply the configured level to the package logger."""
    package_logger = logging.getLogger("utxo_ledger")
    package_logger.setLevel(config.log_level.upper())
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)
    logger.debug("logging configured: %s", config.to_dict())
