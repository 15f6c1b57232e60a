"""
Configuration management using pydantic-settings.
"""

from pathlib import Path
from typing import Literal

from pepecore.constants import (
    DEFAULT_DUST_THRESHOLD,
    DEFAULT_FEE_RATE,
    P2PKH_INPUT_SIZE,
    P2PKH_OUTPUT_SIZE,
    TRANSACTION_PAGE_SIZE,
    TX_OVERHEAD_SIZE,
)
from pepecore.models import ChainParams, get_chain_params
from pepewallet.backends.mypepe import DEFAULT_INDEXER_URL, DEFAULT_TIMEOUT
from pepewallet.wallet.tx_builder import FeePolicy
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PEPE_", env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    network: Literal["pepecoin"] = "pepecoin"

    indexer_url: str = DEFAULT_INDEXER_URL
    indexer_timeout: float = DEFAULT_TIMEOUT

    data_dir: Path = Path.home() / ".mypepe"

    log_level: str = "INFO"

    # Fee policy (smallest units per byte, sizes in bytes)
    fee_rate: int = DEFAULT_FEE_RATE
    input_size: int = P2PKH_INPUT_SIZE
    output_size: int = P2PKH_OUTPUT_SIZE
    overhead_size: int = TX_OVERHEAD_SIZE
    dust_threshold: int = DEFAULT_DUST_THRESHOLD

    transaction_page_size: int = TRANSACTION_PAGE_SIZE
    price_currency: str = "usd"

    @property
    def chain_params(self) -> ChainParams:
        return get_chain_params(self.network)

    @property
    def local_store_path(self) -> Path:
        return self.data_dir / "local.json"

    def fee_policy(self) -> FeePolicy:
        return FeePolicy(
            fee_rate=self.fee_rate,
            input_size=self.input_size,
            output_size=self.output_size,
            overhead_size=self.overhead_size,
            dust_threshold=self.dust_threshold,
        )


def get_settings() -> Settings:
    return Settings()
