"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hdfund.errors import DerivationError
from hdfund.models import FundingPolicy
from hdfund.retry import RetryPolicy
from hdfund.wallet.deriver import DEFAULT_PATH_TEMPLATE, validate_template


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # Master seed source
    mnemonic: SecretStr | None = None
    mnemonic_file: Path | None = None
    mnemonic_passphrase: SecretStr = SecretStr("")

    # Accounts
    derivation_path: str = DEFAULT_PATH_TEMPLATE
    account_count: int = Field(default=10, ge=1)
    max_accounts: int = Field(default=1000, ge=1)
    root_index: int = Field(default=0, ge=0)

    # Funding policy (smallest asset unit)
    funding_threshold: int = Field(default=5_000_000, ge=0)
    funding_target: int = Field(default=5_000_000, ge=0)
    reclaim_reserve: int = Field(default=0, ge=0)

    # Node
    rpc_url: str = "http://127.0.0.1:8545"
    rpc_timeout: float = Field(default=30.0, gt=0)
    chain_id: int | None = None
    gas_limit: int = Field(default=21_000, ge=21_000)
    confirmations: int = Field(default=1, ge=1)

    # Scheduling and retries
    poll_interval: float = Field(default=20.0, gt=0)
    poll_concurrency: int = Field(default=8, ge=1)
    reclaim_concurrency: int = Field(default=4, ge=1)
    submit_attempts: int = Field(default=3, ge=1)
    submit_base_delay: float = Field(default=1.0, ge=0)
    confirm_attempts: int = Field(default=5, ge=1)
    confirm_base_delay: float = Field(default=1.0, ge=0)

    log_level: str = "INFO"

    @field_validator("derivation_path")
    @classmethod
    def check_derivation_path(cls, v: str) -> str:
        try:
            validate_template(v)
        except DerivationError as e:
            raise ValueError(str(e)) from e
        return v

    def policy(self) -> FundingPolicy:
        return FundingPolicy(
            threshold=self.funding_threshold,
            target=self.funding_target,
            reserve=self.reclaim_reserve,
            root_index=self.root_index,
        )

    def submit_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.submit_attempts, base_delay=self.submit_base_delay)

    def confirm_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.confirm_attempts, base_delay=self.confirm_base_delay)

    def load_mnemonic(self) -> str:
        """
        Resolve the mnemonic: MNEMONIC first, then the file named by MNEMONIC_FILE.

        Raises:
            ValueError: If no source is configured or the file is missing/empty
        """
        if self.mnemonic is not None and self.mnemonic.get_secret_value().strip():
            return self.mnemonic.get_secret_value().strip()

        if self.mnemonic_file is not None:
            if not self.mnemonic_file.exists():
                raise ValueError(f"Mnemonic file not found: {self.mnemonic_file}")
            mnemonic = self.mnemonic_file.read_text().strip()
            if not mnemonic:
                raise ValueError(f"Mnemonic file is empty: {self.mnemonic_file}")
            return mnemonic

        raise ValueError("Mnemonic required. Set MNEMONIC or MNEMONIC_FILE")


def get_settings(**overrides: object) -> Settings:
    return Settings(**overrides)  # type: ignore[arg-type]
