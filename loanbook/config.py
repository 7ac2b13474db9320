"""
Configuration management using Pydantic Settings.
All matching thresholds are loaded from environment variables with tuned defaults.
"""

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_BASE_PATH = Path(os.environ.get(
    "LOANBOOK_BASE_PATH",
    Path.home() / "Documents" / "loanbook"
))
ENV_FILE_PATH = APP_BASE_PATH / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: str = Field(default="development")
    app_debug: bool = Field(default=False)
    app_log_level: str = Field(default="INFO")

    # Server
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)

    # Storage
    data_dir: Path = Field(default=Path("./data"))
    patterns_file: Path = Field(default=Path("./data/reconciliation_patterns.json"))
    reports_dir: Path = Field(default=Path("./data/reports"))

    # Match Scorer
    exact_tolerance_pct: float = Field(default=0.1)
    close_tolerance_pct: float = Field(default=5.0)
    name_boost_weight: float = Field(default=0.15)
    name_boost_cap: float = Field(default=0.99)
    group_name_boost_weight: float = Field(default=0.05)
    group_score_cap: float = Field(default=0.95)

    # Suggestion cascade
    acceptance_floor: float = Field(default=0.35)
    grouped_search_ceiling: float = Field(default=0.9)
    pattern_lookup_ceiling: float = Field(default=0.7)
    expense_keyword_ceiling: float = Field(default=0.6)
    expense_keyword_confidence: float = Field(default=0.65)
    borrower_name_ceiling: float = Field(default=0.5)
    borrower_name_threshold: float = Field(default=0.5)
    investor_name_ceiling: float = Field(default=0.45)
    investor_name_threshold: float = Field(default=0.4)
    enable_shared_contact_grouping: bool = Field(default=True)

    # Candidate Grouper
    group_tolerance_pct: float = Field(default=1.0)
    group_max_size: int = Field(default=5)
    group_anchor_window_days: int = Field(default=3)
    group_target_window_days: int = Field(default=14)
    repayment_group_window_days: int = Field(default=3)

    # Pattern Store
    pattern_keyword_threshold: float = Field(default=0.5)
    pattern_secondary_threshold: float = Field(default=0.3)
    pattern_amount_band: float = Field(default=0.2)
    pattern_initial_confidence: float = Field(default=0.6)
    pattern_reinforce_step: float = Field(default=0.1)
    pattern_auto_reinforce_step: float = Field(default=0.05)
    pattern_similarity_threshold: float = Field(default=0.7)

    # Orchestrator
    balance_tolerance_cents: int = Field(default=1)

    def within_balance(self, left_cents: int, right_cents: int) -> bool:
        """Check whether two totals agree within the balance tolerance."""
        return abs(left_cents - right_cents) <= self.balance_tolerance_cents


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
