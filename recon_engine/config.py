"""Configuration management for the reconciliation engine."""
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class MatchingConfig:
    """Matching engine configuration."""
    # Largest variance that still counts as a partial settlement
    partial_tolerance_amount: Decimal = field(
        default_factory=lambda: Decimal(os.getenv("PARTIAL_TOLERANCE_AMOUNT", "10"))
    )
    partial_tolerance_percent: Decimal = field(
        default_factory=lambda: Decimal(os.getenv("PARTIAL_TOLERANCE_PERCENT", "0"))
    )
    lookback_days: int = field(
        default_factory=lambda: int(os.getenv("MATCH_LOOKBACK_DAYS", "7"))
    )
    lookahead_days: int = field(
        default_factory=lambda: int(os.getenv("MATCH_LOOKAHEAD_DAYS", "7"))
    )
    lock_ttl_seconds: int = field(
        default_factory=lambda: int(os.getenv("MATCHING_LOCK_TTL_SECONDS", "900"))
    )
    max_suggestions: int = field(
        default_factory=lambda: int(os.getenv("MAX_SUGGESTIONS", "5"))
    )
    # Weights for scoring candidates (must sum to 1.0)
    weight_amount: float = 0.40
    weight_date: float = 0.25
    weight_reference: float = 0.20
    weight_counterparty: float = 0.15

    def partial_tolerance_for(self, amount: Decimal) -> Decimal:
        """Absolute partial tolerance for a given transaction amount."""
        percent_tolerance = abs(amount) * self.partial_tolerance_percent / Decimal("100")
        return max(self.partial_tolerance_amount, percent_tolerance)


@dataclass
class ImportConfig:
    """Statement import configuration."""
    workers: int = field(
        default_factory=lambda: int(os.getenv("IMPORT_WORKERS", "4"))
    )
    dayfirst: bool = field(
        default_factory=lambda: _env_bool("STATEMENT_DAYFIRST", "true")
    )


@dataclass
class FeedConfig:
    """Expected events feed (ledger/invoicing collaborator) configuration."""
    base_url: str = field(default_factory=lambda: os.getenv("EVENTS_FEED_URL", ""))
    token: str = field(default_factory=lambda: os.getenv("EVENTS_FEED_TOKEN", ""))
    timeout: int = field(
        default_factory=lambda: int(os.getenv("EVENTS_FEED_TIMEOUT", "30"))
    )
    notify_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("NOTIFY_MAX_ATTEMPTS", "5"))
    )

    def is_configured(self) -> bool:
        return bool(self.base_url)


@dataclass
class Config:
    """Main application configuration."""
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    importer: ImportConfig = field(default_factory=ImportConfig)
    feed: FeedConfig = field(default_factory=FeedConfig)
    database_url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./reconciliation.db")
    )
    rules_file: Optional[Path] = field(
        default_factory=lambda: Path(os.environ["RULES_FILE"]) if os.getenv("RULES_FILE") else None
    )
    reports_dir: Path = field(
        default_factory=lambda: Path(os.getenv("REPORTS_DIR", "./reports"))
    )


# Global config instance
config = Config()
