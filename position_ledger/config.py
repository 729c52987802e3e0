"""
Engine Configuration

Settings are read from an optional JSON file; every key is optional and
falls back to the defaults below.

Example config.json:

    {
        "stale_after_minutes": 60,
        "significant_weight_pct": 10,
        "remove_closed_positions": true,
        "price_fetch_timeout_seconds": 5.0,
        "notification_workers": 2,
        "log_level": "INFO"
    }
"""

import json
import logging
from dataclasses import dataclass, fields
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Tunable policy for the accounting engine and valuation updater."""
    stale_after_minutes: int = 60
    significant_weight_pct: Decimal = Decimal('10')
    remove_closed_positions: bool = True
    price_fetch_timeout_seconds: float = 5.0
    price_fetch_workers: int = 4
    notification_workers: int = 2
    log_level: str = "INFO"

    def __post_init__(self):
        self.significant_weight_pct = Decimal(str(self.significant_weight_pct))
        if self.stale_after_minutes <= 0:
            raise ValueError("stale_after_minutes must be positive")
        if self.price_fetch_timeout_seconds <= 0:
            raise ValueError("price_fetch_timeout_seconds must be positive")
        if self.price_fetch_workers < 1 or self.notification_workers < 1:
            raise ValueError("worker counts must be at least 1")

    @property
    def stale_after(self) -> timedelta:
        return timedelta(minutes=self.stale_after_minutes)

    @classmethod
    def from_dict(cls, data: Dict) -> 'EngineConfig':
        """Build a config from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> 'EngineConfig':
        """
        Load configuration from a JSON file.

        Args:
            config_path: Path to configuration JSON file (defaults only if None)

        Returns:
            EngineConfig instance
        """
        if config_path is None:
            return cls()
        with open(config_path, 'r') as f:
            return cls.from_dict(json.load(f))
