"""Runtime settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv


def _split_origins(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


@dataclass(frozen=True)
class Settings:
    env: str = "prod"
    data_dir: Path = Path("data")
    allowed_origins: List[str] = field(default_factory=list)
    user_header: str = "X-User-Id"
    finnhub_api_key: Optional[str] = None
    alpha_vantage_api_key: Optional[str] = None
    exchange_rate_api_key: Optional[str] = None
    price_ttl_minutes: int = 4
    log_level: str = "INFO"

    @property
    def is_dev(self) -> bool:
        return self.env in {"dev", "development"}

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        ttl = os.getenv("FORESIGHT_PRICE_TTL_MINUTES", "4")
        try:
            price_ttl_minutes = max(1, int(ttl))
        except ValueError:
            price_ttl_minutes = 4
        return cls(
            env=os.getenv("FORESIGHT_ENV", "prod").lower(),
            data_dir=Path(os.getenv("FORESIGHT_DATA_DIR", "data")),
            allowed_origins=_split_origins(os.getenv("FORESIGHT_ALLOWED_ORIGINS")),
            user_header=os.getenv("FORESIGHT_USER_HEADER", "X-User-Id"),
            finnhub_api_key=os.getenv("FINNHUB_API_KEY") or None,
            alpha_vantage_api_key=os.getenv("ALPHA_VANTAGE_API_KEY") or None,
            exchange_rate_api_key=os.getenv("EXCHANGE_RATE_API_KEY") or None,
            price_ttl_minutes=price_ttl_minutes,
            log_level=os.getenv("FORESIGHT_LOG_LEVEL", "INFO").upper(),
        )
