import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        match_tolerance_percent: int,
        auto_match_min_confidence: float,
        reconcile_interval_minutes: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.match_tolerance_percent = match_tolerance_percent
        self.auto_match_min_confidence = auto_match_min_confidence
        self.reconcile_interval_minutes = reconcile_interval_minutes
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Australia/Perth")
    match_tolerance_percent = int(os.getenv("BUDGET_MATCH_TOLERANCE_PERCENT", "10"))
    auto_match_min_confidence = float(
        os.getenv("BUDGET_AUTO_MATCH_MIN_CONFIDENCE", "0.6")
    )
    reconcile_interval_minutes = int(
        os.getenv("BUDGET_RECONCILE_INTERVAL_MINUTES", "60")
    )
    log_level = os.getenv("BUDGET_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        match_tolerance_percent=match_tolerance_percent,
        auto_match_min_confidence=auto_match_min_confidence,
        reconcile_interval_minutes=reconcile_interval_minutes,
        log_level=log_level,
    )
