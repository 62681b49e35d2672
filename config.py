import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_household_id: int,
        default_user_id: int,
        default_currency: str,
        adjustments_update_baseline: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_household_id = default_household_id
        self.default_user_id = default_user_id
        self.default_currency = default_currency
        self.adjustments_update_baseline = adjustments_update_baseline


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budgets.db"
    database_url = os.getenv("BUDGETS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETS_TIMEZONE", "UTC")
    default_household_id = int(os.getenv("BUDGETS_DEFAULT_HOUSEHOLD_ID", "1"))
    default_user_id = int(os.getenv("BUDGETS_DEFAULT_USER_ID", "1"))
    default_currency = os.getenv("BUDGETS_DEFAULT_CURRENCY", "USD").upper()
    adjustments_update_baseline = _env_flag(
        "BUDGETS_ADJUSTMENTS_UPDATE_BASELINE", True
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_household_id=default_household_id,
        default_user_id=default_user_id,
        default_currency=default_currency,
        adjustments_update_baseline=adjustments_update_baseline,
    )
