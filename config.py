import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        default_currency: str,
        bulk_delete_limit: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.default_currency = default_currency
        self.bulk_delete_limit = bulk_delete_limit
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    default_currency = os.getenv("LEDGER_DEFAULT_CURRENCY", "IDR").upper()
    bulk_delete_limit = int(os.getenv("LEDGER_BULK_DELETE_LIMIT", "100"))
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        default_currency=default_currency,
        bulk_delete_limit=bulk_delete_limit,
        log_level=log_level,
    )
