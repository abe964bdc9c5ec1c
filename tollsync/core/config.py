from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./tollsync.db"
    debug: bool = True
    log_level: str = "INFO"

    # CSV ingestion
    csv_encoding: str = "auto"  # "auto" tries UTF-8 (BOM tolerated) then Shift_JIS
    csv_delimiter: str = ","
    import_batch_size: int = 500  # Rows per duplicate-check round trip
    error_log_raw_limit: int = 200  # Max characters of raw row kept per error entry
    max_file_size_mb: int = 100

    # Pagination
    default_page_size: int = 50
    max_page_size: int = 1000

    # Match scoring weights (summed and clamped to [0, 1])
    match_card_weight: float = 0.35
    match_vehicle_weight: float = 0.25
    match_time_weight: float = 0.30
    match_amount_weight: float = 0.10
    match_time_window_minutes: int = 30

    # Policies awaiting product clarification
    active_mapping_policy: str = "conflict"  # "conflict" or "replace"
    delete_policy: str = "strict"  # "strict" (NotFound on missing) or "idempotent"

    model_config = ConfigDict(env_file=".env", extra="ignore")


settings = Settings()
