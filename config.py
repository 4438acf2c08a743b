import os
from functools import lru_cache


class Settings:
    def __init__(
        self,
        backend_url: str,
        auth_token: str,
        timezone: str,
        fetch_timeout_secs: float,
        week_start: str,
        default_time_range: str,
        config_refresh_minutes: int,
        log_level: str,
        income_label: str,
        savings_marker: str,
        non_cashflow_label: str,
        non_cashflow_marker: str,
    ) -> None:
        self.backend_url = backend_url
        self.auth_token = auth_token
        self.timezone = timezone
        self.fetch_timeout_secs = fetch_timeout_secs
        self.week_start = week_start
        self.default_time_range = default_time_range
        self.config_refresh_minutes = config_refresh_minutes
        self.log_level = log_level
        self.income_label = income_label
        self.savings_marker = savings_marker
        self.non_cashflow_label = non_cashflow_label
        self.non_cashflow_marker = non_cashflow_marker


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    backend_url = os.getenv("CASHFLOW_BACKEND_URL", "http://localhost:8000/api")
    auth_token = os.getenv("CASHFLOW_AUTH_TOKEN", "").strip()
    timezone = os.getenv("CASHFLOW_TIMEZONE", "Asia/Jerusalem")
    fetch_timeout_secs = float(os.getenv("CASHFLOW_FETCH_TIMEOUT_SECS", "15"))
    week_start = os.getenv("CASHFLOW_WEEK_START", "SUN").upper()
    default_time_range = os.getenv("CASHFLOW_DEFAULT_TIME_RANGE", "months6")
    config_refresh_minutes = int(os.getenv("CASHFLOW_CONFIG_REFRESH_MINUTES", "30"))
    log_level = os.getenv("CASHFLOW_LOG_LEVEL", "INFO").upper()
    # Bucket heuristics match the backend's category labels.
    income_label = os.getenv("CASHFLOW_INCOME_LABEL", "הכנסות")
    savings_marker = os.getenv("CASHFLOW_SAVINGS_MARKER", "חיסכון")
    non_cashflow_label = os.getenv("CASHFLOW_NON_CASHFLOW_LABEL", "לא בתזרים")
    non_cashflow_marker = os.getenv("CASHFLOW_NON_CASHFLOW_MARKER", "לא תזרימיות")
    return Settings(
        backend_url=backend_url.rstrip("/"),
        auth_token=auth_token,
        timezone=timezone,
        fetch_timeout_secs=fetch_timeout_secs,
        week_start=week_start,
        default_time_range=default_time_range,
        config_refresh_minutes=config_refresh_minutes,
        log_level=log_level,
        income_label=income_label,
        savings_marker=savings_marker,
        non_cashflow_label=non_cashflow_label,
        non_cashflow_marker=non_cashflow_marker,
    )
