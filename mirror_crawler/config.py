"""Application configuration using Pydantic settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    # Markets
    markets: str = "GB,DE,FR"
    site_domain: str = "littlebiggy.net"

    # Storage
    store_backend: str = "fs"  # fs | redis | memory
    store_dir: str = "data/blobs"
    redis_url: str = "redis://localhost:6379/0"

    # Session Management
    session_storage_path: str = "data/sessions"
    lb_login_username: str = ""
    lb_login_password: str = ""
    login_max_attempts: int = 3
    login_timeout_seconds: float = 45.0

    # App Settings
    log_level: str = "INFO"
    metrics_port: int = 0  # 0 disables the metrics endpoint

    # ==========================================================================
    # Item crawl
    # ==========================================================================
    crawler_max_parallel: int = 6
    crawler_shipping_max_parallel: int = 3
    crawler_shipping_parallel: bool = True
    crawler_review_fetch_size: int = 100
    crawler_full_refresh_days: int = 80
    crawler_force: bool = False
    crawler_refresh_shipping: bool = False
    crawler_refresh_share: bool = False
    crawler_limit: int = 0

    item_page_max_bytes: int = 150_000
    item_page_timeout_seconds: float = 20.0
    shipping_settle_seconds: float = 0.25

    # ==========================================================================
    # Seller crawl
    # ==========================================================================
    seller_concurrency: int = 4
    seller_manifesto_refresh_days: int = 3
    seller_require_manifesto: bool = False
    seller_force: bool = False
    seller_refresh_share: bool = False
    seller_blacklist: str = ""
    seller_enrich_limit: int = 0

    # Escalation tiers (primary timeout / alternate-host timeout)
    seller_fetch_t1_seconds: float = 60.0
    seller_fetch_t2_seconds: float = 140.0
    seller_fetch_t3_seconds: float = 300.0
    seller_fallback_t1_seconds: float = 48.0
    seller_fallback_t2_seconds: float = 100.0
    seller_fallback_t3_seconds: float = 180.0

    seller_reviews_page_size: int = 100
    seller_reviews_max_store: int = 150
    seller_reviews_enable_skip: bool = True
    seller_review_cache_max_age_days: int = 2
    seller_essential_retry_limit: int = 1

    # Run coordination
    run_lock_enabled: bool = False
    run_lock_ttl_seconds: int = 7200

    # Scheduler
    items_interval_minutes: int = 240
    sellers_interval_minutes: int = 720

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def market_list(self) -> list[str]:
        """Configured market codes, upper-cased and de-duplicated."""
        seen: list[str] = []
        for code in self.markets.split(","):
            code = code.strip().upper()
            if code and code not in seen:
                seen.append(code)
        return seen

    @property
    def site_hosts(self) -> list[str]:
        """Base URLs tried in order: bare domain first, then www."""
        return [f"https://{self.site_domain}", f"https://www.{self.site_domain}"]

    @property
    def seller_blacklist_ids(self) -> set[str]:
        return {s.strip() for s in self.seller_blacklist.split(",") if s.strip()}


settings = Settings()
