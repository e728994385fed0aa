from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ==========================================================================
    # MongoDB Configuration
    # ==========================================================================
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_database: str = "carpool"

    # ==========================================================================
    # Redis Configuration
    # ==========================================================================
    redis_url: str = "redis://localhost:6379/0"

    # ==========================================================================
    # Route Provider (OSRM)
    # ==========================================================================
    osrm_base_url: str = "https://router.project-osrm.org"
    osrm_profile: str = "driving"
    route_timeout_seconds: float = 5.0
    trip_timeout_seconds: float = 10.0

    # ==========================================================================
    # Geo Provider (Base Adresse Nationale)
    # ==========================================================================
    geocoder_base_url: str = "https://api-adresse.data.gouv.fr"
    geocode_timeout_seconds: float = 5.0

    # ==========================================================================
    # Matching Configuration
    # ==========================================================================
    matching_window_minutes: int = 30  # +/- tolerance on max departure time
    proximity_max_km: float = 15.0  # Great-circle pre-filter between destinations
    max_detour_percentage: float = 0.25
    max_detour_meters: float = 10000.0
    match_commit_attempts: int = 2  # Seat compare-and-set tries before deferring to the sweep

    # ==========================================================================
    # Request Admission
    # ==========================================================================
    request_past_tolerance_minutes: int = 30
    min_departure_after_event_start_minutes: int = 15
    max_departure_after_event_end_minutes: int = 60

    # ==========================================================================
    # Scheduler Configuration
    # ==========================================================================
    expiry_grace_minutes: int = 30
    expiry_sweep_interval_minutes: int = 1
    rematch_sweep_interval_minutes: int = 5
    enable_expiry_sweep: bool = True
    enable_rematch_sweep: bool = True

    # ==========================================================================
    # Notifications
    # ==========================================================================
    notification_dedupe_ttl_hours: int = 24

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", case_sensitive=False
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses LRU cache to avoid re-reading env vars on every call.
    """
    return Settings()


# Convenience export
settings = get_settings()
