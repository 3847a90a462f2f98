from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DispatchSettings(BaseSettings):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["text", "json"] = "text"
    environment: str = "development"

    model_config = SettingsConfigDict(env_prefix="DISPATCH_")


class DatabaseSettings(BaseSettings):
    url: str = Field(
        default="sqlite:///./data/dispatch.db",
        description="SQLAlchemy URL for the ride store (sqlite or postgresql)",
    )
    lock_timeout_seconds: float = Field(
        default=5.0,
        ge=1.0,
        le=30.0,
        description="Upper bound a request waits on a contended row or table lock",
    )
    echo: bool = False

    model_config = SettingsConfigDict(env_prefix="DB_")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("sqlite://", "postgresql")):
            raise ValueError("Database URL must use the sqlite or postgresql dialect")
        return v


class FareSettings(BaseSettings):
    """Pricing constants used by FareCalculator."""

    base_fare: float = Field(default=2.50, ge=0.0)
    per_km_rate: float = Field(default=1.20, ge=0.0)
    per_minute_rate: float = Field(default=0.25, ge=0.0)
    average_speed_kmh: float = Field(
        default=30.0,
        gt=0.0,
        le=120.0,
        description="Average city speed used to turn distance into duration",
    )
    distance_precision: int = Field(default=2, ge=0, le=6)
    currency: str = "USD"
    surge_enabled: bool = True
    max_surge_multiplier: float = Field(default=5.0, ge=1.0, le=10.0)
    peak_hours: list[int] = Field(
        default_factory=lambda: [7, 8, 9, 17, 18, 19],
        description="UTC hours treated as peak demand",
    )

    model_config = SettingsConfigDict(env_prefix="FARE_")

    @field_validator("peak_hours")
    @classmethod
    def validate_peak_hours(cls, v: list[int]) -> list[int]:
        invalid = [h for h in v if not 0 <= h <= 23]
        if invalid:
            raise ValueError(f"Peak hours must be between 0 and 23, got {invalid}")
        return v


class MatchingSettings(BaseSettings):
    """Driver search and background matching configuration."""

    background_enabled: bool = Field(
        default=True,
        description="Run the periodic matcher; when false drivers only pull pending rides",
    )
    interval_seconds: float = Field(default=5.0, ge=0.1, le=300.0)
    default_radius_km: float = Field(default=10.0, ge=1.0, le=50.0)
    min_radius_km: float = Field(default=1.0, ge=0.1)
    max_radius_km: float = Field(default=50.0, le=200.0)
    radius_expansion_steps_km: list[float] = Field(default_factory=lambda: [5.0, 10.0, 15.0])
    candidate_limit: int = Field(default=10, ge=1, le=100)
    pending_limit: int = Field(default=10, ge=1, le=100)
    batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Unmatched rides examined per matcher cycle",
    )
    h3_resolution: int = Field(default=6, ge=4, le=9)
    read_retry_attempts: int = Field(default=3, ge=1, le=10)

    model_config = SettingsConfigDict(env_prefix="MATCHING_")

    @model_validator(mode="after")
    def validate_radius_bounds(self) -> "MatchingSettings":
        if not (self.min_radius_km <= self.default_radius_km <= self.max_radius_km):
            raise ValueError(
                f"Radius bounds must satisfy min <= default <= max, got "
                f"{self.min_radius_km} <= {self.default_radius_km} <= {self.max_radius_km}"
            )
        if not self.radius_expansion_steps_km:
            raise ValueError("At least one radius expansion step is required")
        return self


class RedisSettings(BaseSettings):
    enabled: bool = False
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str = ""
    ssl: bool = False

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    @model_validator(mode="after")
    def validate_credentials_provided(self) -> "RedisSettings":
        if self.enabled and not self.password:
            raise ValueError("Required credential not provided: REDIS_PASSWORD")
        return self


class Settings(BaseSettings):
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    fare: FareSettings = Field(default_factory=FareSettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
    )


def get_settings() -> Settings:
    """Load and validate settings from environment variables."""
    return Settings()
