"""
Application configuration management.
Uses pydantic-settings for environment variable parsing with validation.

All sensitive configuration should be stored in .env file (never commit to git).
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    
    Required environment variables:
    - JWT_SECRET_KEY: Secret key for signing JWT tokens
    
    Optional (have defaults):
    - DATABASE_URL: Database connection string
    - JWT_ALGORITHM / JWT_EXPIRATION_MINUTES: token settings
    - MIN_SAMPLE_SIZE / CONFIDENCE_LEVEL: winner detection policy
    - MAX_HIERARCHY_DEPTH: hop limit when walking parent flags
    - STATISTICS_CACHE_SECONDS: how long a statistics snapshot stays fresh
    - SCHEDULER_INTERVAL_SECONDS: periodic job cadence (0 disables the loop)
    """
    
    database_url: str = Field(
        default="sqlite:///./fitflags.db",
        description="Database connection URL"
    )
    
    api_title: str = Field(default="Feature Flags & Experiments API")
    api_version: str = Field(default="1.0.0")
    api_description: str = Field(
        default="Hierarchical feature flags, A/B experiments and winner detection"
    )
    
    jwt_secret_key: str = Field(
        ...,  
        description="Secret key for JWT signing. Generate with: openssl rand -hex 32"
    )
    jwt_algorithm: str = Field(default="HS256")
    jwt_expiration_minutes: int = Field(default=60)
    
    log_level: str = Field(default="INFO")

    min_sample_size: int = Field(
        default=100,
        ge=1,
        description="Participants every variant needs before a winner can be called"
    )
    confidence_level: float = Field(
        default=0.95,
        gt=0,
        lt=1,
        description="Two-sided confidence level for variant intervals"
    )
    max_hierarchy_depth: int = Field(
        default=16,
        ge=1,
        description="Evaluation fails closed past this many parent hops"
    )
    statistics_cache_seconds: int = Field(default=300, ge=0)
    scheduler_interval_seconds: int = Field(default=60, ge=0)
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False  


settings = Settings()
