# File: src/tmparking/infrastructure/config.py
"""
Application configuration

Settings are a validated pydantic model. They can be built from a plain
mapping (tests, embedding applications) or from TMPARKING_* environment
variables (CLI).
"""

from typing import Dict, Any, Optional, Mapping
import os

from pydantic import BaseModel, Field, ConfigDict, field_validator

from ..domain.models import ConfigurationError


ENV_PREFIX = "TMPARKING_"


class AppSettings(BaseModel):
    """Runtime settings for the engine and its adapters"""

    model_config = ConfigDict(frozen=True, extra="ignore")

    storage_backend: str = Field(default="json", pattern="^(memory|json|sqlalchemy|mongodb)$")
    data_path: str = Field(default="tmparking-data.json", description="JSON snapshot file")
    database_url: str = Field(default="sqlite:///tmparking.db")
    mongo_url: str = Field(default="mongodb://localhost:27017")
    mongo_database: str = Field(default="tmparking")
    redis_url: Optional[str] = Field(default=None, description="Enables snapshot cache and event forwarding")
    cache_ttl_seconds: int = Field(default=300, ge=1)
    snapshot_key: str = Field(default="tm_parking_pro_db_v2", min_length=1)
    initial_spot_count: int = Field(default=30, ge=1)
    moto_spot_count: int = Field(default=5, ge=0)
    company_name: str = Field(default="TM Parking")
    printer_width: str = Field(default="80mm", pattern="^(58mm|80mm)$")
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = None

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator('redis_url', 'log_file', mode='before')
    @classmethod
    def blank_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'AppSettings':
        """Build settings from a mapping; unknown keys are ignored"""
        try:
            return cls(**dict(data))
        except ValueError as e:
            raise ConfigurationError(f"Invalid settings: {e}") from e

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'AppSettings':
        """Build settings from TMPARKING_<FIELD> environment variables"""
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = {}
        for name in cls.model_fields:
            key = f"{ENV_PREFIX}{name.upper()}"
            if key in environ:
                data[name] = environ[key]
        return cls.from_dict(data)
