"""
relaytrace Configuration

Type-safe telemetry settings with Pydantic, loaded from environment
variables prefixed with RELAYTRACE_ (nested fields use a double
underscore, e.g. RELAYTRACE_SAMPLER__POLICY=ratio) or from a JSON file.
Settings are read once at startup and treated as read-only afterwards.
"""

from __future__ import annotations

import json
import os
from enum import Enum
from pathlib import Path
from typing import Dict, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from relaytrace.tracing.carrier import BaggageLimits


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


SamplerPolicy = Literal["always_on", "always_off", "ratio", "parent_based"]


class SamplerSettings(BaseModel):
    """Head-based sampling policy."""
    policy: SamplerPolicy = "parent_based"
    # Inner policy used for trace roots when policy is parent_based
    root: Literal["always_on", "always_off", "ratio"] = "always_on"
    ratio: float = 1.0

    @field_validator("ratio")
    @classmethod
    def check_ratio(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("ratio must be between 0.0 and 1.0")
        return v


class ExporterSettings(BaseModel):
    """Where and how spans are transmitted."""
    kind: Literal["otlp_http", "console", "memory"] = "otlp_http"
    endpoint: str = "http://localhost:4318"
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: float = 10.0
    compression: Literal["gzip", "none"] = "gzip"
    max_retries: int = Field(default=3, ge=0)
    retry_backoff: float = Field(default=0.5, gt=0)
    max_backoff: float = Field(default=5.0, gt=0)


class BatchSettings(BaseModel):
    """Export queue sizing and flush cadence."""
    queue_capacity: int = Field(default=2048, ge=1)
    max_batch_size: int = Field(default=512, ge=1)
    flush_interval: float = Field(default=5.0, gt=0)
    shutdown_timeout: float = Field(default=30.0, ge=0)

    @model_validator(mode="after")
    def check_batch_fits_queue(self) -> "BatchSettings":
        if self.max_batch_size > self.queue_capacity:
            raise ValueError("max_batch_size cannot exceed queue_capacity")
        return self


class BaggageSettings(BaseModel):
    """Bounds applied to baggage entries."""
    max_key_length: int = Field(default=256, ge=1)
    max_value_length: int = Field(default=4096, ge=0)
    max_entries: int = Field(default=180, ge=1)

    def to_limits(self) -> BaggageLimits:
        return BaggageLimits(
            max_key_length=self.max_key_length,
            max_value_length=self.max_value_length,
            max_entries=self.max_entries,
        )


class TelemetrySettings(BaseSettings):
    """
    Main relaytrace configuration.

    Environment variables are prefixed with RELAYTRACE_
    (e.g. RELAYTRACE_SERVICE_NAME=otel-example-server). The standard
    OTEL_EXPORTER_OTLP_ENDPOINT is honored when no endpoint is configured.
    """

    service_name: str = "relaytrace"
    service_version: str = ""
    environment: str = ""

    log_level: LogLevel = LogLevel.INFO
    log_json: bool = True

    max_attributes_per_span: int = Field(default=128, ge=1)
    max_events_per_span: int = Field(default=128, ge=1)

    sampler: SamplerSettings = Field(default_factory=SamplerSettings)
    exporter: ExporterSettings = Field(default_factory=ExporterSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    baggage: BaggageSettings = Field(default_factory=BaggageSettings)

    model_config = {
        "env_prefix": "RELAYTRACE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @model_validator(mode="after")
    def apply_otel_endpoint(self) -> "TelemetrySettings":
        otel_endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
        if otel_endpoint and "endpoint" not in self.exporter.model_fields_set:
            self.exporter.endpoint = otel_endpoint
        return self

    @classmethod
    def from_file(cls, config_path: Path) -> "TelemetrySettings":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)
