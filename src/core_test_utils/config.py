"""Configuration management for the core test harness."""

import os
from dataclasses import dataclass
from urllib.parse import urlparse

from .logging_config import parse_tracing_filter
from .models.options import (
    DEFAULT_TRACING_FILTER,
    NAMESPACE,
    CoreInitOptions,
    ServerGatewayOptions,
    TelemetryOptions,
)

TEST_Q = "q"

# If set, export traces and metrics to the OTel collector at the given URL
OTEL_URL_ENV_VAR = "TEMPORAL_INTEG_OTEL_URL"
# If set, enable direct scraping of prometheus metrics on the specified port
PROM_ENABLE_ENV_VAR = "TEMPORAL_INTEG_PROM_PORT"


@dataclass
class HarnessConfig:
    """Configuration class for the test harness."""

    # Server Configuration
    temporal_service_address: str = "http://localhost:7233"
    temporal_namespace: str = NAMESPACE

    # Telemetry Configuration
    otel_url: str | None = None
    prom_port: int | None = None
    log_filter: str = DEFAULT_TRACING_FILTER

    # Worker Configuration
    default_max_cached_workflows: int = 1000

    # Run against the in-process engine instead of a Temporal server
    mock_mode: bool = True

    @classmethod
    def from_environment(cls) -> "HarnessConfig":
        """Create configuration from environment variables."""
        prom_port = os.getenv(PROM_ENABLE_ENV_VAR)
        return cls(
            temporal_service_address=os.getenv("TEMPORAL_SERVICE_ADDRESS", "http://localhost:7233"),
            temporal_namespace=os.getenv("TEMPORAL_NAMESPACE", NAMESPACE),
            otel_url=os.getenv(OTEL_URL_ENV_VAR) or None,
            prom_port=int(prom_port) if prom_port else None,
            log_filter=os.getenv("CORE_LOG_FILTER") or os.getenv("RUST_LOG") or DEFAULT_TRACING_FILTER,
            default_max_cached_workflows=int(os.getenv("CORE_TEST_MAX_CACHED_WORKFLOWS", "1000")),
            mock_mode=os.getenv("CORE_TEST_MOCK_MODE", "true").lower() == "true",
        )

    def validate(self) -> tuple[bool, list[str]]:
        """Validate configuration settings."""
        errors = []

        address = urlparse(self.temporal_service_address)
        if address.scheme not in ("http", "https") or not address.netloc:
            errors.append("temporal_service_address must be an http(s) URL")

        if not self.temporal_namespace:
            errors.append("temporal_namespace cannot be empty")

        if self.otel_url is not None:
            otel = urlparse(self.otel_url)
            if not otel.scheme or not otel.netloc:
                errors.append("otel_url must be a URL")

        if self.prom_port is not None and not 0 < self.prom_port < 65536:
            errors.append("prom_port must be between 1 and 65535")

        if not self.log_filter.strip():
            errors.append("log_filter cannot be empty")
        else:
            try:
                parse_tracing_filter(self.log_filter)
            except ValueError as e:
                errors.append(f"log_filter is invalid: {e}")

        if self.default_max_cached_workflows < 0:
            errors.append("default_max_cached_workflows cannot be negative")

        return len(errors) == 0, errors

    def __post_init__(self):
        """Post-initialization validation."""
        is_valid, errors = self.validate()
        if not is_valid:
            raise ValueError(f"Invalid configuration: {', '.join(errors)}")


# Global configuration instance
_config: HarnessConfig | None = None


def get_config() -> HarnessConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = HarnessConfig.from_environment()
    return _config


def set_config(config: HarnessConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None


def get_integ_server_options(config: HarnessConfig | None = None) -> ServerGatewayOptions:
    """Server options used by integration tests."""
    config = config or get_config()
    return ServerGatewayOptions(
        target_url=config.temporal_service_address,
        namespace=config.temporal_namespace,
        identity="integ_tester",
        worker_binary_id="fakebinaryid",
        client_name="temporal-core",
        client_version="0.1.0",
    )


def get_integ_telem_options(config: HarnessConfig | None = None) -> TelemetryOptions:
    """Telemetry options used by integration tests."""
    config = config or get_config()
    prom_address = f"127.0.0.1:{config.prom_port}" if config.prom_port is not None else None
    return TelemetryOptions(
        otel_collector_url=config.otel_url,
        prometheus_export_bind_address=prom_address,
        tracing_filter=config.log_filter,
        log_forwarding_level="OFF",
    )


def get_integ_core_options(config: HarnessConfig | None = None) -> CoreInitOptions:
    """Combined core options for integration tests."""
    config = config or get_config()
    return CoreInitOptions(
        gateway_opts=get_integ_server_options(config),
        telemetry_opts=get_integ_telem_options(config),
    )
