"""
Configuration validation and management for the VotePay service.

Settings come from environment variables (a local `.env` is loaded by
python-dotenv). Required values raise ConfigurationError when missing; malformed
optional integers fall back to their defaults.
"""

import os
from typing import Dict, Optional
from dataclasses import dataclass
from dotenv import load_dotenv
from votepay.core.exceptions import ConfigurationError
import logging

load_dotenv()

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    """Database configuration settings"""
    url: str
    max_pool_size: int = 10
    min_pool_size: int = 2
    max_idle_time_ms: int = 30000
    server_selection_timeout_ms: int = 5000
    connect_timeout_ms: int = 10000
    socket_timeout_ms: int = 45000
    retry_writes: bool = True
    write_concern: int = 1


@dataclass
class AggregatorConfig:
    """BulkClix aggregator settings"""
    api_key: str
    api_url: str = "https://api.bulkclix.com"
    webhook_secret: Optional[str] = None
    legacy_reference_prefix: str = "PRELYCT"
    site_url: Optional[str] = None
    platform_hostname: Optional[str] = None
    timeout_seconds: float = 30.0


@dataclass
class TrackerConfig:
    """Transaction status tracker settings"""
    retention_hours: int = 24
    sweep_interval_seconds: int = 3600


@dataclass
class NotificationConfig:
    """Outbound email and WhatsApp settings"""
    email_api_url: Optional[str] = None
    email_api_key: Optional[str] = None
    email_from: str = "notifications@prelyct.com"
    whatsapp_phone_number_id: Optional[str] = None
    whatsapp_access_token: Optional[str] = None
    whatsapp_api_version: str = "v18.0"


@dataclass
class RateLimitConfig:
    """Rate limiting configuration settings"""
    initiate_rate_limit: str = "10/minute"
    status_rate_limit: str = "60/minute"
    monitoring_rate_limit: str = "10/minute"


@dataclass
class LoggingConfig:
    """Logging configuration settings"""
    level: str = "INFO"
    log_requests: bool = True


@dataclass
class AppConfig:
    """Main application configuration"""
    database: DatabaseConfig
    aggregator: AggregatorConfig
    tracker: TrackerConfig
    notifications: NotificationConfig
    rate_limit: RateLimitConfig
    logging: LoggingConfig
    environment: str = "development"
    debug: bool = False


class ConfigValidator:
    """Validates and loads application configuration"""

    REQUIRED_ENV_VARS = {
        "MONGO_URL": "mongodb://localhost:27017/votepay",
        "BULKCLIX_API_KEY": "your-bulkclix-api-key",
    }

    OPTIONAL_ENV_VARS = {
        "ENVIRONMENT": "development",
        "DEBUG": "false",
        "LOG_LEVEL": "INFO",
        "LOG_REQUESTS": "true",
        "MONGO_MAX_POOL_SIZE": "10",
        "MONGO_MIN_POOL_SIZE": "2",
        "MONGO_MAX_IDLE_TIME_MS": "30000",
        "MONGO_SERVER_SELECTION_TIMEOUT_MS": "5000",
        "MONGO_CONNECT_TIMEOUT_MS": "10000",
        "MONGO_SOCKET_TIMEOUT_MS": "45000",
        "MONGO_RETRY_WRITES": "true",
        "MONGO_WRITE_CONCERN": "1",
        "BULKCLIX_API_URL": "https://api.bulkclix.com",
        "BULKCLIX_WEBHOOK_SECRET": None,
        "BULKCLIX_TIMEOUT_SECONDS": "30",
        "LEGACY_REFERENCE_PREFIX": "PRELYCT",
        "SITE_URL": None,
        "VERCEL_URL": None,
        "TRACKER_RETENTION_HOURS": "24",
        "TRACKER_SWEEP_INTERVAL_SECONDS": "3600",
        "EMAIL_API_URL": None,
        "EMAIL_API_KEY": None,
        "EMAIL_FROM": "notifications@prelyct.com",
        "WHATSAPP_PHONE_NUMBER_ID": None,
        "WHATSAPP_ACCESS_TOKEN": None,
        "WHATSAPP_API_VERSION": "v18.0",
        "INITIATE_RATE_LIMIT": "10/minute",
        "STATUS_RATE_LIMIT": "60/minute",
        "MONITORING_RATE_LIMIT": "10/minute",
    }

    @classmethod
    def validate_environment(cls) -> Dict[str, Optional[str]]:
        """
        Validate all required and optional environment variables

        Returns:
            Dict containing all validated environment variables

        Raises:
            ConfigurationError: If validation fails
        """
        errors = []
        config = {}

        for var_name, default_value in cls.REQUIRED_ENV_VARS.items():
            value = os.getenv(var_name)
            if not value:
                errors.append(f"Required environment variable {var_name} is not set")
                config[var_name] = default_value
            else:
                config[var_name] = value

        for var_name, default_value in cls.OPTIONAL_ENV_VARS.items():
            config[var_name] = os.getenv(var_name, default_value)

        if errors:
            raise ConfigurationError(
                "Configuration validation failed: " + "; ".join(errors),
                config_key="environment_validation",
            )

        return config

    @classmethod
    def validate_mongo_url(cls, url: str) -> str:
        """Validate MongoDB URL format"""
        if not url.startswith(("mongodb://", "mongodb+srv://")):
            raise ConfigurationError(
                "Invalid MongoDB URL format",
                config_key="MONGO_URL",
                expected_value="mongodb://localhost:27017/votepay",
            )
        return url

    @classmethod
    def validate_http_url(cls, url: str, config_key: str) -> str:
        """Validate an http(s) base URL and strip any trailing slash"""
        if not url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"Invalid URL for {config_key}",
                config_key=config_key,
                expected_value="https://example.com",
            )
        return url.rstrip("/")

    @classmethod
    def validate_rate_limit(cls, rate_limit: str) -> str:
        """Validate rate limit format (e.g., '10/minute')"""
        try:
            parts = rate_limit.split("/")
            if len(parts) != 2:
                raise ValueError()
            int(parts[0])
            if parts[1] not in ["second", "minute", "hour", "day"]:
                raise ValueError()
        except ValueError:
            raise ConfigurationError(
                "Invalid rate limit format",
                config_key="rate_limit",
                expected_value="10/minute"
            )
        return rate_limit

    @classmethod
    def validate_boolean(cls, value: str, default: bool = False) -> bool:
        """Validate boolean string values"""
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    @classmethod
    def validate_integer(cls, value: str, default: int, min_val: int = None, max_val: int = None) -> int:
        """Validate integer values with optional bounds"""
        try:
            int_val = int(value)
            if min_val is not None and int_val < min_val:
                raise ValueError(f"Value must be >= {min_val}")
            if max_val is not None and int_val > max_val:
                raise ValueError(f"Value must be <= {max_val}")
            return int_val
        except (ValueError, TypeError):
            return default

    @classmethod
    def load_config(cls) -> AppConfig:
        """
        Load and validate complete application configuration

        Raises:
            ConfigurationError: If configuration validation fails
        """
        logger.info("Loading application configuration...")

        env_vars = cls.validate_environment()

        database_config = DatabaseConfig(
            url=cls.validate_mongo_url(env_vars["MONGO_URL"]),
            max_pool_size=cls.validate_integer(env_vars["MONGO_MAX_POOL_SIZE"], 10, 1, 100),
            min_pool_size=cls.validate_integer(env_vars["MONGO_MIN_POOL_SIZE"], 2, 1, 50),
            max_idle_time_ms=cls.validate_integer(env_vars["MONGO_MAX_IDLE_TIME_MS"], 30000, 1000, 300000),
            server_selection_timeout_ms=cls.validate_integer(env_vars["MONGO_SERVER_SELECTION_TIMEOUT_MS"], 5000, 1000, 30000),
            connect_timeout_ms=cls.validate_integer(env_vars["MONGO_CONNECT_TIMEOUT_MS"], 10000, 1000, 60000),
            socket_timeout_ms=cls.validate_integer(env_vars["MONGO_SOCKET_TIMEOUT_MS"], 45000, 1000, 120000),
            retry_writes=cls.validate_boolean(env_vars["MONGO_RETRY_WRITES"], True),
            write_concern=cls.validate_integer(env_vars["MONGO_WRITE_CONCERN"], 1, 1, 5),
        )

        site_url = env_vars["SITE_URL"]
        aggregator_config = AggregatorConfig(
            api_key=env_vars["BULKCLIX_API_KEY"],
            api_url=cls.validate_http_url(env_vars["BULKCLIX_API_URL"], "BULKCLIX_API_URL"),
            webhook_secret=env_vars["BULKCLIX_WEBHOOK_SECRET"] or None,
            legacy_reference_prefix=env_vars["LEGACY_REFERENCE_PREFIX"],
            site_url=cls.validate_http_url(site_url, "SITE_URL") if site_url else None,
            platform_hostname=env_vars["VERCEL_URL"] or None,
            timeout_seconds=float(cls.validate_integer(env_vars["BULKCLIX_TIMEOUT_SECONDS"], 30, 1, 120)),
        )

        tracker_config = TrackerConfig(
            retention_hours=cls.validate_integer(env_vars["TRACKER_RETENTION_HOURS"], 24, 1, 24 * 30),
            sweep_interval_seconds=cls.validate_integer(env_vars["TRACKER_SWEEP_INTERVAL_SECONDS"], 3600, 60, 86400),
        )

        notification_config = NotificationConfig(
            email_api_url=env_vars["EMAIL_API_URL"] or None,
            email_api_key=env_vars["EMAIL_API_KEY"] or None,
            email_from=env_vars["EMAIL_FROM"],
            whatsapp_phone_number_id=env_vars["WHATSAPP_PHONE_NUMBER_ID"] or None,
            whatsapp_access_token=env_vars["WHATSAPP_ACCESS_TOKEN"] or None,
            whatsapp_api_version=env_vars["WHATSAPP_API_VERSION"],
        )

        rate_limit_config = RateLimitConfig(
            initiate_rate_limit=cls.validate_rate_limit(env_vars["INITIATE_RATE_LIMIT"]),
            status_rate_limit=cls.validate_rate_limit(env_vars["STATUS_RATE_LIMIT"]),
            monitoring_rate_limit=cls.validate_rate_limit(env_vars["MONITORING_RATE_LIMIT"]),
        )

        logging_config = LoggingConfig(
            level=env_vars["LOG_LEVEL"],
            log_requests=cls.validate_boolean(env_vars["LOG_REQUESTS"], True),
        )

        app_config = AppConfig(
            database=database_config,
            aggregator=aggregator_config,
            tracker=tracker_config,
            notifications=notification_config,
            rate_limit=rate_limit_config,
            logging=logging_config,
            environment=env_vars["ENVIRONMENT"],
            debug=cls.validate_boolean(env_vars["DEBUG"], False),
        )

        logger.info("Configuration loaded successfully")
        logger.info(f"Environment: {app_config.environment}")
        logger.info(
            f"Tracker: retention={app_config.tracker.retention_hours}h, "
            f"sweep every {app_config.tracker.sweep_interval_seconds}s"
        )

        return app_config


# Global configuration instance
_app_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the application configuration

    Raises:
        ConfigurationError: If configuration is not loaded
    """
    global _app_config

    if _app_config is None:
        raise ConfigurationError(
            "Configuration not loaded. Call load_config() first.",
            config_key="config_not_loaded"
        )

    return _app_config


def load_config() -> AppConfig:
    """Load and validate application configuration"""
    global _app_config

    _app_config = ConfigValidator.load_config()
    return _app_config


def reset_config() -> None:
    """Forget the loaded configuration (used by tests)"""
    global _app_config
    _app_config = None
