"""
Configuration management module for the Escrow Engine.

This module handles loading and validating environment variables,
providing a centralized Config class for all application settings.
Every setting is optional so the engine can be embedded with defaults;
the database falls back to the in-memory store when DATABASE_URL is unset.
"""

import os
from decimal import Decimal, InvalidOperation
from typing import List, Optional
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).lower() in ('true', '1', 'yes')


class Config:
    """
    Configuration class that loads and validates all application settings.

    All configuration values are validated on initialization.

    Attributes:
        database_url: PostgreSQL connection string (optional)
        telegram_bot_token: Telegram bot API token used for push notifications
        support_user_id: User notified in addition to the counterparty on disputes
        admin_user_ids: Users allowed to resolve disputes
        transaction_fee_percentage: Platform fee as a decimal fraction
        min_amount: Minimum transaction amount allowed
        max_amount: Maximum transaction amount allowed
    """

    VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    VALID_LOG_FORMATS = ['text', 'json']

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration by loading environment variables.

        Args:
            env_file: Optional path to .env file. If not provided, uses default .env

        Raises:
            ConfigError: If configuration is invalid
        """
        # Load environment variables
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Database Configuration
        self.database_url: Optional[str] = os.getenv('DATABASE_URL')
        self.db_pool_min_size: int = self._get_int('DB_POOL_MIN_SIZE', '2')
        self.db_pool_max_size: int = self._get_int('DB_POOL_MAX_SIZE', '10')

        # Notification Configuration
        self.telegram_bot_token: Optional[str] = os.getenv('TELEGRAM_BOT_TOKEN')
        self.support_user_id: Optional[str] = os.getenv('SUPPORT_USER_ID') or None
        self.admin_user_ids: List[str] = [
            user_id.strip()
            for user_id in os.getenv('ADMIN_USER_IDS', '').split(',')
            if user_id.strip()
        ]
        self.enable_notifications: bool = _env_bool('ENABLE_NOTIFICATIONS', 'True')

        # Fees and Amount Limits
        self.transaction_fee_percentage: Decimal = self._get_decimal(
            'TRANSACTION_FEE_PERCENTAGE', '0.015'
        )
        self.min_amount: Decimal = self._get_decimal('MIN_TRANSACTION_AMOUNT', '1')
        self.max_amount: Decimal = self._get_decimal('MAX_TRANSACTION_AMOUNT', '500000')
        self.currency_symbol: str = os.getenv('CURRENCY_SYMBOL', '$')

        # Application Settings
        self.app_env: str = os.getenv('APP_ENV', 'development')
        self.app_debug: bool = _env_bool('APP_DEBUG', 'False')
        self.app_name: str = os.getenv('APP_NAME', 'ESCROW_ENGINE')
        self.app_version: str = os.getenv('APP_VERSION', '1.0.0')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: Optional[str] = os.getenv('LOG_FILE') or None
        self.log_max_size: int = self._get_int('LOG_MAX_SIZE', '10485760')  # 10MB
        self.log_backup_count: int = self._get_int('LOG_BACKUP_COUNT', '5')

        # API Configuration
        self.api_host: str = os.getenv('API_HOST', '0.0.0.0')
        self.api_port: int = self._get_int('API_PORT', '8000')

        # Validate configuration
        self._validate_config()

    def _get_int(self, key: str, default: str) -> int:
        """
        Get an integer environment variable.

        Raises:
            ConfigError: If the value is not an integer
        """
        value = os.getenv(key, default)
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"{key} must be an integer, got '{value}'")

    def _get_decimal(self, key: str, default: str) -> Decimal:
        """
        Get a decimal environment variable.

        Raises:
            ConfigError: If the value is not a number
        """
        value = os.getenv(key, default)
        try:
            return Decimal(value)
        except InvalidOperation:
            raise ConfigError(f"{key} must be a number, got '{value}'")

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any configuration value is invalid
        """
        # Validate fee percentage
        if not Decimal('0') <= self.transaction_fee_percentage < Decimal('1'):
            raise ConfigError(
                f"TRANSACTION_FEE_PERCENTAGE must be between 0 and 1, "
                f"got {self.transaction_fee_percentage}"
            )

        # Validate amount limits
        if self.min_amount <= 0:
            raise ConfigError(f"MIN_TRANSACTION_AMOUNT must be positive, got {self.min_amount}")

        if self.max_amount < self.min_amount:
            raise ConfigError(
                f"MAX_TRANSACTION_AMOUNT ({self.max_amount}) must be greater than "
                f"MIN_TRANSACTION_AMOUNT ({self.min_amount})"
            )

        # Validate log settings
        if self.log_level.upper() not in self.VALID_LOG_LEVELS:
            raise ConfigError(
                f"LOG_LEVEL must be one of {self.VALID_LOG_LEVELS}, got '{self.log_level}'"
            )

        if self.log_format not in self.VALID_LOG_FORMATS:
            raise ConfigError(
                f"LOG_FORMAT must be one of {self.VALID_LOG_FORMATS}, got '{self.log_format}'"
            )

        # Validate pool sizes
        if self.db_pool_min_size < 1 or self.db_pool_max_size < self.db_pool_min_size:
            raise ConfigError(
                f"Invalid database pool sizes: min={self.db_pool_min_size}, "
                f"max={self.db_pool_max_size}"
            )

        # Validate port range
        if not 1 <= self.api_port <= 65535:
            raise ConfigError(f"API_PORT must be between 1 and 65535, got {self.api_port}")

    @property
    def has_database_config(self) -> bool:
        """Check if a PostgreSQL database is configured."""
        return bool(self.database_url)

    @property
    def has_telegram_config(self) -> bool:
        """Check if Telegram notifications are configured."""
        return bool(self.telegram_bot_token)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == 'production'

    def __repr__(self) -> str:
        """Return string representation of config (without sensitive data)."""
        return (
            f"Config(app_env='{self.app_env}', "
            f"database={'configured' if self.has_database_config else 'memory'}, "
            f"telegram={'enabled' if self.has_telegram_config else 'disabled'}, "
            f"fee={self.transaction_fee_percentage})"
        )


# Global config instance
_config: Optional[Config] = None


def load_config(env_file: Optional[str] = None, reload: bool = False) -> Config:
    """
    Load and return the global configuration instance.

    Args:
        env_file: Optional path to .env file
        reload: Force reloading configuration from the environment

    Returns:
        Config instance

    Raises:
        ConfigError: If configuration is invalid
    """
    global _config
    if _config is None or reload:
        _config = Config(env_file)
    return _config


def get_config() -> Config:
    """
    Get the global configuration instance.

    Returns:
        Config instance
    """
    return load_config()
