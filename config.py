"""
Configuration management module for the escrow service.

This module handles loading and validating environment variables,
providing a centralized Config class for all application settings.
Values are read from the process environment and an optional .env file.
"""

import os
from decimal import Decimal, InvalidOperation
from typing import Optional
from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _env_flag(key: str, default: str) -> bool:
    return os.getenv(key, default).lower() in ('true', '1', 'yes')


class Config:
    """
    Configuration class that loads and validates all application settings.

    All configuration values are validated on initialization.

    Attributes:
        database_url: PostgreSQL connection URL (in-memory store when unset)
        telegram_bot_token: Telegram bot API token for staff alerts
        admin_chat_id: Chat ID that receives staff alerts
        default_fee_percent: Platform fee snapshotted on new transactions
        default_dispute_hours: Dispute window for new transactions
        deposit_amount_tolerance: Accepted difference between a deposit and the
            amount the payment provider reports
        stale_room_minutes: Age after which unfunded rooms are cancelled
        stale_deposit_minutes: Age after which unpaid deposits expire
    """

    VALID_LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    VALID_FEE_BEARERS = ['buyer', 'seller', 'split']

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration by loading environment variables.

        Args:
            env_file: Optional path to .env file. If not provided, uses default .env

        Raises:
            ConfigError: If configuration is missing or invalid
        """
        # Load environment variables
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Database Configuration (Optional)
        self.database_url: Optional[str] = os.getenv('DATABASE_URL')
        self.db_pool_min: int = self._get_int_env('DB_POOL_MIN', '2')
        self.db_pool_max: int = self._get_int_env('DB_POOL_MAX', '10')

        # Telegram Configuration (Optional)
        self.telegram_bot_token: Optional[str] = os.getenv('TELEGRAM_BOT_TOKEN')
        self.admin_chat_id: Optional[str] = os.getenv('ADMIN_CHAT_ID')

        # Escrow Defaults
        self.default_fee_percent: Decimal = self._get_decimal_env('DEFAULT_FEE_PERCENT', '5')
        self.default_dispute_hours: int = self._get_int_env('DEFAULT_DISPUTE_HOURS', '24')
        self.default_category: str = os.getenv('DEFAULT_CATEGORY', 'other')
        self.default_fee_bearer: str = os.getenv('DEFAULT_FEE_BEARER', 'seller').lower()

        # Wallet Settings
        self.deposit_amount_tolerance: Decimal = self._get_decimal_env('DEPOSIT_AMOUNT_TOLERANCE', '1000')
        self.deposit_code_prefix: str = os.getenv('DEPOSIT_CODE_PREFIX', 'NAP').upper()
        self.deposit_candidate_limit: int = self._get_int_env('DEPOSIT_CANDIDATE_LIMIT', '200')
        self.min_deposit_amount: Decimal = self._get_decimal_env('MIN_DEPOSIT_AMOUNT', '10000')
        self.min_withdrawal_amount: Decimal = self._get_decimal_env('MIN_WITHDRAWAL_AMOUNT', '50000')

        # Automation
        self.stale_room_minutes: int = self._get_int_env('STALE_ROOM_MINUTES', '30')
        self.stale_deposit_minutes: int = self._get_int_env('STALE_DEPOSIT_MINUTES', '15')

        # Risk Heuristics
        self.risk_fast_completion_seconds: int = self._get_int_env('RISK_FAST_COMPLETION_SECONDS', '300')
        self.risk_balance_diff_threshold: Decimal = self._get_decimal_env('RISK_BALANCE_DIFF_THRESHOLD', '100000')
        self.risk_unexplained_balance: Decimal = self._get_decimal_env('RISK_UNEXPLAINED_BALANCE', '500000')

        # Rate Limiting
        self.create_rate_limit: int = self._get_int_env('CREATE_RATE_LIMIT', '5')
        self.create_rate_window_minutes: int = self._get_int_env('CREATE_RATE_WINDOW_MINUTES', '60')

        # Notifications
        self.notify_max_attempts: int = self._get_int_env('NOTIFY_MAX_ATTEMPTS', '3')

        # Application Settings
        self.app_env: str = os.getenv('APP_ENV', 'development')
        self.app_debug: bool = _env_flag('APP_DEBUG', 'False')
        self.app_name: str = os.getenv('APP_NAME', 'ESCROW_ENGINE')
        self.app_version: str = os.getenv('APP_VERSION', '1.0.0')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: Optional[str] = os.getenv('LOG_FILE')
        self.log_max_size: int = self._get_int_env('LOG_MAX_SIZE', '10485760')  # 10MB
        self.log_backup_count: int = self._get_int_env('LOG_BACKUP_COUNT', '5')

        # API Configuration
        self.api_host: str = os.getenv('API_HOST', '0.0.0.0')
        self.api_port: int = self._get_int_env('API_PORT', '8000')

        # Validate configuration
        self._validate_config()

    def _get_int_env(self, key: str, default: str) -> int:
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

    def _get_decimal_env(self, key: str, default: str) -> Decimal:
        """
        Get a decimal environment variable.

        Raises:
            ConfigError: If the value is not numeric
        """
        value = os.getenv(key, default)
        try:
            return Decimal(value)
        except InvalidOperation:
            raise ConfigError(f"{key} must be numeric, got '{value}'")

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any configuration value is invalid
        """
        if not Decimal('0') <= self.default_fee_percent <= Decimal('100'):
            raise ConfigError(
                f"DEFAULT_FEE_PERCENT must be between 0 and 100, got {self.default_fee_percent}"
            )

        if self.default_dispute_hours <= 0:
            raise ConfigError(
                f"DEFAULT_DISPUTE_HOURS must be positive, got {self.default_dispute_hours}"
            )

        if self.default_fee_bearer not in self.VALID_FEE_BEARERS:
            raise ConfigError(
                f"DEFAULT_FEE_BEARER must be one of {self.VALID_FEE_BEARERS}, "
                f"got '{self.default_fee_bearer}'"
            )

        if self.deposit_amount_tolerance < 0:
            raise ConfigError("DEPOSIT_AMOUNT_TOLERANCE cannot be negative")

        if self.db_pool_min < 1 or self.db_pool_max < self.db_pool_min:
            raise ConfigError(
                f"DB_POOL_MAX ({self.db_pool_max}) must be >= DB_POOL_MIN ({self.db_pool_min}) >= 1"
            )

        if self.create_rate_limit < 1 or self.create_rate_window_minutes < 1:
            raise ConfigError("CREATE_RATE_LIMIT and CREATE_RATE_WINDOW_MINUTES must be positive")

        if self.notify_max_attempts < 1:
            raise ConfigError(f"NOTIFY_MAX_ATTEMPTS must be at least 1, got {self.notify_max_attempts}")

        # Validate log level
        if self.log_level.upper() not in self.VALID_LOG_LEVELS:
            raise ConfigError(
                f"LOG_LEVEL must be one of {self.VALID_LOG_LEVELS}, got '{self.log_level}'"
            )

        # Validate port range
        if not 1 <= self.api_port <= 65535:
            raise ConfigError(f"API_PORT must be between 1 and 65535, got {self.api_port}")

        if self.admin_chat_id and not self.admin_chat_id.lstrip('-').isdigit():
            raise ConfigError(
                f"ADMIN_CHAT_ID must be numeric (can start with -), got '{self.admin_chat_id}'"
            )

    @property
    def has_database_config(self) -> bool:
        """Check if a PostgreSQL URL is configured."""
        return bool(self.database_url)

    @property
    def has_telegram_config(self) -> bool:
        """Check if staff Telegram alerts can be sent."""
        return bool(self.telegram_bot_token and self.admin_chat_id)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == 'production'

    @property
    def is_debug(self) -> bool:
        """Check if debug mode is enabled."""
        return self.app_debug

    def __repr__(self) -> str:
        """String representation of Config (hiding sensitive data)."""
        return (
            f"Config(app_env={self.app_env}, "
            f"has_db={self.has_database_config}, "
            f"has_telegram={self.has_telegram_config}, "
            f"fee={self.default_fee_percent}%)"
        )


# Singleton instance for easy access
_config_instance: Optional[Config] = None


def get_config(env_file: Optional[str] = None, reload: bool = False) -> Config:
    """
    Get or create the global Config instance.

    Args:
        env_file: Optional path to .env file
        reload: If True, force reload configuration

    Returns:
        Config instance

    Raises:
        ConfigError: If configuration is invalid

    Example:
        >>> config = get_config()
        >>> print(config.default_dispute_hours)
        24
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = Config(env_file)

    return _config_instance
