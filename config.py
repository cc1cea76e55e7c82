"""
Configuration management module for the escrow service.

This module handles loading and validating environment variables,
providing a centralized Config class for all application settings.
The Config object is built once at process start and passed explicitly
into the payment adapters, the reconciliation engine and the webhook server.
"""

import os
from decimal import Decimal, InvalidOperation
from typing import List, Literal, Optional

from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def _env_bool(key: str, default: str) -> bool:
    return os.getenv(key, default).lower() in ('true', '1', 'yes')


def _env_list(key: str, default: str = '') -> List[str]:
    return [item.strip() for item in os.getenv(key, default).split(',') if item.strip()]


class Config:
    """
    Configuration class that loads and validates all application settings.

    Every payment provider is optional. A provider whose collection
    credentials are missing is not registered; payout and reversal paths
    are enabled only when their own credentials are present.

    Attributes:
        environment: Either 'sandbox' or 'production' (selects provider endpoints)
        underpayment_tolerance: Shortfall accepted without flagging the order
        accept_underpayment: Whether a larger shortfall still marks the order paid
        collection_timeout: Seconds before a pending collection is queried
        auto_release_days: Days after shipment before an undisputed order is released
        supported_payment_methods: Methods orders may be created with
    """

    # M-Pesa API endpoints
    MPESA_ENDPOINTS = {
        'sandbox': {
            'auth': 'https://sandbox.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials',
            'stk_push': 'https://sandbox.safaricom.co.ke/mpesa/stkpush/v1/processrequest',
            'query': 'https://sandbox.safaricom.co.ke/mpesa/stkpushquery/v1/query',
            'b2c': 'https://sandbox.safaricom.co.ke/mpesa/b2c/v1/paymentrequest',
            'reversal': 'https://sandbox.safaricom.co.ke/mpesa/reversal/v1/request',
        },
        'production': {
            'auth': 'https://api.safaricom.co.ke/oauth/v1/generate?grant_type=client_credentials',
            'stk_push': 'https://api.safaricom.co.ke/mpesa/stkpush/v1/processrequest',
            'query': 'https://api.safaricom.co.ke/mpesa/stkpushquery/v1/query',
            'b2c': 'https://api.safaricom.co.ke/mpesa/b2c/v1/paymentrequest',
            'reversal': 'https://api.safaricom.co.ke/mpesa/reversal/v1/request',
        }
    }

    AIRTEL_BASE_URLS = {
        'sandbox': 'https://openapiuat.airtel.africa',
        'production': 'https://openapi.airtel.africa',
    }

    EQUITY_BASE_URLS = {
        'sandbox': 'https://uat.jengahq.io',
        'production': 'https://api.jengahq.io',
    }

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration by loading environment variables.

        Args:
            env_file: Optional path to .env file. If not provided, uses default .env

        Raises:
            ConfigError: If configuration is missing or invalid
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Application Settings
        self.environment: Literal['sandbox', 'production'] = self._get_environment()
        self.app_name: str = os.getenv('APP_NAME', 'ESCROW_SERVICE')
        self.api_host: str = os.getenv('API_HOST', '0.0.0.0')
        self.api_port: int = self._get_int('API_PORT', '8000')
        self.api_timeout: int = self._get_int('TIMEOUT', '30')
        self.database_url: Optional[str] = os.getenv('DATABASE_URL')

        # Logging Configuration
        self.log_level: str = os.getenv('LOG_LEVEL', 'INFO')
        self.log_format: str = os.getenv('LOG_FORMAT', 'text')
        self.log_file: Optional[str] = os.getenv('LOG_FILE', 'logs/escrow.log') or None
        self.log_max_size: int = self._get_int('LOG_MAX_SIZE', '10485760')  # 10MB
        self.log_backup_count: int = self._get_int('LOG_BACKUP_COUNT', '5')

        # Escrow Policy
        self.min_amount: Decimal = self._get_decimal('MIN_ORDER_AMOUNT', '1')
        self.max_amount: Decimal = self._get_decimal('MAX_ORDER_AMOUNT', '500000')
        self.underpayment_tolerance: Decimal = self._get_decimal('UNDERPAYMENT_TOLERANCE', '0')
        self.accept_underpayment: bool = _env_bool('ACCEPT_UNDERPAYMENT', 'True')
        self.collection_timeout: int = self._get_int('COLLECTION_TIMEOUT_SECONDS', '300')
        self.reconcile_interval: int = self._get_int('RECONCILE_INTERVAL_SECONDS', '60')
        # Orders shipped/delivered this long ago with no dispute are released to the seller (0 disables)
        self.auto_release_days: int = self._get_int('AUTO_RELEASE_DAYS', '7')
        self.auto_release_interval: int = self._get_int('AUTO_RELEASE_INTERVAL_SECONDS', '3600')
        self.supported_payment_methods: List[str] = _env_list(
            'SUPPORTED_PAYMENT_METHODS', 'mpesa,airtel,equity'
        )

        # M-Pesa Configuration
        self.mpesa_consumer_key: Optional[str] = os.getenv('MPESA_CONSUMER_KEY')
        self.mpesa_consumer_secret: Optional[str] = os.getenv('MPESA_CONSUMER_SECRET')
        self.mpesa_shortcode: Optional[str] = os.getenv('MPESA_SHORTCODE')
        self.mpesa_passkey: Optional[str] = os.getenv('MPESA_PASSKEY')
        self.mpesa_transaction_type: str = os.getenv('MPESA_TRANSACTION_TYPE', 'CustomerPayBillOnline')
        self.mpesa_callback_url: Optional[str] = os.getenv('MPESA_CALLBACK_URL')
        self.mpesa_b2c_initiator_name: Optional[str] = os.getenv('MPESA_B2C_INITIATOR_NAME')
        self.mpesa_b2c_security_credential: Optional[str] = os.getenv('MPESA_B2C_SECURITY_CREDENTIAL')
        self.mpesa_b2c_result_url: Optional[str] = os.getenv('MPESA_B2C_RESULT_URL')
        self.mpesa_b2c_timeout_url: Optional[str] = os.getenv('MPESA_B2C_TIMEOUT_URL')
        self.mpesa_reversal_initiator_name: Optional[str] = os.getenv('MPESA_REVERSAL_INITIATOR_NAME')
        self.mpesa_reversal_security_credential: Optional[str] = os.getenv('MPESA_REVERSAL_SECURITY_CREDENTIAL')
        self.mpesa_reversal_result_url: Optional[str] = os.getenv('MPESA_REVERSAL_RESULT_URL')
        self.mpesa_reversal_timeout_url: Optional[str] = os.getenv('MPESA_REVERSAL_TIMEOUT_URL')
        self.mpesa_allowed_ips: List[str] = _env_list('MPESA_ALLOWED_IPS')

        # Airtel Money Configuration
        self.airtel_client_id: Optional[str] = os.getenv('AIRTEL_CLIENT_ID')
        self.airtel_client_secret: Optional[str] = os.getenv('AIRTEL_CLIENT_SECRET')
        self.airtel_callback_url: Optional[str] = os.getenv('AIRTEL_CALLBACK_URL')
        self.airtel_country: str = os.getenv('AIRTEL_COUNTRY', 'KE')
        self.airtel_currency: str = os.getenv('AIRTEL_CURRENCY', 'KES')

        # Equity Bank Configuration
        self.equity_client_id: Optional[str] = os.getenv('EQUITY_CLIENT_ID')
        self.equity_client_secret: Optional[str] = os.getenv('EQUITY_CLIENT_SECRET')
        self.equity_merchant_code: Optional[str] = os.getenv('EQUITY_MERCHANT_CODE')
        self.equity_callback_url: Optional[str] = os.getenv('EQUITY_CALLBACK_URL')

        # Notifications
        self.telegram_bot_token: Optional[str] = os.getenv('TELEGRAM_BOT_TOKEN')
        self.admin_chat_id: Optional[str] = os.getenv('ADMIN_CHAT_ID')

        # Security
        self.webhook_secret: Optional[str] = os.getenv('WEBHOOK_SECRET')

        self._set_provider_urls()
        self._validate_config()

    def _get_int(self, key: str, default: str) -> int:
        raw = os.getenv(key, default)
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"{key} must be an integer, got '{raw}'")

    def _get_decimal(self, key: str, default: str) -> Decimal:
        raw = os.getenv(key, default)
        try:
            return Decimal(raw)
        except InvalidOperation:
            raise ConfigError(f"{key} must be a decimal number, got '{raw}'")

    def _get_environment(self) -> Literal['sandbox', 'production']:
        env = os.getenv('ENVIRONMENT', 'development').lower()
        if env == 'production':
            return 'production'
        return 'sandbox'

    def _set_provider_urls(self) -> None:
        """Set provider API URLs based on the environment."""
        endpoints = self.MPESA_ENDPOINTS[self.environment]
        self.mpesa_auth_url: str = endpoints['auth']
        self.mpesa_stk_push_url: str = endpoints['stk_push']
        self.mpesa_query_url: str = endpoints['query']
        self.mpesa_b2c_url: str = endpoints['b2c']
        self.mpesa_reversal_url: str = endpoints['reversal']
        self.airtel_base_url: str = os.getenv('AIRTEL_BASE_URL') or self.AIRTEL_BASE_URLS[self.environment]
        self.equity_base_url: str = os.getenv('EQUITY_BASE_URL') or self.EQUITY_BASE_URLS[self.environment]

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any configuration value is invalid
        """
        if self.min_amount <= 0:
            raise ConfigError(f"MIN_ORDER_AMOUNT must be positive, got {self.min_amount}")

        if self.max_amount < self.min_amount:
            raise ConfigError(
                f"MAX_ORDER_AMOUNT ({self.max_amount}) must be greater than "
                f"MIN_ORDER_AMOUNT ({self.min_amount})"
            )

        if self.underpayment_tolerance < 0:
            raise ConfigError(
                f"UNDERPAYMENT_TOLERANCE must not be negative, got {self.underpayment_tolerance}"
            )

        if self.collection_timeout < 1 or self.reconcile_interval < 1:
            raise ConfigError("COLLECTION_TIMEOUT_SECONDS and RECONCILE_INTERVAL_SECONDS must be positive")

        if self.auto_release_days < 0 or self.auto_release_interval < 1:
            raise ConfigError(
                "AUTO_RELEASE_DAYS must not be negative and AUTO_RELEASE_INTERVAL_SECONDS must be positive"
            )

        unknown = set(self.supported_payment_methods) - {'mpesa', 'airtel', 'equity'}
        if unknown:
            raise ConfigError(f"Unknown payment methods in SUPPORTED_PAYMENT_METHODS: {sorted(unknown)}")

        if self.mpesa_shortcode and not self.mpesa_shortcode.isdigit():
            raise ConfigError(f"MPESA_SHORTCODE must be numeric, got '{self.mpesa_shortcode}'")

        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if self.log_level.upper() not in valid_log_levels:
            raise ConfigError(
                f"LOG_LEVEL must be one of {valid_log_levels}, got '{self.log_level}'"
            )

        if not 1 <= self.api_port <= 65535:
            raise ConfigError(f"API_PORT must be between 1 and 65535, got {self.api_port}")

    @property
    def has_mpesa_config(self) -> bool:
        """Check if M-Pesa collection configuration is complete."""
        return all([
            self.mpesa_consumer_key,
            self.mpesa_consumer_secret,
            self.mpesa_shortcode,
            self.mpesa_passkey,
            self.mpesa_callback_url,
        ])

    @property
    def has_mpesa_b2c_config(self) -> bool:
        """Check if M-Pesa B2C payout configuration is complete."""
        return self.has_mpesa_config and all([
            self.mpesa_b2c_initiator_name,
            self.mpesa_b2c_security_credential,
            self.mpesa_b2c_result_url,
            self.mpesa_b2c_timeout_url,
        ])

    @property
    def has_mpesa_reversal_config(self) -> bool:
        """Check if M-Pesa reversal configuration is complete."""
        return self.has_mpesa_config and all([
            self.mpesa_reversal_initiator_name,
            self.mpesa_reversal_security_credential,
            self.mpesa_reversal_result_url,
            self.mpesa_reversal_timeout_url,
        ])

    @property
    def has_airtel_config(self) -> bool:
        return bool(self.airtel_client_id and self.airtel_client_secret and self.airtel_callback_url)

    @property
    def has_equity_config(self) -> bool:
        return all([
            self.equity_client_id,
            self.equity_client_secret,
            self.equity_merchant_code,
            self.equity_callback_url,
        ])

    @property
    def is_production(self) -> bool:
        """Check if running against production provider endpoints."""
        return self.environment == 'production'

    @property
    def is_sandbox(self) -> bool:
        return self.environment == 'sandbox'

    def __repr__(self) -> str:
        """String representation of Config (hiding sensitive data)."""
        return (
            f"Config(environment={self.environment}, "
            f"methods={self.supported_payment_methods}, "
            f"mpesa={self.has_mpesa_config}, "
            f"airtel={self.has_airtel_config}, "
            f"equity={self.has_equity_config})"
        )


# Singleton instance for the process entry point
_config_instance: Optional[Config] = None


def get_config(env_file: Optional[str] = None, reload: bool = False) -> Config:
    """
    Get or create the global Config instance.

    Only the entry point should call this; everything else receives
    the Config it needs as an argument.

    Args:
        env_file: Optional path to .env file
        reload: If True, force reload configuration

    Returns:
        Config instance

    Raises:
        ConfigError: If configuration is invalid
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = Config(env_file)

    return _config_instance
