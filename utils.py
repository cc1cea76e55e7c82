"""
Utilities module for the escrow service.

Provides helper functions for logging, validation, formatting,
webhook verification and M-Pesa-specific operations.
"""

import base64
import hashlib
import hmac
import logging
import re
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, Tuple


# ANSI color codes for console output
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'


class ColoredFormatter(logging.Formatter):
    """Formatter that colours level and logger name on the console."""

    COLORS = {
        'DEBUG': Colors.GRAY,
        'INFO': Colors.BLUE,
        'WARNING': Colors.YELLOW,
        'ERROR': Colors.RED,
        'CRITICAL': f"{Colors.BOLD}{Colors.RED}",
    }

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy so the file handler sees the plain record
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, Colors.RESET)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.name = f"{Colors.CYAN}{record.name}{Colors.RESET}"
        return super().format(record)


TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
JSON_FORMAT = '{"time": "%(asctime)s", "name": "%(name)s", "level": "%(levelname)s", "message": "%(message)s"}'


def setup_logger(
    name: Optional[str] = None,
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: str = 'text',
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    colorful_console: bool = True
) -> logging.Logger:
    """
    Set up a logger with a console handler and an optional rotating file handler.

    Called once by the entry point on the root logger so every module's
    ``logging.getLogger(__name__)`` inherits the handlers.

    Args:
        name: Logger name (None configures the root logger)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        log_format: Format type ('text' or 'json')
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        colorful_console: Whether to use colored console output

    Returns:
        Configured logger instance
    """
    level = getattr(logging, log_level.upper())
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    formatter_str = JSON_FORMAT if log_format == 'json' else TEXT_FORMAT

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    if colorful_console and log_format != 'json':
        console_handler.setFormatter(ColoredFormatter(formatter_str))
    else:
        console_handler.setFormatter(logging.Formatter(formatter_str))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(formatter_str))
        logger.addHandler(file_handler)

    return logger


def validate_kenyan_phone(phone: Optional[str]) -> Tuple[bool, Optional[str], Optional[str]]:
    """
    Validate a Kenyan phone number and normalize it to 254XXXXXXXXX.

    Accepts formats:
    - 254XXXXXXXXX (preferred)
    - +254XXXXXXXXX
    - 07XXXXXXXX or 01XXXXXXXX
    - 7XXXXXXXX or 1XXXXXXXX

    Args:
        phone: Phone number to validate

    Returns:
        Tuple of (is_valid, formatted_number, error_message)

    Example:
        >>> is_valid, formatted, error = validate_kenyan_phone('0712345678')
        >>> print(formatted)
        254712345678
    """
    if not phone:
        return False, None, "Phone number is required"

    phone = re.sub(r'[\s\-]', '', str(phone))
    if phone.startswith('+'):
        phone = phone[1:]

    if not phone.isdigit():
        return False, None, "Phone number must contain digits only"

    if phone.startswith('254'):
        if len(phone) == 12:
            return True, phone, None
        return False, None, "Invalid format. Expected 254XXXXXXXXX (12 digits)"

    if phone.startswith('0'):
        if len(phone) == 10:
            return True, f"254{phone[1:]}", None
        return False, None, "Invalid format. Expected 0XXXXXXXXX (10 digits)"

    if len(phone) == 9:
        return True, f"254{phone}", None

    return False, None, (
        "Invalid phone number format. Use: 254XXXXXXXXX, "
        "+254XXXXXXXXX, 0XXXXXXXXX, or XXXXXXXXX"
    )


def to_national_number(phone: str) -> str:
    """254712345678 -> 712345678, the subscriber number without country code."""
    return phone[3:] if phone.startswith('254') else phone.lstrip('0')


def parse_amount(
    amount: Any,
    min_amount: Decimal = Decimal('1'),
    max_amount: Decimal = Decimal('500000')
) -> Tuple[bool, Optional[Decimal], Optional[str]]:
    """
    Validate a money amount and convert it to a two-place Decimal.

    Floats are converted through their string form so 0.1 stays 0.1.

    Args:
        amount: Amount to validate (str, int, Decimal or float)
        min_amount: Minimum allowed amount
        max_amount: Maximum allowed amount

    Returns:
        Tuple of (is_valid, amount_as_decimal, error_message)
    """
    if isinstance(amount, bool) or amount is None:
        return False, None, f"Invalid amount format: '{amount}'"

    try:
        if isinstance(amount, str):
            amount = amount.replace(',', '').strip()
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return False, None, f"Invalid amount format: '{amount}'"

    if not value.is_finite():
        return False, None, f"Invalid amount format: '{amount}'"

    if value != value.quantize(Decimal('0.01')):
        return False, None, "Amount must have at most two decimal places"

    if value <= 0:
        return False, None, "Amount must be greater than zero"

    if value < min_amount:
        return False, None, f"Amount must be at least KES {format_currency(min_amount)}"

    if value > max_amount:
        return False, None, f"Amount must not exceed KES {format_currency(max_amount)}"

    return True, value.quantize(Decimal('0.01')), None


def to_whole_shillings(amount: Decimal) -> int:
    """Round a Decimal amount to the whole units mobile-money APIs accept."""
    return int(amount.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def format_currency(amount: Any, currency: str = '') -> str:
    """
    Format an amount with thousands separators.

    Example:
        >>> format_currency(Decimal('1500'), 'KES')
        'KES 1,500.00'
    """
    text = f"{Decimal(str(amount)):,.2f}"
    return f"{currency} {text}" if currency else text


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data like phone numbers or credentials.

    Example:
        >>> mask_sensitive_data('254712345678', 4)
        '********5678'
    """
    if not data or len(data) <= visible_chars:
        return '*' * len(data) if data else ''

    return '*' * (len(data) - visible_chars) + data[-visible_chars:]


def get_mpesa_timestamp() -> str:
    """
    Generate M-Pesa timestamp in the required format.

    Returns:
        Timestamp string in format YYYYMMDDHHmmss
    """
    return datetime.now().strftime('%Y%m%d%H%M%S')


def generate_mpesa_password(
    shortcode: str,
    passkey: str,
    timestamp: Optional[str] = None
) -> str:
    """
    Generate M-Pesa password by Base64 encoding: shortcode + passkey + timestamp.

    Example:
        >>> generate_mpesa_password('174379', 'mypasskey', '20231215143022')
        'MTc0Mzc5bXlwYXNza2V5MjAyMzEyMTUxNDMwMjI='
    """
    if timestamp is None:
        timestamp = get_mpesa_timestamp()

    raw_password = f"{shortcode}{passkey}{timestamp}"
    return base64.b64encode(raw_password.encode('utf-8')).decode('utf-8')


def parse_mpesa_timestamp(value: Any) -> Optional[datetime]:
    """Parse a YYYYMMDDHHmmss value as sent in M-Pesa callbacks."""
    if value is None:
        return None
    try:
        return datetime.strptime(str(value), '%Y%m%d%H%M%S')
    except ValueError:
        return None


def compute_webhook_signature(body: bytes, secret: str) -> str:
    """HMAC-SHA256 hex digest of a raw webhook body."""
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Check a webhook signature header against the raw request body.

    Accepts both a bare hex digest and the ``sha256=<hex>`` form.
    """
    if not signature:
        return False
    if signature.startswith('sha256='):
        signature = signature[len('sha256='):]
    expected = compute_webhook_signature(body, secret)
    return hmac.compare_digest(expected, signature)


def format_provider_error(error_code: Optional[Any] = None, error_message: Optional[str] = None) -> str:
    """
    Turn a provider result code into a message fit for the buyer.

    Args:
        error_code: Provider result code
        error_message: Raw provider description

    Returns:
        User-friendly error message
    """
    error_map = {
        '1': 'Insufficient balance. Please top up and try again.',
        '17': 'Request cancelled by user.',
        '1032': 'Transaction cancelled by user.',
        '1037': 'The transaction timed out. Please try again.',
        '2001': 'Wrong PIN entered. Please try again.',
    }

    if error_code is not None and str(error_code) in error_map:
        return error_map[str(error_code)]

    if error_message:
        lowered = error_message.lower()
        if 'timeout' in lowered or 'timed out' in lowered:
            return 'The request timed out. Please try again.'
        if 'cancel' in lowered:
            return 'Transaction cancelled by user.'
        return error_message

    return 'An unknown error occurred'
