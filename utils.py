"""
Utilities module for the Escrow Engine.

Provides helper functions for logging, fee calculation, formatting
and user-facing error messages.
"""

import re
import logging
import sys
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union
from logging.handlers import RotatingFileHandler
from pathlib import Path


# ANSI color codes for console output
class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GRAY = '\033[90m'


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to console output."""

    COLORS = {
        'DEBUG': Colors.GRAY,
        'INFO': Colors.BLUE,
        'WARNING': Colors.YELLOW,
        'ERROR': Colors.RED,
        'CRITICAL': f"{Colors.BOLD}{Colors.RED}",
    }

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record with colors.

        The record is copied first so file handlers sharing it keep
        plain level names.
        """
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, Colors.RESET)
        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.name = f"{Colors.CYAN}{record.name}{Colors.RESET}"
        return super().format(record)


def setup_logger(
    name: str = 'escrow_engine',
    log_level: str = 'INFO',
    log_file: Optional[str] = None,
    log_format: str = 'text',
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    colorful_console: bool = True
) -> logging.Logger:
    """
    Set up a logger with both console and file handlers.

    Args:
        name: Logger name ('' configures the root logger)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        log_format: Format type ('text' or 'json')
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        colorful_console: Whether to use colored console output

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logger('escrow_engine', 'DEBUG', 'logs/app.log')
        >>> logger.info('Application started')
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    # Define log format
    if log_format == 'json':
        formatter_str = '{"time": "%(asctime)s", "name": "%(name)s", "level": "%(levelname)s", "message": "%(message)s"}'
    else:
        formatter_str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    # Console handler with colors
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))

    if colorful_console and log_format != 'json':
        console_formatter = ColoredFormatter(formatter_str)
    else:
        console_formatter = logging.Formatter(formatter_str)

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    # File handler with rotation (if log file is specified)
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(logging.Formatter(formatter_str))
        logger.addHandler(file_handler)

    return logger


# ==================== MONEY ====================

CENTS = Decimal('0.01')

Number = Union[int, float, str, Decimal]


def to_decimal(amount: Number) -> Decimal:
    """
    Convert an amount to a Decimal rounded to cents.

    Floats go through str() so 0.1 stays 0.1.
    """
    if isinstance(amount, Decimal):
        value = amount
    else:
        value = Decimal(str(amount))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def calculate_transaction_fee(amount: Number, fee_percentage: Number) -> Decimal:
    """
    Calculate the platform fee for a transaction amount.

    Args:
        amount: Transaction amount
        fee_percentage: Fee as a decimal fraction (0.015 = 1.5%)

    Returns:
        Fee rounded to cents, zero for empty or non-positive amounts

    Example:
        >>> calculate_transaction_fee(100, '0.015')
        Decimal('1.50')
    """
    if not amount:
        return Decimal('0.00')
    value = Decimal(str(amount))
    if value <= 0:
        return Decimal('0.00')
    return to_decimal(value * Decimal(str(fee_percentage)))


def get_fee_percentage_display(fee_percentage: Number) -> str:
    """
    Get fee percentage as a display string.

    Example:
        >>> get_fee_percentage_display('0.015')
        '1.5%'
    """
    percent = Decimal(str(fee_percentage)) * 100
    return f"{percent.quantize(Decimal('0.1'))}%"


def format_currency(amount: Number, symbol: str = '$') -> str:
    """
    Format amount as currency string.

    Example:
        >>> format_currency(1234567.5)
        '$1,234,567.50'
    """
    value = to_decimal(amount)
    sign = '-' if value < 0 else ''
    return f"{sign}{symbol}{abs(value):,.2f}"


def sanitize_input(text: Optional[str], max_length: int = 500) -> str:
    """
    Sanitize free text before it is stored or sent in a notification.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text

    Example:
        >>> sanitize_input('  <b>late</b> delivery ')
        'blate/b delivery'
    """
    if not text:
        return ''

    text = text[:max_length]

    # Remove markup characters
    text = re.sub(r'[<>`]', '', text)

    # Remove control characters
    text = ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')

    return text.strip()


# ==================== ERROR MESSAGES ====================

ERROR_MESSAGES = {
    'not_found': 'We could not find what you were looking for. Please refresh and try again.',
    'forbidden': 'You cannot perform this action.',
    'invalid_transition': 'This action is no longer available for this transaction.',
    'insufficient_funds': 'Please add funds before paying.',
    'missing_reason': 'Please provide a reason for the dispute.',
    'concurrent_modification': 'This transaction was just updated. Please refresh and try again.',
    'unavailable': 'The service is temporarily unavailable. Please try again later.',
    'validation': 'Please check the transaction details and try again.',
}


def format_error_message(
    error_kind: Optional[str] = None,
    error_message: Optional[str] = None,
    user_friendly: bool = True
) -> str:
    """
    Format error messages to be user-friendly.

    Args:
        error_kind: Transition error kind (e.g. 'insufficient_funds')
        error_message: Raw error message
        user_friendly: Whether to return user-friendly message

    Returns:
        Formatted error message

    Example:
        >>> format_error_message('insufficient_funds')
        'Please add funds before paying.'
    """
    if not user_friendly:
        return error_message or 'An unknown error occurred'

    if error_kind and error_kind in ERROR_MESSAGES:
        return ERROR_MESSAGES[error_kind]

    return 'Something went wrong. Please try again or contact support if the problem persists.'
