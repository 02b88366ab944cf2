"""
Utilities module for the escrow service.

Provides helper functions for logging, formatting, input handling,
reference-code generation and bank-transfer content parsing.
"""

import re
import logging
import secrets
import string
import sys
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple, Mapping
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

        Args:
            record: Log record to format

        Returns:
            Formatted log message with color codes
        """
        # Work on a copy so file handlers sharing the record stay uncoloured
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, Colors.RESET)

        record.levelname = f"{color}{record.levelname}{Colors.RESET}"
        record.name = f"{Colors.CYAN}{record.name}{Colors.RESET}"

        return super().format(record)


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
    Set up a logger with both console and file handlers.

    With the default ``name=None`` the root logger is configured, so every
    module-level ``logging.getLogger(__name__)`` inherits the handlers.

    Args:
        name: Logger name (root logger when None)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        log_format: Format type ('text' or 'json')
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup files to keep
        colorful_console: Whether to use colored console output

    Returns:
        Configured logger instance

    Example:
        >>> logger = setup_logger(log_level='DEBUG', log_file='logs/escrow.log')
        >>> logger.info('Application started')
    """
    logger = logging.getLogger(name)
    level = getattr(logging, log_level.upper())
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers = []

    # Define log format
    if log_format == 'json':
        formatter_str = '{"time": "%(asctime)s", "name": "%(name)s", "level": "%(levelname)s", "message": "%(message)s"}'
    else:
        formatter_str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    # Console handler with colors
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

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
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(formatter_str))
        logger.addHandler(file_handler)

    return logger


def format_currency(amount: Decimal, currency: str = 'VND') -> str:
    """
    Format amount as currency string.

    Args:
        amount: Amount to format
        currency: Currency code (default: VND)

    Returns:
        Formatted currency string

    Example:
        >>> format_currency(Decimal('1234567'))
        '1,234,567 VND'
    """
    return f"{Decimal(amount):,.0f} {currency}"


def format_datetime(value: Optional[datetime]) -> str:
    """Render a timestamp for staff-facing text, or N/A."""
    if value is None:
        return 'N/A'
    return value.strftime('%Y-%m-%d %H:%M:%S')


def sanitize_input(text: Optional[str], max_length: int = 500) -> str:
    """
    Sanitize free text (dispute reasons, product names) before storing it.

    Args:
        text: Input text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text

    Example:
        >>> sanitize_input('  <b>broken</b> item  ')
        'bbroken/b item'
    """
    if not text:
        return ''

    # Truncate to max length
    text = text[:max_length]

    # Remove potentially dangerous characters
    text = re.sub(r'[<>"\';`]', '', text)

    # Remove control characters
    text = ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')

    return text.strip()


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging (e.g., account numbers, user ids).

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to keep visible at the end

    Returns:
        Masked string

    Example:
        >>> mask_sensitive_data('0123456789', 4)
        '******6789'
    """
    if not data or len(data) <= visible_chars:
        return '*' * len(data) if data else ''

    masked_length = len(data) - visible_chars
    return '*' * masked_length + data[-visible_chars:]


def generate_transaction_code() -> str:
    """Short human-readable transaction reference, e.g. ``GD7K2M9QXA``."""
    alphabet = string.ascii_uppercase + string.digits
    return 'GD' + ''.join(secrets.choice(alphabet) for _ in range(8))


def generate_room_id() -> str:
    """Six-character uppercase room id used by the join flow."""
    alphabet = string.ascii_uppercase + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(6))


def generate_room_password() -> str:
    return ''.join(secrets.choice(string.digits) for _ in range(6))


def deposit_transfer_code(deposit_id: str, prefix: str = 'NAP') -> str:
    """
    Build the content a payer puts on the bank transfer for a deposit.

    Example:
        >>> deposit_transfer_code('941397c5-1e0b-4c55-9a51-0a3c3c1e2f10')
        'NAP941397C5'
    """
    return f"{prefix}{deposit_id.replace('-', '')[:8].upper()}"


def extract_deposit_reference(
    content: Optional[str],
    prefix: str = 'NAP'
) -> Tuple[Optional[str], Optional[str]]:
    """
    Find a deposit reference inside free-text bank transfer content.

    Two formats are recognised: ``{prefix}`` followed by a full UUID (legacy)
    and ``{prefix}`` followed by 8 hex characters (short id prefix).

    Args:
        content: Transfer content as reported by the bank
        prefix: Reference prefix

    Returns:
        Tuple of (kind, value) where kind is 'uuid' or 'short', or (None, None)

    Example:
        >>> extract_deposit_reference('MBVCB.123.NAP941397C5.CT tu 0987')
        ('short', '941397c5')
    """
    if not content:
        return None, None

    escaped = re.escape(prefix)

    full_match = re.search(
        escaped + r'([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})',
        content,
        re.IGNORECASE
    )
    if full_match:
        return 'uuid', full_match.group(1).lower()

    short_match = re.search(escaped + r'([0-9a-f]{8})', content, re.IGNORECASE)
    if short_match:
        return 'short', short_match.group(1).lower()

    return None, None


def get_client_ip(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    """
    Resolve the caller's IP from proxy headers.

    Order: cf-connecting-ip, first x-forwarded-for hop, x-real-ip, fallback.
    """
    cf_ip = headers.get('cf-connecting-ip')
    if cf_ip:
        return cf_ip.strip()

    forwarded_for = headers.get('x-forwarded-for')
    if forwarded_for:
        first_hop = forwarded_for.split(',')[0].strip()
        if first_hop:
            return first_hop

    real_ip = headers.get('x-real-ip')
    if real_ip:
        return real_ip.strip()

    return fallback or 'unknown'
