"""
Configuration Validator
Parses and validates raw string option values
"""

import logging
import re
from datetime import timedelta

logger = logging.getLogger(__name__)

_DURATION_UNITS = {
    'ms': timedelta(milliseconds=1),
    'milli': timedelta(milliseconds=1),
    'millis': timedelta(milliseconds=1),
    's': timedelta(seconds=1),
    'sec': timedelta(seconds=1),
    'secs': timedelta(seconds=1),
    'min': timedelta(minutes=1),
    'mins': timedelta(minutes=1),
    'm': timedelta(minutes=1),
    'h': timedelta(hours=1),
    'd': timedelta(days=1),
}

_DURATION_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$')
_ISO_DURATION_RE = re.compile(
    r'^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$'
)


class ConfigValidator:
    """Validate configuration values"""

    @staticmethod
    def parse_duration(value, name: str) -> timedelta:
        """
        Parse a duration option.

        Accepts timedelta, '<number><unit>' (ms, s, min/m, h, d) and ISO-8601
        ('PT1M'). A bare number is milliseconds.
        """
        if isinstance(value, timedelta):
            duration = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            duration = timedelta(milliseconds=value)
        else:
            text = str(value).strip()
            iso = _ISO_DURATION_RE.match(text.upper())
            # 'P' and 'PT' match with every component empty
            if iso and any(iso.groupdict().values()):
                parts = {k: float(v) for k, v in iso.groupdict().items() if v}
                duration = timedelta(**parts)
            else:
                match = _DURATION_RE.match(text)
                if not match:
                    raise ValueError(f"Invalid {name}: {value}. Expected a duration such as 30s, 5m or 1h")
                amount, unit = match.groups()
                unit = unit.lower() or 'ms'
                if unit not in _DURATION_UNITS:
                    raise ValueError(f"Invalid {name}: unknown duration unit '{unit}'")
                duration = _DURATION_UNITS[unit] * float(amount)

        if duration < timedelta(0):
            raise ValueError(f"{name} must be non-negative, got {duration}")
        return duration

    @staticmethod
    def parse_bool(value, name: str) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ('true', '1', 'yes'):
            return True
        if text in ('false', '0', 'no'):
            return False
        raise ValueError(f"Invalid {name}: {value}. Must be true or false")

    @staticmethod
    def validate_fraction(value, name: str, allow_zero: bool = True, allow_one: bool = True) -> float:
        """Validate a value in [0, 1] with optionally open ends"""
        try:
            val = float(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid {name}: {value}. Must be a number") from e

        if val < 0 or val > 1:
            raise ValueError(f"{name} must be between 0 and 1, got {val}")
        if not allow_zero and val == 0:
            raise ValueError(f"{name} must be greater than 0")
        if not allow_one and val == 1:
            raise ValueError(f"{name} must be less than 1")
        return val

    @staticmethod
    def validate_positive_int(value, name: str) -> int:
        try:
            val = int(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid {name}: {value}. Must be an integer") from e
        if val < 1:
            raise ValueError(f"{name} must be at least 1, got {val}")
        return val

    @staticmethod
    def validate_check_interval(interval: str) -> int:
        """Validate reconciliation interval in seconds"""
        try:
            value = int(interval)
        except ValueError as e:
            raise ValueError(f"Invalid CHECK_INTERVAL: {interval}. Must be an integer") from e
        if value < 5:
            raise ValueError(f"CHECK_INTERVAL must be at least 5 seconds, got {value}")
        if value > 3600:
            raise ValueError(f"CHECK_INTERVAL must be at most 3600 seconds (1 hour), got {value}")
        return value

    @staticmethod
    def validate_url(url: str, name: str) -> str:
        if not url:
            raise ValueError(f"{name} is required")
        if not url.startswith(('http://', 'https://')):
            raise ValueError(f"Invalid {name} format: {url}. Must start with http:// or https://")
        if len(url) > 2048:
            raise ValueError(f"{name} too long (max 2048 chars)")
        return url.strip()

    @staticmethod
    def validate_port(port: str, name: str = "PORT") -> int:
        """Validate port number"""
        try:
            val = int(port)
        except ValueError as e:
            raise ValueError(f"Invalid {name}: {port}. Must be an integer") from e
        if val < 1 or val > 65535:
            raise ValueError(f"{name} must be between 1 and 65535, got {val}")
        return val
