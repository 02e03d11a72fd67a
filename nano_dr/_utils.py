import logging
import re
import secrets
import sys
from datetime import datetime, timezone
from typing import Iterable, List, Optional

logger = logging.getLogger("nano-dr")

_SECRET_FLAG_PATTERN = re.compile(r"^(--password|--pass|--secret|--key)=.*$", re.IGNORECASE)
_URI_USERINFO_PATTERN = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)(?P<user>[^:/@]*):(?P<password>[^@/]*)@", re.IGNORECASE)
_SECRET_SHORT_FLAGS = {"-a", "--password", "--pass"}


def configure_logging(level: int = logging.INFO) -> logging.Logger:
    """Attach an app-managed stdout handler to the package logger."""
    logger.setLevel(level)
    logger.propagate = False
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    formatter = logging.Formatter(
        '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    return logger


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix kinds."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_backup_id(now: Optional[datetime] = None) -> str:
    """Generate a unique, sortable backup id.

    Returns:
        Backup ID in format: backup_YYYYMMDDTHHMMSSffffffZ_<random hex>
    """
    now = now or utcnow()
    timestamp = now.strftime("%Y%m%dT%H%M%S%fZ")
    return f"backup_{timestamp}_{secrets.token_hex(4)}"


def format_size(num_bytes: float) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(num_bytes)
    unit_index = 0
    while size >= 1024 and unit_index < len(units) - 1:
        size /= 1024
        unit_index += 1
    return f"{size:.2f} {units[unit_index]}"


def redact_args(args: Iterable[str], secrets_to_hide: Iterable[Optional[str]] = ()) -> List[str]:
    """Return a copy of a command line that is safe to log.

    Masks `--password=...` style flags, the value following `-a`/`--password`,
    passwords embedded in URIs and any explicitly supplied secret value.
    """
    hidden = [s for s in secrets_to_hide if s]
    redacted = []
    mask_next = False
    for arg in args:
        arg = str(arg)
        if mask_next:
            redacted.append("***")
            mask_next = False
            continue
        if arg in _SECRET_SHORT_FLAGS:
            redacted.append(arg)
            mask_next = True
            continue
        match = _SECRET_FLAG_PATTERN.match(arg)
        if match:
            redacted.append(f"{match.group(1)}=***")
            continue
        arg = _URI_USERINFO_PATTERN.sub(r"\g<scheme>\g<user>:***@", arg)
        for secret in hidden:
            arg = arg.replace(secret, "***")
        redacted.append(arg)
    return redacted


def find_secrets(args: Iterable[str]) -> List[str]:
    """Collect the secret values `redact_args` would mask in `args`."""
    found = []
    take_next = False
    for arg in args:
        arg = str(arg)
        if take_next:
            found.append(arg)
            take_next = False
            continue
        if arg in _SECRET_SHORT_FLAGS:
            take_next = True
            continue
        if _SECRET_FLAG_PATTERN.match(arg):
            found.append(arg.split("=", 1)[1])
            continue
        found.extend(m.group("password") for m in _URI_USERINFO_PATTERN.finditer(arg) if m.group("password"))
    return [s for s in found if s]
