"""
Simple logging configuration.
"""
import logging
import logging.handlers
from enum import Enum
from pathlib import Path


class LogCategory(str, Enum):
    """Enumeration for standardized log categories."""
    APP = "app"
    API_REQUESTS = "app.api_requests"
    INTEGRATIONS = "app.integrations"
    SYNC = "app.integrations.sync"
    ERRORS = "app.errors"
    DB = "app.db"
    SECURITY = "app.security"


DEFAULT_LOG_LEVEL = logging.INFO

# Fields that should be masked in logs
SENSITIVE_FIELDS = {
    'password',
    'token',
    'accesstoken',
    'refreshtoken',
    'access_token',
    'refresh_token',
    'authorization',
    'secret',
    'secret_key',
    'client_secret',
    'api_key',
    'apikey',
    'private_key',
    'public_token',
    'music_user_token',
    'upload_token',
    'uploadtoken',
    'database_url',
    'postgres_password',
    'redis_url',
    'celery_broker_url',
}

# Short names masked only on an exact key match ("country_code" stays readable)
EXACT_SENSITIVE_FIELDS = {
    'code',
    'auth_code',
}


def _sanitize_data(data):
    """
    Sanitize data to mask sensitive fields.

    Recursively processes dictionaries, lists, and strings to mask sensitive information.
    For URLs, attempts to mask credentials in connection strings.
    """
    if data is None:
        return data

    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            key_lower = str(key).lower()
            if key_lower in EXACT_SENSITIVE_FIELDS or any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
                sanitized[key] = '***MASKED***'
            else:
                sanitized[key] = _sanitize_data(value)
        return sanitized

    if isinstance(data, list):
        return [_sanitize_data(item) for item in data]

    if isinstance(data, str):
        if '@' in data and '://' in data:
            try:
                scheme_part, rest = data.split('://', 1)
                if '@' in rest:
                    user_pass, host_part = rest.rsplit('@', 1)
                    if ':' in user_pass:
                        user, _ = user_pass.split(':', 1)
                        return f"{scheme_part}://{user}:***@{host_part}"
                    return f"{scheme_part}://{user_pass}@{host_part}"
            except (ValueError, IndexError):
                pass

        # Very long opaque strings are almost always provider tokens
        if len(data) > 64 and all(c.isalnum() or c in '-_.' for c in data):
            return '***MASKED***'

        return data

    return data


def _resolve_log_level(level_value, default=DEFAULT_LOG_LEVEL):
    """Resolve string/integer log level inputs to a logging level."""
    if isinstance(level_value, str):
        candidate = level_value.strip()
        if not candidate:
            return default, True
        if candidate.isdigit():
            level_value = int(candidate)
        else:
            try:
                return logging._checkLevel(candidate.upper()), False
            except (ValueError, TypeError):
                return default, True
    try:
        return logging._checkLevel(level_value), False
    except (ValueError, TypeError):
        return default, True


def _get_settings():
    """Lazy import to avoid circular dependency with config module."""
    from app.core.config import settings  # local import to break circular dependency
    return settings


def setup_logging():
    """Setup logging configuration."""
    settings = _get_settings()

    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / (settings.log_file or "app.log")

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    resolved_level, used_default_level = _resolve_log_level(settings.log_level)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(resolved_level)

    file_handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(resolved_level)

    root_logger.setLevel(resolved_level)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    logging.getLogger(LogCategory.APP).setLevel(resolved_level)
    logging.getLogger(LogCategory.INTEGRATIONS).setLevel(resolved_level)
    logging.getLogger(LogCategory.DB).setLevel(logging.INFO)
    logging.getLogger(LogCategory.SECURITY).setLevel(logging.INFO)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if used_default_level:
        logger.warning(
            "Invalid log level '%s' in configuration, falling back to INFO",
            settings.log_level
        )
    logger.info(
        "Logging configured - Level: %s, file: %s",
        logging.getLevelName(resolved_level),
        log_path,
    )


def _log_with_context(logger: logging.Logger, level: int, message: str, request_id: str = None, exc_info: bool = False, **kwargs):
    """Internal helper to format logs with an optional request ID and extra context.

    Args:
        logger: Logger instance to use
        level: Logging level
        message: Log message
        request_id: Optional request ID for context
        exc_info: Whether to include exception traceback
        **kwargs: Additional context appended to the message (e.g., user_id, provider).
                  Sensitive fields are masked.
    """
    log_message = f"[{request_id}] {message}" if request_id else message

    if kwargs:
        sanitized_kwargs = _sanitize_data(kwargs)
        extra_context = ", ".join(f"{k}={v}" for k, v in sanitized_kwargs.items())
        log_message = f"{log_message} ({extra_context})"

    logger.log(level, log_message, exc_info=exc_info)


def log_api_request(method: str, path: str, status_code: int, duration_ms: float, request_id: str = None):
    """Log API requests with request ID."""
    logger = logging.getLogger(LogCategory.API_REQUESTS)
    message = f"{method} {path} - {status_code} - {duration_ms}ms"
    _log_with_context(logger, logging.INFO, message, request_id)


def log_sync_event(provider: str, user_id: str, outcome: str, **kwargs):
    """Log the outcome of one provider sync run."""
    logger = logging.getLogger(LogCategory.SYNC)
    message = f"Sync {outcome} for {provider}"
    _log_with_context(logger, logging.INFO, message, user_id=user_id, **kwargs)


def log_info(message: str, request_id: str = None, **kwargs):
    """Log info messages with request ID."""
    logger = logging.getLogger(LogCategory.APP)
    _log_with_context(logger, logging.INFO, message, request_id, **kwargs)


def log_debug(message: str, request_id: str = None, **kwargs):
    """Log debug messages with request ID."""
    logger = logging.getLogger(LogCategory.APP)
    _log_with_context(logger, logging.DEBUG, message, request_id, **kwargs)


def log_warning(message: str, request_id: str = None, **kwargs):
    """Log warning messages with request ID."""
    logger = logging.getLogger(LogCategory.APP)
    _log_with_context(logger, logging.WARNING, message, request_id, **kwargs)


def log_error(error: Exception | str, request_id: str = None, user_id: str = None, **kwargs):
    """Log errors with request ID.

    Args:
        error: Exception object or error message string
        request_id: Optional request ID for context
        user_id: Optional user ID for context
        **kwargs: Additional context (e.g., provider, resource)
    """
    logger = logging.getLogger(LogCategory.ERRORS)
    user_info = f" (user: {user_id})" if user_id else ""
    message = f"Error: {str(error)}{user_info}"
    # exc_info should only be True if we have an actual Exception
    exc_info = isinstance(error, Exception)
    _log_with_context(logger, logging.ERROR, message, request_id, exc_info=exc_info, **kwargs)
