import structlog
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional
from canvas_zoom_archiver.config.settings import settings


class LogConfig:
    """Centralized logging configuration"""

    def __init__(self, logs_dir: Optional[Path] = None):
        self.logs_dir = logs_dir or settings.state_path / "logs"
        self.logs_dir.mkdir(parents=True, exist_ok=True)

        # Log file paths
        self.main_log = self.logs_dir / "archiver.log"
        self.zoom_log = self.logs_dir / "zoom_api.log"
        self.error_log = self.logs_dir / "errors.log"

        # Log levels
        self.log_level = logging.DEBUG if settings.debug else logging.INFO
        self.file_log_level = logging.DEBUG  # Always debug for files

        # Formatters
        self.detailed_formatter = logging.Formatter(
            '%(asctime)s | %(name)-20s | %(levelname)-8s | %(funcName)-20s:%(lineno)-4d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        self.simple_formatter = logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    def create_rotating_handler(self, filepath: Path, max_bytes: int = 10*1024*1024, backup_count: int = 5) -> logging.Handler:
        """Create a rotating file handler with proper configuration"""
        handler = logging.handlers.RotatingFileHandler(
            filepath,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        handler.setLevel(self.file_log_level)
        handler.setFormatter(self.detailed_formatter)
        return handler

    def create_console_handler(self) -> logging.Handler:
        """Create console handler for stdout"""
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(self.log_level)

        # Use simple format for console in production, detailed in debug
        formatter = self.detailed_formatter if settings.debug else self.simple_formatter
        handler.setFormatter(formatter)
        return handler

    def create_error_handler(self) -> logging.Handler:
        """Create handler specifically for error logs"""
        handler = logging.handlers.RotatingFileHandler(
            self.error_log,
            maxBytes=5*1024*1024,
            backupCount=10,
            encoding='utf-8'
        )
        handler.setLevel(logging.ERROR)
        handler.setFormatter(self.detailed_formatter)
        return handler


def configure_logging(logs_dir: Optional[Path] = None):
    """Configure logging for the whole application"""
    config = LogConfig(logs_dir)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(config.log_level)
    root_logger.addHandler(config.create_console_handler())
    root_logger.addHandler(config.create_rotating_handler(config.main_log))
    root_logger.addHandler(config.create_error_handler())

    # Provider API traffic also goes to its own file
    zoom_logger = logging.getLogger("zoom")
    zoom_logger.handlers.clear()
    zoom_logger.setLevel(logging.DEBUG)
    zoom_logger.addHandler(config.create_rotating_handler(config.zoom_log))
    zoom_logger.addHandler(config.create_console_handler())
    zoom_logger.addHandler(config.create_error_handler())
    zoom_logger.propagate = False

    # SQLAlchemy and the browser bindings are noisy at DEBUG
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("playwright").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    configure_structlog()

    logger = structlog.get_logger("logging")
    logger.info("Logging system initialized",
                log_level=logging.getLevelName(config.log_level),
                logs_directory=str(config.logs_dir),
                debug_mode=settings.debug)


def configure_structlog():
    """Configure structlog with proper processors"""
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    # Add appropriate renderer based on environment
    if settings.debug:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structlog logger for the given name"""
    return structlog.get_logger(name)


def redact(value: Optional[str], keep: int = 6) -> str:
    """Shorten a secret so it can appear in logs."""
    if not value:
        return ""
    if len(value) <= keep:
        return "***"
    return f"{value[:keep]}..."
