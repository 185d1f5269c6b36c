"""
Recall - Logging System
Timestamped console output with rich formatting + file logging
"""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.theme import Theme

# Custom theme for console output
THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "timestamp": "dim white",
    "header": "bold magenta",
    "config": "dim cyan",
})

# Global console instance
console = Console(theme=THEME)

# Module-level logger instance
_logger: Optional[logging.Logger] = None
_log_file_path: Optional[Path] = None

# Secrets that must never reach a log line
_SECRET_PATTERNS = [
    re.compile(r"sk-ant-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"sk-[A-Za-z0-9_\-]{16,}"),
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._\-]{8,}"),
    re.compile(r"(?i)((?:api[_-]?key|x-api-key|authorization)[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]{6,}"),
]


def setup_logging(
    log_file_path: Path,
    level: str = "INFO",
    log_to_file: bool = True,
    log_to_console: bool = True
) -> logging.Logger:
    """
    Initialize the logging system.

    Args:
        log_file_path: Path to the diagnostic log file
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_to_file: Whether to write logs to file
        log_to_console: Whether to write logs to console (via rich)

    Returns:
        Configured logger instance
    """
    global _logger, _log_file_path

    _log_file_path = log_file_path

    _logger = logging.getLogger("recall")
    _logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    _logger.handlers.clear()

    if log_to_file:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)  # File gets everything
        file_formatter = logging.Formatter(
            "[%(asctime)s] %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        file_handler.setFormatter(file_formatter)
        _logger.addHandler(file_handler)

    console.quiet = not log_to_console

    return _logger


def redact_for_log(text: str) -> str:
    """
    Mask API keys and bearer tokens in text destined for a log line.

    Args:
        text: Raw text, typically a provider error message

    Returns:
        Text with every secret-looking token replaced by ***
    """
    if not text:
        return text
    redacted = text
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            redacted = pattern.sub(lambda m: f"{m.group(1)}***", redacted)
        else:
            redacted = pattern.sub("***", redacted)
    return redacted


def get_timestamp() -> str:
    """Get formatted timestamp for console output."""
    return datetime.now().strftime("%H:%M:%S")


def log(message: str, level: str = "info", prefix: str = "") -> None:
    """
    Log a message to both console and file.

    Args:
        message: The message to log
        level: Log level (debug, info, warning, error, success)
        prefix: Optional emoji/prefix for console output
    """
    timestamp = get_timestamp()
    message = redact_for_log(message)

    style = level if level in ("info", "warning", "error", "success") else "info"
    prefix_str = f"{prefix} " if prefix else ""
    if level != "debug":
        console.print(f"[timestamp][{timestamp}][/timestamp] {prefix_str}{message}", style=style)

    if _logger:
        log_level = getattr(logging, level.upper(), logging.INFO)
        _logger.log(log_level, f"{prefix_str}{message}")


def log_debug(message: str, prefix: str = "") -> None:
    """Log a debug message (file only)."""
    log(message, "debug", prefix)


def log_info(message: str, prefix: str = "") -> None:
    """Log an info message."""
    log(message, "info", prefix)


def log_success(message: str, prefix: str = "") -> None:
    """Log a success message."""
    log(message, "info", prefix or "✅")


def log_warning(message: str, prefix: str = "") -> None:
    """Log a warning message."""
    log(message, "warning", prefix or "⚠️")


def log_error(message: str, prefix: str = "") -> None:
    """Log an error message."""
    log(message, "error", prefix or "❌")


def log_startup_banner(version: str, project_name: str) -> None:
    """Print the startup banner."""
    separator = "=" * 60
    timestamp = get_timestamp()

    console.print(f"\n[timestamp][{timestamp}][/timestamp] [header]{separator}[/header]")
    console.print(f"[timestamp][{timestamp}][/timestamp] [header]🧠 {project_name} - v{version} - Memory Extraction[/header]")
    console.print(f"[timestamp][{timestamp}][/timestamp] [header]{separator}[/header]")

    if _logger:
        _logger.info(separator)
        _logger.info(f"{project_name} - v{version} - Memory Extraction")
        _logger.info(separator)


def log_config(key: str, value: str, indent: int = 0) -> None:
    """Print a configuration value."""
    indent_str = "   " * indent
    value = redact_for_log(str(value))
    console.print(f"[timestamp][{get_timestamp()}][/timestamp] [config]{indent_str}{key}: {value}[/config]")

    if _logger:
        _logger.info(f"{indent_str}{key}: {value}")


def log_section(title: str, emoji: str = "📋") -> None:
    """Print a section title."""
    timestamp = get_timestamp()
    console.print(f"\n[timestamp][{timestamp}][/timestamp] [header]{emoji} {title}:[/header]")

    if _logger:
        _logger.info(f"{title}:")


def log_subsection(message: str, emoji: str = "", indent: int = 1) -> None:
    """Print a subsection item."""
    timestamp = get_timestamp()
    indent_str = "   " * indent
    prefix = f"{emoji} " if emoji else ""
    console.print(f"[timestamp][{timestamp}][/timestamp] [config]{indent_str}{prefix}{message}[/config]")

    if _logger:
        _logger.info(f"{indent_str}{prefix}{message}")
