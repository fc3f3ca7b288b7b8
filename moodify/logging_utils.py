"""
Unified logging utilities for Moodify.

Entrypoints call configure_logging() once at startup; library modules only
ever do `logger = logging.getLogger(__name__)`.
"""
import logging
import sys
import os
import re
import time
from pathlib import Path
from contextlib import contextmanager
from typing import Optional, Any, List, Union

_logging_configured = False
_session_id: Optional[str] = None
_HANDLER_TAG = "_moodify_handler"
_CONSOLE_FMT = '%(asctime)s | %(levelname)-5s | %(name)s | %(message)s'
_CONSOLE_FMT_WITH_SESSION = '%(asctime)s | %(levelname)-5s | %(name)s | session=%(session_id)s | %(message)s'
_FILE_FMT = '%(asctime)s | %(levelname)-5s | %(name)s | %(funcName)s:%(lineno)d | session=%(session_id)s | %(message)s'

NOISY_LOGGERS = ['urllib3', 'requests', 'openai', 'httpx', 'httpcore', 'asyncio']


class SessionIdFilter(logging.Filter):
    """Inject the current listening session id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = _session_id or "-"
        return True


def set_session_id(session_id: Optional[str]) -> None:
    """Set the listening session id attached to log records."""
    global _session_id
    _session_id = session_id


def configure_logging(
    level: str = 'INFO',
    log_file: Optional[str] = None,
    file_level: str = 'DEBUG',
    force: bool = False,
    session_id: Optional[str] = None,
    console: bool = True,
    show_session_id: bool = False,
) -> None:
    """
    Configure logging for the entire application.

    Subsequent calls are ignored unless force=True.

    Args:
        level: Console log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to log file
        file_level: Log level for file output (default DEBUG)
        force: If True, reconfigure even if already configured
        session_id: Optional listening session id to inject into log records
        console: Whether to add a console handler
        show_session_id: Include the session id in console output

    Environment variable overrides:
        LOG_LEVEL: Override the level parameter
        LOG_FILE: Override the log_file parameter
    """
    global _logging_configured

    if session_id:
        set_session_id(session_id)

    if _logging_configured and not force:
        return

    level = os.getenv('LOG_LEVEL', level).upper()
    if log_file is None:
        log_file = os.getenv('LOG_FILE')

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    # Only remove handlers this module installed
    for handler in root.handlers[:]:
        if getattr(handler, _HANDLER_TAG, False):
            root.removeHandler(handler)

    root.filters = [f for f in root.filters if not isinstance(f, SessionIdFilter)]
    root.addFilter(SessionIdFilter())

    with_session = show_session_id or level == "DEBUG"

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, level, logging.INFO))
        console_handler.setFormatter(logging.Formatter(
            _CONSOLE_FMT_WITH_SESSION if with_session else _CONSOLE_FMT,
            datefmt='%H:%M:%S',
        ))
        console_handler.addFilter(SessionIdFilter())
        setattr(console_handler, _HANDLER_TAG, True)
        root.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(getattr(logging, file_level.upper(), logging.DEBUG))
        file_handler.setFormatter(logging.Formatter(_FILE_FMT, datefmt='%Y-%m-%d %H:%M:%S'))
        file_handler.addFilter(SessionIdFilter())
        setattr(file_handler, _HANDLER_TAG, True)
        root.addHandler(file_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _logging_configured = True
    logging.getLogger(__name__).debug(
        f"Logging configured: level={level}, file={log_file or 'none'}, session={_session_id or '-'}"
    )


def _format_elapsed(elapsed: float) -> str:
    if elapsed < 1:
        return f"{elapsed * 1000:.0f}ms"
    if elapsed < 60:
        return f"{elapsed:.1f}s"
    minutes, seconds = divmod(elapsed, 60)
    return f"{int(minutes)}m {seconds:.0f}s"


@contextmanager
def stage_timer(stage_name: str, logger: Optional[logging.Logger] = None):
    """
    Time a block and log how long it took.

    Logs the start at DEBUG and the completion at INFO. Works inside
    coroutines as long as the block itself does not span an await that
    should not be counted.

    Usage:
        with stage_timer("Session commit", logger):
            graph.commit_session(vibe, songs)
    """
    log = logger or logging.getLogger(__name__)
    log.debug(f"{stage_name} starting...")
    start = time.perf_counter()
    try:
        yield
    finally:
        log.info(f"{stage_name} completed in {_format_elapsed(time.perf_counter() - start)}")


_DEFAULT_REDACTIONS = [
    # Bearer tokens in headers
    (r'(Bearer\s+)[A-Za-z0-9._\-]+', r'\1***REDACTED***'),
    # api keys, tokens, secrets in key=value or "key": "value" form
    (r'(["\']?(?:api[_-]?key|access[_-]?token|refresh[_-]?token|token|secret|password|authorization)["\']?\s*[:=]\s*["\']?)([^"\'\s,}]+)(["\']?)', r'\1***REDACTED***\3'),
    # OpenAI style keys appearing bare
    (r'sk-[A-Za-z0-9_\-]{8,}', r'sk-***REDACTED***'),
    (r'/home/[^/]+', r'/home/***'),
    (r'/Users/[^/]+', r'/Users/***'),
    (r'[\w.-]+@[\w.-]+\.\w+', r'***@***.***'),
]


def redact(
    value: Any,
    keys: Optional[List[str]] = None,
    patterns: Optional[List[str]] = None,
) -> str:
    """
    Redact credentials and personal paths from a value before logging.

    Args:
        value: Value to redact (string, path, dict, headers)
        keys: Extra dict keys whose values should be hidden
        patterns: Additional regex patterns to redact

    Returns:
        Redacted string representation
    """
    if value is None:
        return "None"

    text = str(value)
    for pattern, replacement in _DEFAULT_REDACTIONS:
        text = re.sub(pattern, replacement, text, flags=re.IGNORECASE)

    for pattern in patterns or []:
        text = re.sub(pattern, '***REDACTED***', text)

    for key in keys or []:
        text = re.sub(
            rf'(["\']?{re.escape(key)}["\']?\s*[:=]\s*["\']?)([^"\'\s,}}]+)(["\']?)',
            r'\1***REDACTED***\3',
            text,
            flags=re.IGNORECASE,
        )
    return text


def truncate_list(items: List[Any], max_items: int = 3, format_fn=str) -> str:
    """
    Format a list for logging, truncating if needed.

    Returns:
        Formatted string like "Song A, Song B, Song C (+5 more)"
    """
    if not items:
        return "(none)"
    result = ', '.join(format_fn(item) for item in items[:max_items])
    if len(items) > max_items:
        result += f" (+{len(items) - max_items} more)"
    return result


def _human_time(seconds: float) -> str:
    """Render a human-friendly duration."""
    seconds = max(0, seconds)
    if seconds < 60:
        return f"{int(seconds)}s"
    minutes, sec = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m{sec:02d}s"
    hours, minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h{minutes:02d}m"
    days, hours = divmod(hours, 24)
    return f"{days}d{hours}h"


class ProgressLogger:
    """
    Periodic progress reporting for long batch jobs such as library ingestion.

    Summaries go out at INFO every interval_s seconds or every_n items;
    with verbose_each every item is also logged at DEBUG.
    """

    def __init__(
        self,
        logger: logging.Logger,
        total: Optional[int],
        label: str,
        unit: str = "items",
        interval_s: float = 15.0,
        every_n: int = 500,
        verbose_each: bool = False,
    ) -> None:
        self.logger = logger
        self.total = total if total and total > 0 else None
        self.label = label
        self.unit = unit
        self.interval_s = interval_s
        self.every_n = every_n
        self.verbose_each = verbose_each
        self.start_time = time.perf_counter()
        self.last_log_time = self.start_time
        self.last_count = 0
        self.processed = 0

    def _due(self) -> bool:
        now = time.perf_counter()
        if (now - self.last_log_time) >= self.interval_s:
            return True
        if (self.processed - self.last_count) >= self.every_n:
            return True
        return bool(self.total and self.processed >= self.total)

    def _summary(self) -> str:
        elapsed = time.perf_counter() - self.start_time
        rate = self.processed / elapsed if elapsed > 0 else 0.0
        msg = f"{self.label}: {self.processed:,}"
        if self.total:
            msg += f"/{self.total:,} ({self.processed / self.total * 100:.1f}%)"
        msg += f" | {rate:.1f} {self.unit}/s"
        if self.total and rate > 0:
            msg += f" | ETA {_human_time(max(self.total - self.processed, 0) / rate)}"
        return msg

    def update(self, n: int = 1, detail: Optional[str] = None) -> None:
        self.processed += n
        if self.verbose_each and detail:
            self.logger.debug(f"{self.label} item {self.processed}: {detail}")
        if self._due():
            self.logger.info(self._summary())
            self.last_log_time = time.perf_counter()
            self.last_count = self.processed

    def finish(self, detail: Optional[str] = None) -> None:
        if detail:
            self.logger.info(detail)
        elapsed = time.perf_counter() - self.start_time
        self.logger.info(
            f"{self.label} complete: {self.processed:,} {self.unit} in {_human_time(elapsed)}"
        )


def add_logging_args(parser) -> None:
    """
    Add standard logging CLI arguments to an argparse parser.

    Usage:
        parser = argparse.ArgumentParser()
        add_logging_args(parser)
        args = parser.parse_args()
        configure_logging(level=resolve_log_level(args), log_file=args.log_file)
    """
    group = parser.add_argument_group('logging')
    group.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=None,
        help='Set logging level (default: from config, else INFO)'
    )
    group.add_argument('--debug', action='store_true', help='Shortcut for --log-level DEBUG')
    group.add_argument('--quiet', action='store_true', help='Shortcut for --log-level WARNING')
    group.add_argument('--log-file', type=str, metavar='PATH', help='Write logs to file')
    group.add_argument(
        '--show-session-id',
        action='store_true',
        help='Include the listening session id in console logs (always in file logs)',
    )


def resolve_log_level(args, default: str = 'INFO') -> str:
    """
    Resolve log level from parsed arguments.

    Priority: --debug > --quiet > --log-level > default
    """
    if getattr(args, 'debug', False):
        return 'DEBUG'
    if getattr(args, 'quiet', False):
        return 'WARNING'
    return getattr(args, 'log_level', None) or default


class RunSummary:
    """
    Collect counters during a job and log them as a block at the end.

    Usage:
        summary = RunSummary("Liked songs ingestion")
        summary.increment("songs")
        summary.log()
    """

    def __init__(self, title: str, logger: Optional[logging.Logger] = None):
        self.title = title
        self.logger = logger or logging.getLogger(__name__)
        self.metrics: dict = {}
        self.start_time = time.perf_counter()

    def add(self, key: str, value: Union[int, float, str]) -> None:
        self.metrics[key] = value

    def increment(self, key: str, amount: int = 1) -> None:
        self.metrics[key] = self.metrics.get(key, 0) + amount

    def log(self, level: int = logging.INFO) -> None:
        elapsed = time.perf_counter() - self.start_time
        self.logger.log(level, f"{self.title} summary ({_human_time(elapsed)}):")
        for key, value in self.metrics.items():
            display_key = key.replace('_', ' ')
            if isinstance(value, float):
                self.logger.log(level, f"  {display_key}: {value:.2f}")
            else:
                self.logger.log(level, f"  {display_key}: {value}")
