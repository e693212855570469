"""
dialgov Logging System
======================

A unified, thread-safe logging utility for the governance engine. This module
integrates with the standard Python `logging` library and the `rich` library
to provide structured, safe, and visually distinct logging outputs.

Usage:
    >>> from dialgov.logger import get_logger
    >>> logger = get_logger(__name__)
    >>> logger.info("Engine started")
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import Optional, List, Tuple

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_LEVEL,
    LOG_FORMAT,
    LOG_DATE_FORMAT,
    LOG_MAX_FILE_SIZE,
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_TO_FILE,
)


PROJECT_ROOT = Path(__file__).parent.parent
LOG_FILE_PATH = PROJECT_ROOT / "logs" / "dialgov.log"

_LEFTOVER_SPECIFIER_RE = re.compile(r"\([A-Za-z_]\w*\)[A-Za-z]")


class LogManager:
    """
    Manages logging configuration via the Singleton pattern.

    This class ensures that the logging subsystem is initialized exactly once.
    It handles the setup of 'Rich' console and rotating file handlers.

    Attributes:
        _instance (LogManager): The singleton instance.
        _lock (threading.Lock): Thread lock for atomic initialization.
    """

    _instance: Optional["LogManager"] = None
    _lock: threading.Lock = threading.Lock()


    def __new__(cls) -> "LogManager":
        """Creates or returns the existing singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance


    def __init__(self) -> None:
        if self._initialized:
            return
        self._configured = False
        self._initialized = True


    @staticmethod
    def _fallback(setting: str, reason: str) -> None:
        print(
            f"{time.strftime(str(LOG_DATE_FORMAT.default()))} - dialgov.logger - "
            f"{setting}: {reason}; using default",
            file=sys.stderr,
        )


    @staticmethod
    def validate_log_format(log_format: str) -> str:
        """
        Return *log_format* if it renders a sample record, else the default.

        A specifier the formatter leaves behind unexpanded (e.g. ``(name)s``
        without its ``%``) also counts as invalid.
        """
        if not log_format:
            return str(LOG_FORMAT.default())

        sample = logging.LogRecord("dialgov", logging.INFO, "", 0, "probe", (), None)
        try:
            rendered = logging.Formatter(fmt=str(log_format)).format(sample)
        except (ValueError, KeyError, TypeError) as e:
            LogManager._fallback("LOG_FORMAT", str(e))
            return str(LOG_FORMAT.default())

        if _LEFTOVER_SPECIFIER_RE.search(rendered):
            LogManager._fallback("LOG_FORMAT", "unexpanded format specifier")
            return str(LOG_FORMAT.default())
        return str(log_format)


    @staticmethod
    def validate_date_format(date_format: str) -> str:
        """Return *date_format* if strftime accepts it and it has a directive."""
        if not date_format or "%" not in str(date_format):
            return str(LOG_DATE_FORMAT.default())
        try:
            time.strftime(str(date_format), time.gmtime(0))
        except ValueError as e:
            LogManager._fallback("LOG_DATE_FORMAT", str(e))
            return str(LOG_DATE_FORMAT.default())
        return str(date_format)


    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: Optional[bool] = None,
        force: bool = False,
    ) -> None:
        """
        Configures the root logger with console and file handlers.

        Args:
            log_level (Optional[str]): Logging level (DEBUG, INFO, etc.). Defaults to env var.
            log_file (Optional[Path]): Path to the log file. Defaults to `logs/dialgov.log`.
            console_output (bool): Enable console logging. Defaults to True.
            file_output (Optional[bool]): Enable rotating file logging. Defaults to `LOG_TO_FILE`.
            force (bool): Reconfigure even if already configured (used when
                the loaded config file overrides the log level).
        """
        with self._lock:
            if self._configured and not force:
                return

            level_str = log_level or LOG_LEVEL
            numeric_level = getattr(logging, str(level_str).upper(), logging.INFO)

            root_logger = logging.getLogger()
            root_logger.setLevel(numeric_level)

            # Keep HTTP client chatter out of the governance log
            for lib in ["httpx", "httpx._client", "httpcore"]:
                logging.getLogger(lib).setLevel(logging.WARNING)

            root_logger.handlers.clear()

            log_format = self.validate_log_format(LOG_FORMAT)
            date_format = self.validate_date_format(LOG_DATE_FORMAT)

            # UTC everywhere; topic consensus timestamps are UTC as well
            formatter = TerminalSafeFormatter(fmt=log_format, datefmt=date_format + " UTC")
            formatter.converter = time.gmtime

            if console_output:
                if LOG_CONSOLE_HIGHLIGHTING:
                    governance_theme = Theme(
                        {
                            "dialgov.account":        "cyan",
                            "dialgov.arrow":          "bold yellow",
                            "dialgov.level_critical": "bold red reverse",
                            "dialgov.level_debug":    "bold dim",
                            "dialgov.level_error":    "bold red",
                            "dialgov.level_info":     "bold green",
                            "dialgov.level_warning":  "bold yellow",
                            "dialgov.logger_name":    "magenta",
                            "dialgov.outcome_fail":   "bold red",
                            "dialgov.outcome_pass":   "bold green",
                            "dialgov.param_path":     "bold blue",
                            "dialgov.sequence":       "bold white",
                            "dialgov.tag":            "bold magenta",
                            "dialgov.timestamp":      "bold cyan",
                            "dialgov.url":            "cyan",
                        }
                    )

                    console = Console(theme=governance_theme, highlight=False)

                    rich_handler = RichHandler(
                        console=console,
                        highlighter=GovernanceLogHighlighter(),
                        keywords=[],
                        rich_tracebacks=True,
                        omit_repeated_times=False,
                        show_path=False,
                        enable_link_path=True,
                        show_time=False,
                        show_level=False,
                        markup=False,
                    )
                    rich_handler.setLevel(numeric_level)
                    rich_handler.setFormatter(formatter)
                    root_logger.addHandler(rich_handler)
                else:
                    console_handler = logging.StreamHandler(sys.stdout)
                    console_handler.setLevel(numeric_level)
                    console_handler.setFormatter(formatter)
                    root_logger.addHandler(console_handler)

            if file_output is None:
                file_output = bool(LOG_TO_FILE)

            if file_output:
                log_file_path = log_file or LOG_FILE_PATH
                log_file_path.parent.mkdir(parents=True, exist_ok=True)

                file_handler = logging.handlers.RotatingFileHandler(
                    filename=str(log_file_path),
                    maxBytes=LOG_MAX_FILE_SIZE,
                    backupCount=LOG_BACKUP_COUNT,
                    encoding="utf-8",
                )

                file_handler.setLevel(numeric_level)
                file_handler.setFormatter(formatter)
                root_logger.addHandler(file_handler)

            self._configured = True


    def get_logger(self, name: str) -> logging.Logger:
        """Retrieves a logger for a module, configuring logging on first use."""
        if not self._configured:
            self.configure()
        return logging.getLogger(name)


    @property
    def is_configured(self) -> bool:
        return self._configured


class TerminalSafeFormatter(logging.Formatter):
    """
    A formatter class that sanitizes log output.

    Vote reasons and raw payload previews are attacker controlled, so ANSI
    escape sequences and non-printable control characters are stripped
    before anything reaches a terminal or log file (CWE-117).
    """

    _ansi_escape_re = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"
        r"|\x1b[@-Z\\-_]"
    )
    # Control chars (0x00-0x1F) excluding Tab and Newline
    _control_chars_re = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
    _carriage_return_re = re.compile(r"\r")


    @classmethod
    def sanitize(cls, text: str) -> str:
        if not text:
            return text
        text = cls._ansi_escape_re.sub("", text)
        text = cls._carriage_return_re.sub("", text)
        text = cls._control_chars_re.sub("", text)
        return text


    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class GovernanceLogHighlighter(RegexHighlighter):
    """
    Custom Rich Highlighter for governance logs.

    Colours parameter paths, account ids, sequence numbers and vote
    outcomes. Quoted payload previews are user controlled and are never
    highlighted, so a crafted vote reason cannot impersonate an outcome.
    """

    base_style = "dialgov."
    highlights = [
        r"(?P<arrow>(\-\->)|(<--)|(→))",
        r"(?P<account>\b\d+\.\d+\.\d+(?:@\d+\.\d+\.\d+)?\b)",
        r"(?P<level_critical>\bCRITICAL\b)",
        r"(?P<level_debug>\bDEBUG\b)",
        r"(?P<level_error>\bERROR\b)",
        r"(?P<level_info>\bINFO\b)",
        r"\-\s+\w+\s+-\s+(?P<logger_name>[\w.]+)(?=\s-\s)",
        r"(?P<level_warning>\bWARNING\b)",
        r"(?P<outcome_pass>\b(PARAMETER_UPDATE|COMMITTED|QUORUM REACHED)\b)",
        r"(?P<outcome_fail>\b(VOTE_FAILED|REJECTED|DISPATCH FAILED)\b)",
        r"(?P<param_path>\b(?:rebalancing|treasury|fees|governance)(?:\.[A-Za-z0-9_]+)+\b)",
        r"(?P<sequence>(?:seq=|#)\d+\b)",
        r"(?P<tag>\[.*?\])",
        r"(?P<timestamp>^(.*?)UTC)",
        r"(?P<url>https?://\S+)",
    ]

    _quoted_re = re.compile(r"'[^']*'|\"[^\"]*\"")


    @classmethod
    def _get_protected_segments(cls, s: str) -> List[Tuple[int, int]]:
        """Returns the (start, end) ranges of quoted segments in a log line."""
        return [(m.start(), m.end()) for m in cls._quoted_re.finditer(s)]


    @staticmethod
    def _overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
        return a_start < b_end and a_end > b_start


    def highlight(self, text) -> None:
        super().highlight(text)

        protected_segments = self._get_protected_segments(text.plain)
        if not protected_segments:
            return

        spans = getattr(text, "spans", None)
        if not spans:
            return

        text.spans = [
            span for span in spans
            if not any(self._overlaps(span.start, span.end, ps, pe) for ps, pe in protected_segments)
        ]


_manager = LogManager()

def get_logger(name: str) -> logging.Logger:
    """
    Public accessor of the logging system.
    Delegates to the Singleton LogManager, ensuring configuration is applied.
    """
    return _manager.get_logger(name)

def configure_logging(log_level: Optional[str] = None, **kwargs) -> None:
    """Reconfigure logging after the config file has been loaded."""
    _manager.configure(log_level=log_level, force=True, **kwargs)

# Auto-configure on import to ensure immediate availability
_manager.configure()
