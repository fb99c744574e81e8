"""
Pipeline Logging for the Mailing Workshop service
=================================================

Provides coloured, phase-structured logging for the upload, export and
mail pipelines.
IMPORTANT: No emojis in console output (Windows encoding issues).
"""

import logging
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Optional

from colorama import Fore, Style, init

# Initialize colorama for Windows
init(autoreset=True)


class Phase:
    """Phase constants for the asset pipelines"""
    UPLOAD_PARSE = "UPLOAD_PARSE"
    UPLOAD_STORE = "UPLOAD_STORE"
    EXPORT_MANIFEST = "EXPORT_MANIFEST"
    EXPORT_FETCH = "EXPORT_FETCH"
    EXPORT_ARCHIVE = "EXPORT_ARCHIVE"
    MAIL_DISPATCH = "MAIL_DISPATCH"


PHASE_COLORS = {
    Phase.UPLOAD_PARSE: Fore.CYAN,
    Phase.UPLOAD_STORE: Fore.GREEN,
    Phase.EXPORT_MANIFEST: Fore.YELLOW,
    Phase.EXPORT_FETCH: Fore.BLUE,
    Phase.EXPORT_ARCHIVE: Fore.MAGENTA,
    Phase.MAIL_DISPATCH: Fore.GREEN + Style.BRIGHT,
}

# Text-based icons, no emojis for Windows
PHASE_ICONS = {
    Phase.UPLOAD_PARSE: "[PRS]",
    Phase.UPLOAD_STORE: "[STO]",
    Phase.EXPORT_MANIFEST: "[MAN]",
    Phase.EXPORT_FETCH: "[GET]",
    Phase.EXPORT_ARCHIVE: "[ZIP]",
    Phase.MAIL_DISPATCH: "[SMT]",
}


class TimingTracker:
    """Track timing for phases"""

    def __init__(self):
        self._start_times: Dict[str, float] = {}

    def start(self, key: str):
        self._start_times[key] = time.monotonic()

    def end(self, key: str) -> float:
        """End timing and return elapsed seconds"""
        if key not in self._start_times:
            return 0.0
        elapsed = time.monotonic() - self._start_times.pop(key)
        return elapsed


class PhaseLogger:
    """
    Logger with phase tracking and visual formatting for one request

    Usage:
        phase_logger = PhaseLogger(request_id="zip-3f2a", verbose=True)

        with phase_logger.phase(Phase.EXPORT_FETCH, sub_label="12 images"):
            phase_logger.info("Fetching remote images...")
    """

    def __init__(
        self,
        request_id: str,
        verbose: bool = False,
        logger: Optional[logging.Logger] = None
    ):
        self.request_id = request_id
        self.verbose = verbose
        self.logger = logger or logging.getLogger(__name__)
        self.timing_tracker = TimingTracker()
        self._current_phase: Optional[str] = None
        self._phase_stack = []

    @contextmanager
    def phase(self, phase_name: str, sub_label: Optional[str] = None):
        """Context manager for phase tracking with automatic timing"""
        self._enter_phase(phase_name, sub_label)
        try:
            yield self
        finally:
            self._exit_phase(phase_name)

    def _enter_phase(self, phase_name: str, sub_label: Optional[str] = None):
        self._phase_stack.append(self._current_phase)
        self._current_phase = phase_name
        self.timing_tracker.start(f"phase_{phase_name}_{len(self._phase_stack)}")

        color = PHASE_COLORS.get(phase_name, Fore.WHITE)
        icon = PHASE_ICONS.get(phase_name, "[???]")
        timestamp = datetime.now().strftime("%H:%M:%S")
        sub_str = f" - {sub_label}" if sub_label else ""
        self.logger.info(
            f"{color}{icon} {phase_name} [{self.request_id}]{sub_str} [{timestamp}]{Style.RESET_ALL}"
        )

    def _exit_phase(self, phase_name: str):
        elapsed = self.timing_tracker.end(f"phase_{phase_name}_{len(self._phase_stack)}")
        color = PHASE_COLORS.get(phase_name, Fore.WHITE)
        icon = PHASE_ICONS.get(phase_name, "[???]")
        self.logger.info(
            f"{color}{icon} {phase_name} [{self.request_id}] COMPLETED (Elapsed: {elapsed:.2f}s){Style.RESET_ALL}"
        )
        self._current_phase = self._phase_stack.pop() if self._phase_stack else None

    def info(self, message: str):
        """Log info message with current phase context"""
        if self._current_phase:
            color = PHASE_COLORS.get(self._current_phase, Fore.WHITE)
            icon = PHASE_ICONS.get(self._current_phase, "[???]")
            self.logger.info(f"{color}{icon}{Style.RESET_ALL} {message}")
        else:
            self.logger.info(message)

    def debug(self, message: str):
        """Log per-item detail (only if verbose)"""
        if self.verbose:
            self.logger.info(f"{Fore.WHITE}{Style.DIM}{message}{Style.RESET_ALL}")

    def warning(self, message: str):
        self.logger.warning(f"{Fore.YELLOW}[WARN] {message}{Style.RESET_ALL}")

    def error(self, message: str):
        self.logger.error(f"{Fore.RED}{Style.BRIGHT}[ERROR] {message}{Style.RESET_ALL}")
