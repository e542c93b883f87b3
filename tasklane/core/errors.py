"""Rust-style error display for tasklane startup/configuration errors.

These exceptions cover the process boundary only: bad configuration, bad task
definitions, duplicate registrations. Operational failures (database, broker,
validation of payloads) travel as ``Err(TaskOperationError)`` values instead,
see ``tasklane.core.types.result_types``.
"""

from __future__ import annotations

import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable


class ErrorCode(str, Enum):
    """Error codes for startup/configuration errors.

    Organized by category:
    - E100-E199: Task definition errors
    - E200-E299: Config/broker errors
    - E300-E399: Registry errors
    """

    # Task definition (E100-E199)
    TASK_INVALID_QUEUE = 'E100'
    TASK_INVALID_HANDLER = 'E101'
    TASK_INVALID_OPTIONS = 'E102'

    # Config/broker (E200-E299)
    CONFIG_MISSING_DATABASE_URL = 'E200'
    BROKER_INVALID_URL = 'E201'
    CONFIG_INVALID_WORKER = 'E203'
    CLI_INVALID_LOCATOR = 'E205'

    # Registry (E300-E399)
    TASK_NOT_REGISTERED = 'E300'
    TASK_DUPLICATE_QUEUE = 'E301'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('TASKLANE_FORCE_COLOR'):
        return True
    # https://no-color.org/
    if os.environ.get('NO_COLOR') is not None:
        return False
    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int

    @classmethod
    def from_function(cls, fn: Callable[..., Any]) -> SourceLocation | None:
        """Create SourceLocation from a function object.

        Returns None for callables without code objects (builtins, mocks).
        """
        code = getattr(fn, '__code__', None)
        if code is None:
            return None
        return cls(file=code.co_filename, line=code.co_firstlineno)

    def get_source_line(self) -> str | None:
        line = linecache.getline(self.file, self.line)
        return line.rstrip('\n') if line else None

    def format_short(self) -> str:
        return f'{self.file}:{self.line}'


@dataclass
class TasklaneError(Exception):
    """Base exception for tasklane startup/configuration errors.

    Rendered Rust-style: ``error[E200]: message`` followed by the source
    location (when known), notes and help text.
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def with_note(self, note: str) -> TasklaneError:
        """Add a note to the error (fluent API)."""
        self.notes.append(note)
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors
        lines: list[str] = ['']

        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        if self.location:
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )
            source_line = self.location.get_source_line()
            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                stripped = source_line.lstrip()
                underline = ' ' * (len(source_line) - len(stripped)) + '^' * len(stripped)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
                lines.append(f'   {c.BLUE}{padding}|{c.RESET} {c.RED}{underline}{c.RESET}')

        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in self.help_text.split('\n'):
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        # Plain text: safe for log files and non-terminal contexts.
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _tasklane_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Print TasklaneError instances Rust-style, defer everything else."""
    if _env_flag('TASKLANE_PLAIN_ERRORS') or not isinstance(exc_value, TasklaneError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _env_flag('TASKLANE_VERBOSE'):
        print(file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _tasklane_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


@dataclass
class TaskDefinitionError(TasklaneError):
    """Raised when a task definition is invalid."""

    pass


@dataclass
class ConfigurationError(TasklaneError):
    """Raised when app/broker configuration is invalid."""

    pass


@dataclass
class RegistryError(TasklaneError):
    """Raised when a task registry operation fails."""

    pass


class ValidationReport:
    """Collects multiple TasklaneError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[TasklaneError] = []

    def add(self, error: TasklaneError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()
        c = _Colors if use_colors else _NoColors
        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to {len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(TasklaneError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op
    - 1 error: raises the original error
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def task_definition_error(
    message: str,
    *,
    code: ErrorCode | None = None,
    fn: Callable[..., Any] | None = None,
    notes: list[str] | None = None,
    help_text: str | None = None,
) -> TaskDefinitionError:
    """Create a TaskDefinitionError located at the handler's definition."""
    location = SourceLocation.from_function(fn) if fn is not None else None
    return TaskDefinitionError(
        message=message,
        code=code,
        location=location,
        notes=notes or [],
        help_text=help_text,
    )
