"""Structured application errors, error codes and error handling policy."""

from __future__ import annotations

import errno
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any

from .models import Severity


class ErrorCategory(str, Enum):
    """Broad category an error code belongs to."""

    FILE = "FILE"
    PORT = "PORT"
    DOCKER = "DOCKER"
    CONFIG = "CONFIG"
    PROCESS = "PROCESS"
    UNKNOWN = "UNKNOWN"

    def __str__(self) -> str:
        return self.value


_CATEGORY_BY_PREFIX = {
    "FILE": ErrorCategory.FILE,
    "PORT": ErrorCategory.PORT,
    "DOCKER": ErrorCategory.DOCKER,
    "COMPOSE": ErrorCategory.DOCKER,
    "CONFIG": ErrorCategory.CONFIG,
    "PROCESS": ErrorCategory.PROCESS,
}


class ErrorCode(str, Enum):
    """Machine-readable error code."""

    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_PERMISSION = "FILE_PERMISSION"
    FILE_INVALID_YAML = "FILE_INVALID_YAML"
    FILE_WRITE_FAILED = "FILE_WRITE_FAILED"
    FILE_READ_FAILED = "FILE_READ_FAILED"

    PORT_UNAVAILABLE = "PORT_UNAVAILABLE"
    PORT_RANGE_INVALID = "PORT_RANGE_INVALID"
    PORT_CONFLICT = "PORT_CONFLICT"
    PORT_SCAN_FAILED = "PORT_SCAN_FAILED"
    PORT_ALLOCATION_FAILED = "PORT_ALLOCATION_FAILED"

    DOCKER_NOT_FOUND = "DOCKER_NOT_FOUND"
    COMPOSE_INVALID = "COMPOSE_INVALID"
    COMPOSE_NOT_FOUND = "COMPOSE_NOT_FOUND"
    DOCKER_API_FAILED = "DOCKER_API_FAILED"

    CONFIG_INVALID = "CONFIG_INVALID"
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    CONFIG_LOAD_FAILED = "CONFIG_LOAD_FAILED"

    PROCESS_NOT_FOUND = "PROCESS_NOT_FOUND"
    PROCESS_START_FAILED = "PROCESS_START_FAILED"
    PROCESS_STOP_FAILED = "PROCESS_STOP_FAILED"

    UNKNOWN = "UNKNOWN"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    PARSE_FAILED = "PARSE_FAILED"

    def __str__(self) -> str:
        return self.value

    def category(self) -> ErrorCategory:
        """The category named by the code's first underscore-separated word."""
        prefix = self.value.split("_", 1)[0]
        return _CATEGORY_BY_PREFIX.get(prefix, ErrorCategory.UNKNOWN)


_SEVERITY_BY_CATEGORY = {
    ErrorCategory.FILE: Severity.ERROR,
    ErrorCategory.PORT: Severity.WARNING,
    ErrorCategory.DOCKER: Severity.ERROR,
    ErrorCategory.CONFIG: Severity.ERROR,
    ErrorCategory.PROCESS: Severity.WARNING,
}

_RETRYABLE_CODES = frozenset(
    {ErrorCode.PORT_UNAVAILABLE, ErrorCode.PROCESS_NOT_FOUND, ErrorCode.FILE_PERMISSION}
)


class AppError(Exception):
    """An application error carrying a code, a message, a cause and extra fields."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        cause: BaseException | None = None,
        fields: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.cause = cause
        self.fields: dict[str, Any] = dict(fields) if fields else {}
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message

    def __repr__(self) -> str:
        return f"AppError(code={self.code.value!r}, message={self.message!r})"

    def severity(self) -> Severity:
        """Severity derived from the code's category."""
        return _SEVERITY_BY_CATEGORY.get(self.code.category(), Severity.ERROR)

    def is_retryable(self) -> bool:
        """Whether retrying the failed operation may succeed."""
        return self.code in _RETRYABLE_CODES

    def with_field(self, key: str, value: Any) -> AppError:
        """Add a field and return this error."""
        self.fields[key] = value
        return self

    def with_cause(self, cause: BaseException | None) -> AppError:
        """Set the cause and return this error."""
        self.cause = cause
        self.__cause__ = cause
        return self


@dataclass(frozen=True)
class RetryConfig:
    """How often and how quickly an operation should be retried."""

    max_retries: int
    base_delay: timedelta
    max_delay: timedelta
    backoff_factor: float


_DEFAULT_RETRY = RetryConfig(
    max_retries=3,
    base_delay=timedelta(milliseconds=100),
    max_delay=timedelta(seconds=5),
    backoff_factor=2.0,
)
_PORT_RETRY = RetryConfig(
    max_retries=5,
    base_delay=timedelta(milliseconds=200),
    max_delay=timedelta(seconds=2),
    backoff_factor=1.5,
)
_PROCESS_RETRY = RetryConfig(
    max_retries=3,
    base_delay=timedelta(milliseconds=500),
    max_delay=timedelta(seconds=5),
    backoff_factor=2.0,
)

_RETRYABLE_ERRNOS = frozenset({errno.ECONNREFUSED, errno.ETIMEDOUT, errno.ENOENT})
_PERMISSION_ERRNOS = frozenset({errno.EACCES, errno.EPERM})


def _errnos(err: BaseException) -> set[int]:
    """All errno values found along an exception's cause chain."""
    found: set[int] = set()
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, OSError) and current.errno is not None:
            found.add(current.errno)
        current = current.__cause__
    return found


@dataclass
class ErrorHandler:
    """Turns arbitrary exceptions into AppErrors and decides on retries."""

    default_retry_config: RetryConfig = field(default=_DEFAULT_RETRY)

    def handle(self, err: BaseException | None) -> AppError | None:
        """Return the error as an AppError, or None when there is no error."""
        if err is None:
            return None
        if isinstance(err, AppError):
            return err
        return self._convert(err)

    def is_retryable(self, err: BaseException) -> bool:
        """Whether the error is worth retrying."""
        if isinstance(err, AppError):
            return err.is_retryable()
        return bool(_errnos(err) & _RETRYABLE_ERRNOS)

    def get_retry_config(self, err: BaseException) -> RetryConfig:
        """Retry settings suited to the error."""
        if isinstance(err, AppError):
            if err.code in (ErrorCode.PORT_UNAVAILABLE, ErrorCode.PORT_SCAN_FAILED):
                return _PORT_RETRY
            if err.code in (ErrorCode.PROCESS_NOT_FOUND, ErrorCode.DOCKER_API_FAILED):
                return _PROCESS_RETRY
        return self.default_retry_config

    @staticmethod
    def _convert(err: BaseException) -> AppError:
        codes = _errnos(err)
        if isinstance(err, FileNotFoundError) or errno.ENOENT in codes:
            return AppError(ErrorCode.FILE_NOT_FOUND, "ファイルが存在しません", cause=err)
        if isinstance(err, PermissionError) or codes & _PERMISSION_ERRNOS:
            return AppError(
                ErrorCode.FILE_PERMISSION, "ファイルアクセス権限がありません", cause=err
            )
        if errno.EADDRINUSE in codes:
            return AppError(
                ErrorCode.PORT_UNAVAILABLE, "ポートが既に使用されています", cause=err
            )
        if errno.ECONNREFUSED in codes:
            return AppError(
                ErrorCode.DOCKER_API_FAILED, "Docker APIへの接続に失敗しました", cause=err
            )
        return AppError(
            ErrorCode.UNKNOWN, f"予期しないエラーが発生しました: {err}", cause=err
        )


def file_not_found_error(path: str) -> AppError:
    """Error for a file that could not be found."""
    return AppError(
        ErrorCode.FILE_NOT_FOUND,
        f"ファイルが見つかりません: {path}",
        fields={"path": path},
    )


def port_conflict_error(port: int, service: str) -> AppError:
    """Error for a port conflict in a service."""
    return AppError(
        ErrorCode.PORT_CONFLICT,
        f"ポート {port} で衝突が発生しました (サービス: {service})",
        fields={"port": port, "service": service},
    )


def config_invalid_error(field: str, value: Any) -> AppError:
    """Error for an invalid configuration value."""
    return AppError(
        ErrorCode.CONFIG_INVALID,
        f"設定が無効です: {field} = {value}",
        fields={"field": field, "value": value},
    )


def compose_invalid_error(path: str, reason: str) -> AppError:
    """Error for an invalid Docker Compose file."""
    return AppError(
        ErrorCode.COMPOSE_INVALID,
        f"Docker Composeファイルが無効です: {path} ({reason})",
        fields={"path": path, "reason": reason},
    )