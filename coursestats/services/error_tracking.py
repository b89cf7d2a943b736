"""
错误追踪
Error Tracking

错误上报接口，仅用于可观测性，不参与控制流。
Error reporting interface, used for observability only and never for
control flow.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class ErrorTracker(ABC):
    """错误追踪接口 / Error tracking interface"""

    @abstractmethod
    def capture_exception(self, error: BaseException, tags: dict[str, Any]) -> None:
        """上报异常 / Report an exception"""

    @abstractmethod
    def capture_message(self, text: str, extra: dict[str, Any] | None = None) -> None:
        """上报消息 / Report a message"""


class LoggingErrorTracker(ErrorTracker):
    """
    基于 logging 的错误追踪
    Logging-backed error tracker

    默认实现：异常以 ERROR 级别记录，消息以 INFO 级别记录。
    Default implementation: exceptions are logged at ERROR, messages at INFO.
    """

    def __init__(self, logger_name: str = 'coursestats.errors'):
        self.logger = logging.getLogger(logger_name)

    def capture_exception(self, error: BaseException, tags: dict[str, Any]) -> None:
        tag_text = ', '.join(f"{k}={v}" for k, v in sorted(tags.items()))
        self.logger.error(
            f"{type(error).__name__}: {error} [{tag_text}]",
            exc_info=(type(error), error, error.__traceback__)
        )

    def capture_message(self, text: str, extra: dict[str, Any] | None = None) -> None:
        if extra:
            extra_text = ', '.join(f"{k}={v}" for k, v in sorted(extra.items()))
            self.logger.info(f"{text} [{extra_text}]")
        else:
            self.logger.info(text)
