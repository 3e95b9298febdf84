"""
VoiceChat Centralized Error Handling and Exception Management
"""
import time
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .logging_utils import setup_logger

logger = setup_logger("voicechat.error_handler", "voicechat.log")


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Context information for error tracking"""
    component: str
    operation: str
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)


class VoiceChatException(Exception):
    """Base exception for VoiceChat-specific errors"""

    def __init__(self, message: str, component: str = "unknown", operation: str = "unknown", **kwargs):
        super().__init__(message)
        self.message = message
        self.component = component
        self.operation = operation
        self.context = kwargs


class ConfigurationError(VoiceChatException):
    """Configuration-related errors (missing credentials, bad config values)"""
    pass


class ValidationError(VoiceChatException):
    """Input validation errors"""
    pass


class UpstreamError(VoiceChatException):
    """Failure talking to the upstream LLM API.

    ``status`` is the HTTP status to mirror back to callers: the upstream's own
    status for rejections, 502 for transport failures and 504 for timeouts.
    """

    def __init__(self, message: str, status: int = 502, details: Optional[Dict[str, Any]] = None, **kwargs):
        kwargs.setdefault("component", "upstream")
        super().__init__(message, **kwargs)
        self.status = status
        self.details = details


class ChatRequestError(VoiceChatException):
    """Proxy service answered a chat request with an error"""

    def __init__(self, message: str, status: int = 0, **kwargs):
        kwargs.setdefault("component", "chat_api")
        super().__init__(message, **kwargs)
        self.status = status


class ProviderError(VoiceChatException):
    """A directly-called hosted provider rejected the request"""

    def __init__(self, message: str, status: int = 0, **kwargs):
        kwargs.setdefault("component", "providers")
        super().__init__(message, **kwargs)
        self.status = status


class RequestCancelled(VoiceChatException):
    """A request was aborted through its cancel token. Not a failure."""

    def __init__(self, message: str = "Request aborted", **kwargs):
        super().__init__(message, **kwargs)


class ErrorHandler:
    """Centralized error handling and reporting system"""

    def __init__(self, max_history_size: int = 500):
        self.error_count = 0
        self.error_history: List[Dict[str, Any]] = []
        self.max_history_size = max_history_size
        self.component_failures: Dict[str, int] = {}

    def handle_error(self, error: Exception, context: ErrorContext,
                     severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> Dict[str, Any]:
        """Record an error with context and severity, returning its details"""
        error_id = f"ERR_{int(time.time() * 1000000)}"
        self.error_count += 1

        error_details = {
            'error_id': error_id,
            'type': error.__class__.__name__,
            'message': str(error),
            'status': getattr(error, 'status', None),
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            'context': {
                'component': context.component,
                'operation': context.operation,
                'request_id': context.request_id,
                'session_id': context.session_id,
                'metadata': context.metadata,
            },
            'severity': severity.value,
            'timestamp': context.timestamp.isoformat(),
            'count': self.error_count,
        }

        self._log_error(error_details, severity)
        self._add_to_history(error_details)

        if severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            self.component_failures[context.component] = self.component_failures.get(context.component, 0) + 1

        return error_details

    def _log_error(self, error_details: Dict[str, Any], severity: ErrorSeverity) -> None:
        log_message = f"[{error_details['error_id']}] {error_details['type']}: {error_details['message']}"

        if severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message, extra={'error_details': error_details})
        elif severity == ErrorSeverity.HIGH:
            logger.error(log_message, extra={'error_details': error_details})
        elif severity == ErrorSeverity.MEDIUM:
            logger.warning(log_message, extra={'error_details': error_details})
        else:
            logger.info(log_message, extra={'error_details': error_details})

    def _add_to_history(self, error_details: Dict[str, Any]) -> None:
        self.error_history.append(error_details)
        if len(self.error_history) > self.max_history_size:
            self.error_history = self.error_history[-self.max_history_size:]

    def get_error_stats(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for error in self.error_history[-100:]:
            counts[error['type']] = counts.get(error['type'], 0) + 1
        return {
            'total_errors': self.error_count,
            'recent_errors': len(self.error_history),
            'component_failures': dict(self.component_failures),
            'error_types': counts,
        }


def get_error_handler() -> ErrorHandler:
    """Get or create error handler instance"""
    if not hasattr(get_error_handler, '_instance'):
        get_error_handler._instance = ErrorHandler()
    return get_error_handler._instance


def handle_error(error: Exception, component: str, operation: str,
                 severity: ErrorSeverity = ErrorSeverity.MEDIUM, **context_kwargs) -> Dict[str, Any]:
    """Convenience function to handle errors"""
    context = ErrorContext(component=component, operation=operation, **context_kwargs)
    return get_error_handler().handle_error(error, context, severity)


@contextmanager
def error_context(component: str, operation: str, severity: ErrorSeverity = ErrorSeverity.MEDIUM):
    """Record any exception raised in the block, then re-raise it"""
    try:
        yield
    except RequestCancelled:
        raise
    except Exception as e:
        handle_error(e, component, operation, severity)
        raise
