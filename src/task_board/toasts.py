"""
User-visible notifications.

Views turn per-operation outcomes and TaskBoardError subclasses into Toast
records on a ToastSink; a UI shell drains the sink to display them.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from .errors import AuthorizationError, BackendError, NotFoundError, TaskBoardError, ValidationError

logger = logging.getLogger(__name__)


class ToastVariant(str, Enum):
    DEFAULT = "default"
    DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class Toast:
    title: str
    description: str = ""
    variant: ToastVariant = ToastVariant.DEFAULT

    @property
    def is_error(self) -> bool:
        return self.variant == ToastVariant.DESTRUCTIVE


class ToastSink:
    """
    Collects toasts in emission order.

    Args:
        on_toast: Optional callback invoked for every toast as it is pushed
    """

    def __init__(self, on_toast: Optional[Callable[[Toast], None]] = None):
        self.toasts: List[Toast] = []
        self.on_toast = on_toast

    def push(self, toast: Toast) -> Toast:
        self.toasts.append(toast)
        if self.on_toast is not None:
            self.on_toast(toast)
        return toast

    def success(self, title: str, description: str = "") -> Toast:
        return self.push(Toast(title, description))

    def error(self, title: str, description: str = "") -> Toast:
        return self.push(Toast(title, description, ToastVariant.DESTRUCTIVE))

    def report(self, exc: TaskBoardError, fallback: str = "The operation failed") -> Toast:
        return self.push(toast_for_error(exc, fallback))

    def drain(self) -> List[Toast]:
        drained, self.toasts = self.toasts, []
        return drained

    @property
    def last(self) -> Optional[Toast]:
        return self.toasts[-1] if self.toasts else None


def toast_for_error(exc: TaskBoardError, fallback: str = "The operation failed") -> Toast:
    """
    Map an error to its toast.

    Validation toasts name the first violated rule; backend failures get a
    generic description with the operation-specific ``fallback``.
    """
    if isinstance(exc, ValidationError):
        return Toast("Validation error", exc.message, ToastVariant.DESTRUCTIVE)
    if isinstance(exc, AuthorizationError):
        return Toast("Action not allowed", exc.message, ToastVariant.DESTRUCTIVE)
    if isinstance(exc, NotFoundError):
        return Toast("Not found", exc.message, ToastVariant.DESTRUCTIVE)
    if isinstance(exc, BackendError):
        logger.debug(f"Backend error surfaced to user: {exc.message}")
        return Toast("Error", fallback, ToastVariant.DESTRUCTIVE)
    return Toast("Error", fallback, ToastVariant.DESTRUCTIVE)
