"""Sandboxed file, utility and shell actions for workflow steps."""

from stepkit.config import AppConfig, FileSettings, ShellSettings, UtilitySettings
from stepkit.dispatch import ActionRegistry
from stepkit.errors import ErrorKind, OperationCancelled, OperationError
from stepkit.operation import CallContext, CancelToken, Result

__version__ = "0.1.0"

__all__ = [
    "ActionRegistry",
    "AppConfig",
    "CallContext",
    "CancelToken",
    "ErrorKind",
    "FileSettings",
    "OperationCancelled",
    "OperationError",
    "Result",
    "ShellSettings",
    "UtilitySettings",
]
