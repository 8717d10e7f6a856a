from __future__ import annotations

from typing import Any, Mapping

from stepkit.audit import AuditLogger, LoggingAuditLogger, NullAuditLogger
from stepkit.config import AppConfig
from stepkit.errors import ErrorKind, OperationError
from stepkit.files import FileAction
from stepkit.operation import Action, CallContext, Result
from stepkit.quota import QuotaTracker
from stepkit.shell import ShellAction
from stepkit.utility import UtilityAction


class ActionRegistry:
    """Name -> action lookup used by the workflow-facing dispatcher."""

    def __init__(self, actions: list[Action]) -> None:
        self._actions: dict[str, Action] = {action.name: action for action in actions}

    @classmethod
    def from_config(cls, config: AppConfig, *, audit: AuditLogger | None = None) -> "ActionRegistry":
        if audit is None:
            audit = LoggingAuditLogger() if config.audit_enabled else NullAuditLogger()
        return cls(
            [
                FileAction(config.file, audit=audit),
                UtilityAction(config.utility, audit=audit),
                ShellAction(config.shell, audit=audit),
            ]
        )

    def get(self, name: str) -> Action:
        action = self._actions.get(name)
        if action is None:
            raise OperationError(
                name,
                ErrorKind.VALIDATION,
                f"unknown action: {name}",
                suggestion=f"Use one of: {', '.join(sorted(self._actions))}",
            )
        return action

    def execute(
        self,
        action: str,
        operation: str,
        inputs: Mapping[str, Any] | None = None,
        context: CallContext | None = None,
    ) -> Result:
        return self.get(action).execute(operation, inputs, context)

    def describe(self) -> dict[str, list[str]]:
        return {name: self._actions[name].operation_names() for name in sorted(self._actions)}

    @property
    def quota(self) -> QuotaTracker | None:
        action = self._actions.get(FileAction.name)
        return action.quota if isinstance(action, FileAction) else None

    def render_metrics(self) -> str:
        return "".join(self._actions[name].metrics.render() for name in sorted(self._actions))
