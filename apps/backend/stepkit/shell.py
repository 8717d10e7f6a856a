from __future__ import annotations

import os
import signal
import subprocess
import time
from typing import Any

from pydantic import Field, StrictInt, StrictStr

from stepkit.config import ShellSettings
from stepkit.errors import ErrorKind, OperationError
from stepkit.operation import Action, CallContext, Inputs, OperationHandler, Result, cancelled_error
from stepkit.paths import PathResolver

MIN_TIMEOUT_MS = 100
POLL_INTERVAL_SECONDS = 0.02


class RunInputs(Inputs):
    command: StrictStr | list[StrictStr]
    dir: StrictStr | None = None
    env: dict[str, StrictStr] = Field(default_factory=dict)
    timeout_ms: StrictInt | None = None


def truncate_output(text: str, max_output_chars: int) -> tuple[str, bool]:
    if len(text) <= max_output_chars:
        return text, False
    return text[:max_output_chars], True


def _reap(proc: subprocess.Popen) -> None:
    """Kill the child and anything it forked, then drain the pipes."""
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            proc.kill()
    else:
        proc.kill()
    proc.communicate()


class ShellAction(Action):
    name = "shell"

    def __init__(
        self,
        settings: ShellSettings | None = None,
        *,
        resolver: PathResolver | None = None,
        **kwargs: Any,
    ) -> None:
        self.settings = settings or ShellSettings()
        self.resolver = resolver or PathResolver(workflow_dir=self.settings.work_dir)
        super().__init__(**kwargs)

    def operations(self) -> dict[str, OperationHandler]:
        return {"run": OperationHandler(self._run, RunInputs)}

    def _timeout_ms(self, requested: int | None) -> int:
        ceiling = self.settings.timeout_ms
        if requested is None:
            return ceiling
        return max(MIN_TIMEOUT_MS, min(requested, ceiling))

    def _working_dir(self, raw: str | None) -> str:
        cwd = self.resolver.resolve(raw or ".", operation="run")
        if not os.path.isdir(cwd):
            raise OperationError(
                "run",
                ErrorKind.FILE_NOT_FOUND,
                "working directory not found",
                suggestion="Create the directory or point 'dir' at an existing one",
            )
        return cwd

    def _run(self, params: RunInputs, context: CallContext) -> Result:
        if not self.settings.enabled:
            raise OperationError(
                "run",
                ErrorKind.PERMISSION_DENIED,
                "shell is disabled in config",
                suggestion="Set shell.enabled to true to allow commands",
            )
        command = params.command
        if (isinstance(command, str) and not command.strip()) or (isinstance(command, list) and not command):
            raise OperationError("run", ErrorKind.VALIDATION, "command is empty")

        cwd = self._working_dir(params.dir)
        timeout_ms = self._timeout_ms(params.timeout_ms)
        env = {**os.environ, **self.settings.env, **params.env}
        context.cancel.raise_if_cancelled("run")

        try:
            proc = subprocess.Popen(
                command,
                shell=isinstance(command, str),
                cwd=cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise OperationError(
                "run",
                ErrorKind.FILE_NOT_FOUND,
                f"command not found: {command[0] if isinstance(command, list) else command.split()[0]}",
                cause=exc,
            ) from exc
        except PermissionError as exc:
            raise OperationError(
                "run", ErrorKind.PERMISSION_DENIED, "command is not executable", cause=exc
            ) from exc

        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if context.cancel.cancelled:
                    _reap(proc)
                    raise cancelled_error("run", context.cancel) from None
                if time.monotonic() >= deadline:
                    _reap(proc)
                    raise OperationError(
                        "run",
                        ErrorKind.INTERNAL,
                        f"command timed out after {timeout_ms} ms",
                        suggestion="Raise timeout_ms or shorten the command",
                    ) from None

        stdout, out_truncated = truncate_output(stdout or "", self.settings.max_output_chars)
        stderr, err_truncated = truncate_output(stderr or "", self.settings.max_output_chars)
        exit_code = int(proc.returncode)
        if exit_code != 0:
            detail = stderr.strip() or f"process exited with status {exit_code}"
            raise OperationError(
                "run",
                ErrorKind.INTERNAL,
                f"command failed with exit code {exit_code}: {detail}",
            )
        return Result(
            response={"stdout": stdout, "stderr": stderr, "exit_code": exit_code},
            metadata={
                "dir": cwd,
                "timeout_ms": timeout_ms,
                "truncated": out_truncated or err_truncated,
            },
        )
