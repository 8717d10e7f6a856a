"""Path expansion, canonicalisation and sandbox policy for action inputs."""

from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Sequence

from stepkit.config import FileSettings
from stepkit.errors import ErrorKind, OperationError

OUT_PREFIX = "$out/"
TEMP_PREFIX = "$temp/"
HOME_PREFIX = "~/"
ESCAPE_PREFIX = "$$"


def within_path(child: str, parent: str) -> bool:
    """True when *child* equals *parent* or lies below it, compared by components."""
    try:
        rel = os.path.relpath(child, parent)
    except ValueError:
        # different drives on Windows
        return False
    return rel != os.pardir and not rel.startswith(os.pardir + os.sep)


class PathResolver:
    """Turn a user supplied path into a trusted absolute path, or refuse."""

    def __init__(
        self,
        *,
        workflow_dir: str = "",
        output_dir: str = "",
        temp_dir: str = "",
        allowed_roots: Sequence[str] = (),
        allow_symlinks: bool = False,
        allow_absolute: bool = False,
    ) -> None:
        self._workflow_dir = workflow_dir
        self._output_dir = output_dir
        self._temp_dir = temp_dir
        self._allowed_roots = tuple(allowed_roots)
        self._allow_symlinks = allow_symlinks
        self._allow_absolute = allow_absolute

    @classmethod
    def from_settings(cls, settings: FileSettings) -> "PathResolver":
        return cls(
            workflow_dir=settings.workflow_dir,
            output_dir=settings.output_dir,
            temp_dir=settings.temp_dir,
            allowed_roots=settings.allowed_roots,
            allow_symlinks=settings.allow_symlinks,
            allow_absolute=settings.allow_absolute,
        )

    def resolve(self, path: str, *, operation: str = "resolve") -> str:
        expanded = self._expand_prefixes(path, operation)
        anchor = self._anchor_dir(operation)
        if not os.path.isabs(expanded):
            expanded = os.path.join(anchor, expanded)
        cleaned = os.path.normpath(expanded)
        canonical = self._canonicalize(cleaned, operation)
        if canonical is not None:
            return canonical
        self._validate(cleaned, operation, ErrorKind.PATH_TRAVERSAL)
        return cleaned

    def _expand_prefixes(self, path: str, operation: str) -> str:
        if path.startswith(ESCAPE_PREFIX):
            return "." + path[1:]
        if path.startswith(OUT_PREFIX):
            if not self._output_dir:
                raise OperationError(
                    operation,
                    ErrorKind.CONFIGURATION,
                    "$out directory not configured",
                    suggestion="Set file.output_dir in the configuration",
                )
            return os.path.join(self._output_dir, path[len(OUT_PREFIX) :])
        if path.startswith(TEMP_PREFIX):
            if not self._temp_dir:
                raise OperationError(
                    operation,
                    ErrorKind.CONFIGURATION,
                    "$temp directory not configured",
                    suggestion="Set file.temp_dir in the configuration",
                )
            return os.path.join(self._temp_dir, path[len(TEMP_PREFIX) :])
        if path.startswith(HOME_PREFIX):
            try:
                home = str(Path.home())
            except RuntimeError as exc:
                raise OperationError(
                    operation,
                    ErrorKind.INTERNAL,
                    "failed to determine home directory",
                    cause=exc,
                ) from exc
            return os.path.join(home, path[len(HOME_PREFIX) :])
        return path

    def _anchor_dir(self, operation: str) -> str:
        if self._workflow_dir:
            return self._workflow_dir
        try:
            return os.getcwd()
        except OSError as exc:
            raise OperationError(
                operation,
                ErrorKind.INTERNAL,
                "failed to determine current directory",
                cause=exc,
            ) from exc

    def _canonicalize(self, cleaned: str, operation: str) -> str | None:
        """Return the validated symlink target, or None when *cleaned* is not a link."""
        try:
            info = os.lstat(cleaned)
        except FileNotFoundError:
            return None
        except NotADirectoryError:
            return None
        except OSError as exc:
            raise OperationError(
                operation,
                ErrorKind.INTERNAL,
                "failed to stat path",
                cause=exc,
            ) from exc

        if not stat.S_ISLNK(info.st_mode):
            return None
        if not self._allow_symlinks:
            raise OperationError(
                operation,
                ErrorKind.SYMLINK_DENIED,
                "symlinks are not allowed",
                suggestion="Point the step at the link target or enable allow_symlinks",
            )
        try:
            target = os.path.realpath(cleaned, strict=True)
        except OSError as exc:
            raise OperationError(
                operation,
                ErrorKind.INTERNAL,
                "failed to evaluate symlink",
                cause=exc,
            ) from exc
        self._validate(target, operation, ErrorKind.SYMLINK_DENIED)
        return target

    def _validate(self, path: str, operation: str, kind: ErrorKind) -> None:
        prefix = "symlink target violates security policy: " if kind is ErrorKind.SYMLINK_DENIED else ""
        if not self._allow_absolute and os.path.isabs(path):
            bases = (self._workflow_dir or self._anchor_dir(operation), self._output_dir, self._temp_dir)
            if not any(self._under_base(path, base) for base in bases):
                raise OperationError(
                    operation,
                    kind,
                    prefix + "path escapes the permitted directories",
                    suggestion="Use a path under the workflow, $out or $temp directory",
                )
        if self._allowed_roots and not self._under_allowed_root(path):
            raise OperationError(
                operation,
                kind,
                prefix + "path is outside allowed directories",
                suggestion="Use a path under one of the configured allowed roots",
            )

    @staticmethod
    def _under_base(path: str, base: str) -> bool:
        if not base:
            return False
        if within_path(path, base):
            return True
        # configured roots may themselves contain symlinks, or be created later
        canonical = os.path.realpath(base)
        return canonical != base and within_path(path, canonical)

    def _under_allowed_root(self, path: str) -> bool:
        return any(within_path(path, os.path.abspath(root)) for root in self._allowed_roots)
