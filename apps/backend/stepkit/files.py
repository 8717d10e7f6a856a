"""Sandboxed file action: read, write, render and manage files and directories."""

from __future__ import annotations

import errno
import os
import re
import shutil
import stat
import tempfile
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import Field, StrictStr

from stepkit import codecs
from stepkit.config import FileSettings
from stepkit.errors import ErrorKind, OperationError
from stepkit.operation import Action, CallContext, Inputs, OperationHandler, Result
from stepkit.paths import PathResolver, within_path
from stepkit.quota import QuotaTracker
from stepkit.templates import TemplateRenderError, render_template

DISK_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class PathInputs(Inputs):
    path: StrictStr


class ReadJsonInputs(PathInputs):
    extract: StrictStr | None = None


class WriteInputs(PathInputs):
    content: Any = Field(...)


class WriteTextInputs(PathInputs):
    content: StrictStr


class RenderInputs(Inputs):
    template: StrictStr
    output: StrictStr
    data: dict[str, Any] = Field(default_factory=dict)


class ListInputs(Inputs):
    path: StrictStr = "."
    pattern: StrictStr | None = None
    recursive: bool = False
    type: Literal["files", "dirs", "all"] = "all"


class MkdirInputs(PathInputs):
    parents: bool = False


class CopyInputs(Inputs):
    source: StrictStr
    dest: StrictStr
    recursive: bool = False


class MoveInputs(Inputs):
    source: StrictStr
    dest: StrictStr


class DeleteInputs(PathInputs):
    recursive: bool = False


def _mod_time(st: os.stat_result) -> str:
    moment = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


def glob_to_regex(pattern: str, recursive: bool) -> "re.Pattern[str]":
    """Translate a glob (``*``, ``?``, ``[...]``, and ``**`` when recursive)."""
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]
        if char == "*":
            if recursive and pattern.startswith("**", i):
                i += 2
                if pattern.startswith("/", i):
                    i += 1
                    out.append("(?:.*/)?")
                else:
                    out.append(".*")
                continue
            while i < n and pattern[i] == "*":
                i += 1
            out.append("[^/]*")
            continue
        if char == "?":
            out.append("[^/]")
        elif char == "[":
            end = pattern.find("]", i + 2 if pattern.startswith("[]", i) else i + 1)
            if end == -1:
                out.append(re.escape(char))
            else:
                body = pattern[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append("[" + body.replace("\\", "\\\\") + "]")
                i = end + 1
                continue
        else:
            out.append(re.escape(char))
        i += 1
    return re.compile("".join(out) + r"\Z")


def build_quota_tracker(settings: FileSettings, resolver: PathResolver) -> QuotaTracker:
    tracker = QuotaTracker(
        warn_threshold=settings.quota_warn_threshold,
        error_threshold=settings.quota_error_threshold,
    )
    for prefix, quota_bytes in settings.quotas.items():
        tracker.set_quota(resolver.resolve(prefix, operation="set_quota"), quota_bytes)
    return tracker


def _os_error(operation: str, exc: OSError, subject: str = "file") -> OperationError:
    if isinstance(exc, FileNotFoundError):
        return OperationError(
            operation,
            ErrorKind.FILE_NOT_FOUND,
            f"{subject} not found",
            cause=exc,
            suggestion="Check that the path exists",
        )
    if isinstance(exc, PermissionError):
        return OperationError(
            operation,
            ErrorKind.PERMISSION_DENIED,
            f"permission denied for {subject}",
            cause=exc,
            suggestion="Check file permissions",
        )
    if exc.errno in DISK_FULL_ERRNOS:
        return OperationError(
            operation,
            ErrorKind.DISK_FULL,
            "no space left on device",
            cause=exc,
            suggestion="Free disk space and retry",
        )
    if isinstance(exc, (IsADirectoryError, NotADirectoryError)):
        return OperationError(
            operation,
            ErrorKind.VALIDATION,
            f"{subject} has the wrong type: {exc.strerror or exc}",
            cause=exc,
        )
    return OperationError(
        operation,
        ErrorKind.INTERNAL,
        f"filesystem error: {exc.strerror or type(exc).__name__}",
        cause=exc,
    )


class FileAction(Action):
    name = "file"

    def __init__(
        self,
        settings: FileSettings | None = None,
        *,
        resolver: PathResolver | None = None,
        quota: QuotaTracker | None = None,
        **kwargs: Any,
    ) -> None:
        self.settings = settings or FileSettings()
        self.resolver = resolver or PathResolver.from_settings(self.settings)
        self.quota = quota if quota is not None else build_quota_tracker(self.settings, self.resolver)
        super().__init__(**kwargs)

    def operations(self) -> dict[str, OperationHandler]:
        return {
            "read": OperationHandler(self._read, PathInputs, "read"),
            "read_text": OperationHandler(self._read_text, PathInputs, "read"),
            "read_json": OperationHandler(self._read_json, ReadJsonInputs, "read"),
            "read_yaml": OperationHandler(self._read_yaml, PathInputs, "read"),
            "read_csv": OperationHandler(self._read_csv, PathInputs, "read"),
            "read_lines": OperationHandler(self._read_lines, PathInputs, "read"),
            "write": OperationHandler(self._write, WriteInputs, "write"),
            "write_text": OperationHandler(self._write_text, WriteTextInputs, "write"),
            "write_json": OperationHandler(self._write_json, WriteInputs, "write"),
            "write_yaml": OperationHandler(self._write_yaml, WriteInputs, "write"),
            "append": OperationHandler(self._append, WriteTextInputs, "write"),
            "render": OperationHandler(self._render, RenderInputs, "write"),
            "list": OperationHandler(self._list, ListInputs),
            "exists": OperationHandler(self._exists, PathInputs),
            "stat": OperationHandler(self._stat, PathInputs),
            "mkdir": OperationHandler(self._mkdir, MkdirInputs),
            "copy": OperationHandler(self._copy, CopyInputs, "write"),
            "move": OperationHandler(self._move, MoveInputs, "write"),
            "delete": OperationHandler(self._delete, DeleteInputs),
        }

    # reading

    def _load(self, operation: str, raw_path: str, limit: int) -> tuple[str, bytes]:
        resolved = self.resolver.resolve(raw_path, operation=operation)
        try:
            info = os.stat(resolved)
        except OSError as exc:
            raise _os_error(operation, exc) from exc
        if stat.S_ISDIR(info.st_mode):
            raise OperationError(
                operation,
                ErrorKind.VALIDATION,
                "path is a directory, not a file",
                suggestion="Use the list operation for directories",
            )
        if info.st_size > limit:
            raise OperationError(
                operation,
                ErrorKind.SIZE_LIMIT,
                f"file size {info.st_size} exceeds the limit of {limit} bytes",
                suggestion="Raise the configured size limit or split the file",
            )
        try:
            with open(resolved, "rb") as handle:
                data = handle.read(limit + 1)
        except OSError as exc:
            raise _os_error(operation, exc) from exc
        if len(data) > limit:
            raise OperationError(
                operation,
                ErrorKind.SIZE_LIMIT,
                f"file grew beyond the limit of {limit} bytes while reading",
            )
        return resolved, data

    @staticmethod
    def _decode(operation: str, data: bytes) -> str:
        try:
            return codecs.decode_text(data)
        except UnicodeDecodeError as exc:
            raise OperationError(
                operation,
                ErrorKind.PARSE_ERROR,
                "file is not valid UTF-8 or UTF-16 text",
                cause=exc,
            ) from exc

    def _parse(self, operation: str, fmt: str, text: str) -> Any:
        try:
            if fmt == "json":
                return codecs.parse_json(text)
            if fmt == "yaml":
                return codecs.parse_yaml(text)
            if fmt == "csv":
                return codecs.parse_csv(text)
        except codecs.CodecError as exc:
            raise OperationError(
                operation,
                ErrorKind.PARSE_ERROR,
                str(exc),
                cause=exc,
                suggestion=f"Check that the file contains valid {fmt.upper()}",
            ) from exc
        return text

    def _read_as(self, operation: str, raw_path: str, fmt: str) -> Result:
        limit = self.settings.max_file_size if fmt == "text" else self.settings.max_parse_size
        resolved, data = self._load(operation, raw_path, limit)
        text = self._decode(operation, data)
        metadata: dict[str, Any] = {"path": resolved, "bytes": len(data), "format": fmt}
        return Result(response=self._parse(operation, fmt, text), metadata=metadata)

    def _read(self, params: PathInputs, context: CallContext) -> Result:
        fmt = codecs.format_for(os.path.splitext(params.path)[1])
        if fmt == "text" or not self.settings.read_fallback_to_text:
            return self._read_as("read", params.path, fmt)
        resolved, data = self._load("read", params.path, self.settings.max_parse_size)
        text = self._decode("read", data)
        metadata: dict[str, Any] = {"path": resolved, "bytes": len(data), "format": fmt}
        try:
            response = self._parse("read", fmt, text)
        except OperationError as exc:
            metadata["format"] = "text"
            metadata["parse_error"] = exc.message
            response = text
        return Result(response=response, metadata=metadata)

    def _read_text(self, params: PathInputs, context: CallContext) -> Result:
        return self._read_as("read_text", params.path, "text")

    def _read_json(self, params: ReadJsonInputs, context: CallContext) -> Result:
        result = self._read_as("read_json", params.path, "json")
        if params.extract is not None:
            try:
                result.response = codecs.extract_path(result.response, params.extract)
            except KeyError as exc:
                raise OperationError(
                    "read_json",
                    ErrorKind.VALIDATION,
                    f"extract path segment not found: {exc.args[0]}",
                    suggestion="Use a dotted path such as $.section.key",
                ) from None
            result.metadata["extract"] = params.extract
        return result

    def _read_yaml(self, params: PathInputs, context: CallContext) -> Result:
        return self._read_as("read_yaml", params.path, "yaml")

    def _read_csv(self, params: PathInputs, context: CallContext) -> Result:
        result = self._read_as("read_csv", params.path, "csv")
        result.metadata["rows"] = len(result.response)
        return result

    def _read_lines(self, params: PathInputs, context: CallContext) -> Result:
        result = self._read_as("read_lines", params.path, "text")
        result.response = result.response.splitlines()
        result.metadata["lines"] = len(result.response)
        return result

    # writing

    def _check_size(self, operation: str, nbytes: int) -> None:
        if nbytes > self.settings.max_file_size:
            raise OperationError(
                operation,
                ErrorKind.SIZE_LIMIT,
                f"content of {nbytes} bytes exceeds the limit of {self.settings.max_file_size} bytes",
                suggestion="Raise max_file_size or write smaller content",
            )

    def _ensure_parent(self, operation: str, resolved: str) -> None:
        parent = os.path.dirname(resolved)
        if os.path.isdir(parent):
            return
        if not self.settings.create_parents:
            raise OperationError(
                operation,
                ErrorKind.FILE_NOT_FOUND,
                "parent directory does not exist",
                suggestion="Create the directory first with mkdir",
            )
        try:
            os.makedirs(parent, exist_ok=True)
        except OSError as exc:
            raise _os_error(operation, exc, "parent directory") from exc

    def _atomic_write(self, resolved: str, data: bytes) -> None:
        directory = os.path.dirname(resolved)
        fd, temp_path = tempfile.mkstemp(
            dir=directory, prefix=f".{os.path.basename(resolved)}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                if self.settings.fsync_writes:
                    os.fsync(handle.fileno())
            try:
                mode = stat.S_IMODE(os.stat(resolved).st_mode)
            except FileNotFoundError:
                mode = 0o644
            os.chmod(temp_path, mode)
            os.replace(temp_path, resolved)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise

    def _write_bytes(self, operation: str, raw_path: str, data: bytes) -> dict[str, Any]:
        resolved = self.resolver.resolve(raw_path, operation=operation)
        if os.path.isdir(resolved):
            raise OperationError(
                operation,
                ErrorKind.VALIDATION,
                "path is a directory, not a file",
            )
        self._check_size(operation, len(data))
        self.quota.track_write(resolved, len(data), operation=operation)
        self._ensure_parent(operation, resolved)
        created = not os.path.exists(resolved)
        try:
            self._atomic_write(resolved, data)
        except OSError as exc:
            raise _os_error(operation, exc) from exc
        return {"path": resolved, "bytes": len(data), "created": created}

    def _serialize(self, operation: str, fmt: str, content: Any) -> str:
        try:
            if fmt == "json":
                return codecs.dump_json(content)
            if fmt == "yaml":
                return codecs.dump_yaml(content)
        except codecs.CodecError as exc:
            raise OperationError(operation, ErrorKind.TYPE, str(exc), cause=exc) from exc
        raise OperationError(operation, ErrorKind.INTERNAL, f"unsupported format {fmt}")

    def _write_formatted(self, operation: str, path: str, fmt: str, content: Any) -> Result:
        text = self._serialize(operation, fmt, content)
        metadata = self._write_bytes(operation, path, text.encode("utf-8"))
        metadata["format"] = fmt
        return Result(response=True, metadata=metadata)

    def _write(self, params: WriteInputs, context: CallContext) -> Result:
        fmt = codecs.format_for(os.path.splitext(params.path)[1])
        if fmt in ("json", "yaml"):
            return self._write_formatted("write", params.path, fmt, params.content)
        if isinstance(params.content, str):
            metadata = self._write_bytes("write", params.path, params.content.encode("utf-8"))
            metadata["format"] = "text"
            return Result(response=True, metadata=metadata)
        return self._write_formatted("write", params.path, "json", params.content)

    def _write_text(self, params: WriteTextInputs, context: CallContext) -> Result:
        metadata = self._write_bytes("write_text", params.path, params.content.encode("utf-8"))
        metadata["format"] = "text"
        return Result(response=True, metadata=metadata)

    def _write_json(self, params: WriteInputs, context: CallContext) -> Result:
        return self._write_formatted("write_json", params.path, "json", params.content)

    def _write_yaml(self, params: WriteInputs, context: CallContext) -> Result:
        return self._write_formatted("write_yaml", params.path, "yaml", params.content)

    def _append(self, params: WriteTextInputs, context: CallContext) -> Result:
        data = params.content.encode("utf-8")
        resolved = self.resolver.resolve(params.path, operation="append")
        existing = os.path.getsize(resolved) if os.path.isfile(resolved) else 0
        self._check_size("append", existing + len(data))
        self.quota.track_write(resolved, len(data), operation="append")
        self._ensure_parent("append", resolved)
        created = not os.path.exists(resolved)
        try:
            with open(resolved, "ab") as handle:
                handle.write(data)
        except OSError as exc:
            raise _os_error("append", exc) from exc
        return Result(response=True, metadata={"path": resolved, "bytes": len(data), "created": created})

    def _render(self, params: RenderInputs, context: CallContext) -> Result:
        template_path, data = self._load("render", params.template, self.settings.max_file_size)
        source = self._decode("render", data)
        try:
            rendered = render_template(source, params.data)
        except TemplateRenderError as exc:
            raise OperationError(
                "render",
                ErrorKind.VALIDATION,
                f"template_error: {exc}",
                cause=exc,
                suggestion="Templates may only use upper, lower, trim, replace, split, join, default and comparison helpers",
            ) from exc
        metadata = self._write_bytes("render", params.output, rendered.encode("utf-8"))
        metadata["template"] = template_path
        metadata["output"] = metadata["path"]
        return Result(response=metadata["path"], metadata=metadata)

    # directories and metadata

    def _require_dir(self, operation: str, raw_path: str) -> str:
        resolved = self.resolver.resolve(raw_path, operation=operation)
        if not os.path.exists(resolved):
            raise OperationError(operation, ErrorKind.FILE_NOT_FOUND, "directory not found")
        if not os.path.isdir(resolved):
            raise OperationError(operation, ErrorKind.VALIDATION, "path is not a directory")
        return resolved

    def _list(self, params: ListInputs, context: CallContext) -> Result:
        root = self._require_dir("list", params.path)
        matcher = None
        by_path = False
        if params.pattern:
            try:
                matcher = glob_to_regex(params.pattern, params.recursive)
            except re.error as exc:
                raise OperationError(
                    "list", ErrorKind.VALIDATION, f"invalid glob pattern: {exc}", cause=exc
                ) from exc
            by_path = "/" in params.pattern
        walk_all = params.recursive or by_path

        entries: list[dict[str, Any]] = []
        for full, rel in self._walk(root, walk_all):
            context.cancel.raise_if_cancelled("list")
            try:
                info = os.lstat(full)
            except OSError:
                continue
            is_dir = stat.S_ISDIR(info.st_mode)
            if params.type == "files" and is_dir:
                continue
            if params.type == "dirs" and not is_dir:
                continue
            if matcher is not None:
                subject = rel if by_path else os.path.basename(rel)
                if not matcher.match(subject):
                    continue
            entries.append(
                {
                    "name": os.path.basename(full),
                    "path": full,
                    "size": info.st_size,
                    "isDir": is_dir,
                    "modTime": _mod_time(info),
                }
            )
        entries.sort(key=lambda item: item["path"])
        return Result(response=entries, metadata={"path": root, "count": len(entries)})

    @staticmethod
    def _walk(root: str, recursive: bool):
        if not recursive:
            with os.scandir(root) as scan:
                for entry in scan:
                    yield entry.path, entry.name
            return
        for current, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in dirnames + sorted(filenames):
                full = os.path.join(current, name)
                yield full, os.path.relpath(full, root).replace(os.sep, "/")

    def _exists(self, params: PathInputs, context: CallContext) -> Result:
        resolved = self.resolver.resolve(params.path, operation="exists")
        return Result(response=os.path.exists(resolved), metadata={"path": resolved})

    def _stat(self, params: PathInputs, context: CallContext) -> Result:
        resolved = self.resolver.resolve(params.path, operation="stat")
        try:
            info = os.stat(resolved)
        except OSError as exc:
            raise _os_error("stat", exc) from exc
        response = {
            "name": os.path.basename(resolved),
            "size": info.st_size,
            "isDir": stat.S_ISDIR(info.st_mode),
            "modTime": _mod_time(info),
            "mode": stat.filemode(info.st_mode),
        }
        return Result(response=response, metadata={"path": resolved})

    def _mkdir(self, params: MkdirInputs, context: CallContext) -> Result:
        resolved = self.resolver.resolve(params.path, operation="mkdir")
        if os.path.exists(resolved):
            if not os.path.isdir(resolved):
                raise OperationError(
                    "mkdir", ErrorKind.VALIDATION, "path exists and is not a directory"
                )
            return Result(response=resolved, metadata={"path": resolved, "created": False})
        try:
            if params.parents:
                os.makedirs(resolved, exist_ok=True)
            else:
                os.mkdir(resolved)
        except FileNotFoundError as exc:
            raise OperationError(
                "mkdir",
                ErrorKind.FILE_NOT_FOUND,
                "parent directory does not exist",
                cause=exc,
                suggestion="Set parents=true to create intermediate directories",
            ) from exc
        except FileExistsError:
            return Result(response=resolved, metadata={"path": resolved, "created": False})
        except OSError as exc:
            raise _os_error("mkdir", exc, "directory") from exc
        return Result(response=resolved, metadata={"path": resolved, "created": True})

    # copy / move / delete

    @staticmethod
    def _tree_size(path: str) -> int:
        if not os.path.isdir(path):
            return os.path.getsize(path)
        total = 0
        for current, _dirs, files in os.walk(path):
            for name in files:
                try:
                    total += os.lstat(os.path.join(current, name)).st_size
                except OSError:
                    continue
        return total

    def _source_and_dest(self, operation: str, source: str, dest: str) -> tuple[str, str]:
        src = self.resolver.resolve(source, operation=operation)
        if not os.path.exists(src):
            raise OperationError(operation, ErrorKind.FILE_NOT_FOUND, "source not found")
        dst = self.resolver.resolve(dest, operation=operation)
        if os.path.isdir(dst) and not os.path.isdir(src):
            dst = os.path.join(dst, os.path.basename(src))
        if os.path.isdir(src) and within_path(dst, src):
            raise OperationError(
                operation, ErrorKind.VALIDATION, "destination lies inside the source directory"
            )
        return src, dst

    def _copy_into(self, src: str, dst: str) -> None:
        if os.path.isdir(src):
            shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
            return
        directory = os.path.dirname(dst)
        fd, temp_path = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(dst)}.", suffix=".tmp")
        os.close(fd)
        try:
            shutil.copy2(src, temp_path)
            os.replace(temp_path, dst)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise

    def _copy(self, params: CopyInputs, context: CallContext) -> Result:
        src, dst = self._source_and_dest("copy", params.source, params.dest)
        if os.path.isdir(src) and not params.recursive:
            raise OperationError(
                "copy",
                ErrorKind.VALIDATION,
                "source is a directory",
                suggestion="Set recursive=true to copy directories",
            )
        size = self._tree_size(src)
        if not os.path.isdir(src):
            self._check_size("copy", size)
        self.quota.track_write(dst, size, operation="copy")
        self._ensure_parent("copy", dst)
        try:
            self._copy_into(src, dst)
        except OSError as exc:
            raise _os_error("copy", exc) from exc
        return Result(response=dst, metadata={"source": src, "dest": dst, "bytes": size})

    def _move(self, params: MoveInputs, context: CallContext) -> Result:
        src, dst = self._source_and_dest("move", params.source, params.dest)
        self._ensure_parent("move", dst)
        copied = 0
        cross_device = False
        try:
            os.replace(src, dst)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise _os_error("move", exc) from exc
            cross_device = True
            copied = self._tree_size(src)
            self.quota.track_write(dst, copied, operation="move")
            try:
                self._copy_into(src, dst)
                if os.path.isdir(src):
                    shutil.rmtree(src)
                else:
                    os.unlink(src)
            except OSError as inner:
                raise _os_error("move", inner) from inner
        return Result(
            response=dst,
            metadata={"source": src, "dest": dst, "bytes": copied, "cross_device": cross_device},
        )

    def _delete(self, params: DeleteInputs, context: CallContext) -> Result:
        resolved = self.resolver.resolve(params.path, operation="delete")
        if not os.path.lexists(resolved):
            return Result(response=False, metadata={"path": resolved, "deleted": False})
        try:
            if os.path.isdir(resolved) and not os.path.islink(resolved):
                if not params.recursive:
                    raise OperationError(
                        "delete",
                        ErrorKind.VALIDATION,
                        "path is a directory",
                        suggestion="Set recursive=true to delete directories",
                    )
                shutil.rmtree(resolved)
            else:
                os.unlink(resolved)
        except FileNotFoundError:
            return Result(response=False, metadata={"path": resolved, "deleted": False})
        except OSError as exc:
            raise _os_error("delete", exc) from exc
        return Result(response=True, metadata={"path": resolved, "deleted": True})
