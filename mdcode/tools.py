"""Tool registry, built-in file tools and the local filesystem they act on."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Any, Callable

from .report import (
    DuplicateToolName,
    InvalidArguments,
    NotFound,
    NotReadable,
    NotWritable,
    PathOutsideBase,
    ToolError,
    UnknownTool,
)
from .transcript import ToolCallResult

logger = logging.getLogger(__name__)

BINARY_CHECK_BYTES = 8 * 1024  # 8 KB

# Raised by resolve/stat for NUL bytes, overlong names and symlink loops.
_PATH_ERRORS = (OSError, ValueError, RuntimeError)

SKIP_DIRS = frozenset(
    {"target", "node_modules", "venv", ".venv", "__pycache__", "dist", "build"}
)
ALLOWED_HIDDEN = frozenset({".github"})


def should_skip_path(path: PurePath) -> bool:
    """True for hidden entries and build/vendor directories anywhere in `path`."""
    for part in PurePath(path).parts:
        if part in (".", ".."):
            continue
        if part in SKIP_DIRS:
            return True
        if part.startswith(".") and part not in ALLOWED_HIDDEN:
            return True
    return False


def safe_resolve(file_path: str, base_dir: str, unrestricted: bool = False) -> Path:
    """Resolve a file path, ensuring it stays within base_dir.

    Resolves symlinks for both the base directory and the target path.
    When unrestricted is True, resolves the path but skips the containment check.

    Raises:
        PathOutsideBase: If the resolved path escapes base_dir (when not unrestricted).
    """
    base = Path(base_dir).resolve()

    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if unrestricted or resolved.is_relative_to(base):
        return resolved

    raise PathOutsideBase(
        f"path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


class LocalFilesystem:
    """Reads, lists and writes files under a base directory."""

    def __init__(self, base_dir: str = ".", unrestricted: bool = False):
        self.base_dir = base_dir
        self.unrestricted = unrestricted

    def resolve(self, path: str) -> Path:
        return safe_resolve(path, self.base_dir, unrestricted=self.unrestricted)

    def _inspect(self, path: str, error: type[ToolError]) -> tuple[Path, bool, bool]:
        """Resolve `path` and stat it, as (resolved, exists, is_dir)."""
        try:
            resolved = self.resolve(path)
            return resolved, resolved.exists(), resolved.is_dir()
        except _PATH_ERRORS as exc:
            raise error(f"invalid path {path!r}: {exc}") from exc

    def read(self, path: str) -> bytes:
        resolved, exists, is_dir = self._inspect(path, NotFound)
        if not exists:
            raise NotFound(f"path does not exist: {path}")
        if is_dir:
            raise NotReadable(f"path is a directory: {path}")
        try:
            return resolved.read_bytes()
        except PermissionError as exc:
            raise NotReadable(f"permission denied: {path}") from exc
        except OSError as exc:
            raise NotReadable(f"failed to read {path}: {exc}") from exc

    def list(self, path: str = ".", recursive: bool = True) -> list[str]:
        root, exists, is_dir = self._inspect(path, NotFound)
        if not exists:
            raise NotFound(f"path does not exist: {path}")
        if not is_dir:
            raise NotFound(f"path is not a directory: {path}")

        def on_error(exc: OSError) -> None:
            if exc.filename is None or Path(exc.filename) == root:
                raise NotReadable(f"cannot list {path}: {exc}") from exc
            logger.debug("skipping unreadable directory %s: %s", exc.filename, exc)

        entries: list[str] = []
        for dirpath, dirs, files in os.walk(root, onerror=on_error):
            rel_dir = Path(dirpath).relative_to(root)
            dirs[:] = sorted(d for d in dirs if not should_skip_path(PurePath(d)))
            for d in dirs:
                entries.append((rel_dir / d).as_posix() + "/")
            for filename in files:
                if should_skip_path(PurePath(filename)):
                    continue
                entries.append((rel_dir / filename).as_posix())
            if not recursive:
                break

        return sorted(entries)

    def write(self, path: str, content: str | bytes) -> int:
        resolved, _, is_dir = self._inspect(path, NotWritable)
        data = content.encode("utf-8") if isinstance(content, str) else content
        if is_dir:
            raise NotWritable(f"path is a directory: {path}")
        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            resolved.write_bytes(data)
        except PermissionError as exc:
            raise NotWritable(f"permission denied: {path}") from exc
        except (OSError, ValueError) as exc:
            raise NotWritable(f"failed to write {path}: {exc}") from exc
        return len(data)


# --- Schemas and registry ---

_TYPE_CHECKS: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


@dataclass(frozen=True)
class Param:
    name: str
    type: str
    description: str
    required: bool = True
    default: Any = None


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    params: tuple[Param, ...]
    invoke: Callable[[dict], Any]

    def to_schema(self) -> dict:
        """OpenAI-style function schema, the format litellm translates per vendor."""
        properties = {}
        for p in self.params:
            prop: dict = {"type": p.type, "description": p.description}
            if p.default is not None:
                prop["default"] = p.default
            properties[p.name] = prop
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": [p.name for p in self.params if p.required],
                },
            },
        }

    def validate(self, arguments) -> dict:
        """Check arguments against the declared params; return them with defaults filled."""
        if not isinstance(arguments, dict):
            raise InvalidArguments(
                f"{self.name}: arguments must be a JSON object, got {type(arguments).__name__}"
            )
        checked = {}
        for p in self.params:
            if p.name not in arguments or arguments[p.name] is None:
                if p.required:
                    raise InvalidArguments(f"{self.name}: missing required argument {p.name!r}")
                if p.default is not None:
                    checked[p.name] = p.default
                continue
            value = arguments[p.name]
            expected = _TYPE_CHECKS[p.type]
            # bool is a subclass of int; only accept it where a boolean is declared.
            if (isinstance(value, bool) and p.type != "boolean") or not isinstance(
                value, expected
            ):
                raise InvalidArguments(
                    f"{self.name}: argument {p.name!r} expected {p.type}, "
                    f"got {type(value).__name__}"
                )
            checked[p.name] = value
        extra = set(arguments) - {p.name for p in self.params}
        if extra:
            logger.debug("%s: ignoring unknown arguments %s", self.name, sorted(extra))
        return checked


class ToolRegistry:
    """Maps tool names to specs. Frozen once the session starts."""

    def __init__(self):
        self._specs: dict[str, ToolSpec] = {}
        self._frozen = False

    def register(self, spec: ToolSpec) -> None:
        if self._frozen:
            raise RuntimeError("tool registry is frozen")
        if spec.name in self._specs:
            raise DuplicateToolName(f"tool {spec.name!r} is already registered")
        if any(p.type not in _TYPE_CHECKS for p in spec.params):
            raise ValueError(f"tool {spec.name!r} declares an unsupported parameter type")
        self._specs[spec.name] = spec

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    def __contains__(self, name: str) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def schemas(self) -> list[dict]:
        return [spec.to_schema() for spec in self._specs.values()]

    def dispatch(self, name: str, arguments, call_id: str = "") -> ToolCallResult:
        """Validate and run a tool. Tool failures come back as error results."""
        spec = self._specs.get(name)
        try:
            if spec is None:
                raise UnknownTool(f"unknown tool {name!r}; available: {', '.join(self._specs)}")
            checked = spec.validate(arguments)
            output = spec.invoke(checked)
        except ToolError as exc:
            logger.debug("tool %s failed: %s", name, exc)
            return ToolCallResult.failure(call_id, exc.kind, str(exc))
        return ToolCallResult.success(call_id, output)


# --- Built-in tools ---


def _read_file(fs: LocalFilesystem, args: dict) -> str:
    path = args["path"]
    data = fs.read(path)
    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        raise NotReadable(f"binary file detected: {path}")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise NotReadable(f"failed to decode {path} as UTF-8: {exc}") from exc


def _list_files(fs: LocalFilesystem, args: dict) -> list[str]:
    return fs.list(args["path"], recursive=True)


def _edit_file(fs: LocalFilesystem, args: dict) -> str:
    path = args["path"]
    written = fs.write(path, args["content"])
    return f"Wrote {written} bytes to {path}"


def builtin_specs(fs: LocalFilesystem) -> list[ToolSpec]:
    return [
        ToolSpec(
            name="read_file",
            description=(
                "Read the contents of a given relative file path. Use this when you want "
                "to see what's inside a file. Do not use this with directory names."
            ),
            params=(
                Param("path", "string", "The relative path of a file in the working directory."),
            ),
            invoke=lambda args: _read_file(fs, args),
        ),
        ToolSpec(
            name="list_files",
            description=(
                "Recursively list files and directories at a given path. Directories end "
                "with '/'. If no path is provided, lists the current directory."
            ),
            params=(
                Param(
                    "path",
                    "string",
                    "Optional relative path to list files from. Defaults to the current directory.",
                    required=False,
                    default=".",
                ),
            ),
            invoke=lambda args: _list_files(fs, args),
        ),
        ToolSpec(
            name="edit_file",
            description=(
                "Create a file or replace its entire contents. Parent directories are "
                "created as needed. Always pass the complete new file content, not a patch."
            ),
            params=(
                Param("path", "string", "The path to the file."),
                Param("content", "string", "The full content the file should have."),
            ),
            invoke=lambda args: _edit_file(fs, args),
        ),
    ]


def build_registry(fs: LocalFilesystem, extra: list[ToolSpec] = ()) -> ToolRegistry:
    """Registry with the three file tools (plus any extras), frozen."""
    registry = ToolRegistry()
    for spec in [*builtin_specs(fs), *extra]:
        registry.register(spec)
    return registry.freeze()
