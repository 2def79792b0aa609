"""Flatten a directory's source files into one markdown document."""

import io
import logging
import os
from pathlib import Path, PurePath

from .report import NotFound
from .tools import BINARY_CHECK_BYTES, should_skip_path

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (
    "rs", "py", "js", "ts", "tsx", "go", "c", "h", "cpp", "hpp", "java",
    "rb", "sh", "toml", "yaml", "yml", "json", "md",
)

EXT2LANG = {
    "bash": "bash",
    "c": "c",
    "cc": "cpp",
    "cpp": "cpp",
    "css": "css",
    "go": "go",
    "h": "c",
    "hpp": "cpp",
    "html": "html",
    "java": "java",
    "js": "javascript",
    "json": "json",
    "md": "markdown",
    "py": "python",
    "rb": "ruby",
    "rs": "rust",
    "sh": "bash",
    "sql": "sql",
    "toml": "toml",
    "ts": "typescript",
    "tsx": "tsx",
    "txt": "text",
    "xml": "xml",
    "yaml": "yaml",
    "yml": "yaml",
}


def _normalize_extensions(extensions) -> frozenset[str]:
    return frozenset(e.lower().lstrip(".") for e in extensions if e.strip("."))


def file_language(path: PurePath) -> str:
    """Code fence tag for a file, or "" when the extension is unknown."""
    return EXT2LANG.get(path.suffix.lower().lstrip("."), "")


def collect_files(root: Path, extensions, ignore=()) -> list[Path]:
    """Return matching files under root, relative to it, in sorted order.

    Hidden entries and build directories are skipped the same way
    list_files skips them; so is any file or directory named in ignore.
    """
    wanted = _normalize_extensions(extensions)
    ignored = set(ignore)
    found: list[Path] = []
    for dirpath, dirs, files in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root)
        dirs[:] = sorted(
            d for d in dirs if d not in ignored and not should_skip_path(PurePath(d))
        )
        for filename in files:
            if filename in ignored or should_skip_path(PurePath(filename)):
                continue
            if PurePath(filename).suffix.lower().lstrip(".") not in wanted:
                continue
            found.append(rel_dir / filename)
    return sorted(found, key=lambda p: p.as_posix())


def _read_text(path: Path) -> str | None:
    try:
        data = path.read_bytes()
    except OSError as e:
        logger.debug("skipping unreadable %s: %s", path, e)
        return None
    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        logger.debug("skipping binary %s", path)
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        logger.debug("skipping non-UTF-8 %s", path)
        return None


def _fence_for(text: str) -> str:
    fence = "```"
    while fence in text:
        fence += "`"
    return fence


def render_markdown(title: str, entries: list[tuple[str, str]]) -> str:
    """Build the document from (relative path, text) pairs."""
    out = io.StringIO()
    out.write(f"# {title}\n\n")
    out.write("## Files\n\n")
    for rel, _ in entries:
        out.write(f"- `{rel}`\n")
    out.write("\n")

    for rel, text in entries:
        lang = file_language(PurePath(rel))
        fence = _fence_for(text)
        body = text if text.endswith("\n") else text + "\n"
        out.write(f"## {rel}\n\n")
        out.write(f"{fence}{lang}\n{body}{fence}\n\n")

    return out.getvalue().rstrip() + "\n"


def generate_markdown(
    input_dir: str,
    output: str,
    *,
    extensions=DEFAULT_EXTENSIONS,
    ignore=(),
) -> int:
    """Write every matching text file under input_dir into one markdown file.

    Binary and non-UTF-8 files are left out. Returns the number of files
    written. Raises NotFound when input_dir is not a directory.
    """
    root = Path(input_dir)
    if not root.is_dir():
        raise NotFound(f"input directory does not exist: {input_dir}")

    out_path = Path(output).resolve()
    entries = []
    for rel in collect_files(root, extensions, ignore):
        path = root / rel
        if path.resolve() == out_path:
            continue
        text = _read_text(path)
        if text is None:
            continue
        entries.append((rel.as_posix(), text))

    document = render_markdown(root.resolve().name or str(root), entries)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(document, encoding="utf-8")
    logger.debug("wrote %d files to %s", len(entries), out_path)
    return len(entries)
