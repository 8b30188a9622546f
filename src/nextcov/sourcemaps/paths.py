"""Bundler URL and source path conventions.

Covers webpack (``webpack://``, ``webpack-internal:///``), Next.js
(``/_next/``, the ``_N_E`` internal namespace) and Vite (``/@fs/``,
``/@vite/``, ``/@react-refresh``).
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from urllib.parse import unquote

FILE_PROTOCOL = "file://"

# webpack
WEBPACK_URL_PATTERNS = ("webpack-internal://", "webpack://", "(app-pages-browser)")
WEBPACK_PREFIX_PATTERN = re.compile(r"^webpack://[^/]*/")
WEBPACK_INTERNAL_MODULE_PATTERN = re.compile(r"webpack-internal:///\([^)]+\)/(.+)")

# Next.js
NEXTJS_INTERNAL_PREFIX = "_N_E/"
NEXT_STATIC_PATH = "/_next/"
NEXT_STATIC_CHUNKS_PATH = "/_next/static/chunks/"
NEXTJS_CHUNK_PATTERN = re.compile(r"_next/static/chunks/[^\"']+\.js")
COMMON_DEV_CHUNKS = (
    "_next/static/chunks/app/page.js",
    "_next/static/chunks/app/layout.js",
    "_next/static/chunks/main-app.js",
    "_next/static/chunks/webpack.js",
)

# Vite
VITE_FS_PREFIX = "/@fs/"
VITE_INTERNAL_PREFIX = "/@vite/"
VITE_REACT_REFRESH_PREFIX = "/@react-refresh"

_TRAILING_QUERY = re.compile(r"\?[^?]*$")
_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:")


def is_webpack_url(url: str) -> bool:
    return any(pattern in url for pattern in WEBPACK_URL_PATTERNS)


def normalize_webpack_source_path(source_path: str) -> str:
    """Strip bundler decoration from a source map ``sources`` entry.

    ``webpack://_N_E/./src/app/page.tsx?1234`` becomes ``src/app/page.tsx``.
    """
    path = WEBPACK_PREFIX_PATTERN.sub("", source_path, count=1)
    if path.startswith(NEXTJS_INTERNAL_PREFIX):
        path = path[len(NEXTJS_INTERNAL_PREFIX) :]
    path = _TRAILING_QUERY.sub("", path, count=1)
    if path.startswith("./"):
        path = path[2:]
    return unquote(path)


def extract_webpack_module_path(url: str) -> str | None:
    """``webpack-internal:///(ssr)/./src/a.ts`` -> ``./src/a.ts``."""
    match = WEBPACK_INTERNAL_MODULE_PATTERN.search(url)
    return match.group(1) if match else None


def contains_source_root(path: str, source_root: str) -> bool:
    return f"/{source_root}/" in path or f"/./{source_root}/" in path


def is_next_chunks_url(url: str) -> bool:
    return NEXT_STATIC_CHUNKS_PATH in url


def extract_next_path(url: str) -> str | None:
    """Portion of the URL after the first ``/_next/``."""
    parts = url.split(NEXT_STATIC_PATH)
    return parts[1] if len(parts) > 1 else None


def strip_nextjs_prefix(path: str) -> str:
    if path.startswith(NEXTJS_INTERNAL_PREFIX):
        return path[len(NEXTJS_INTERNAL_PREFIX) :]
    return path


def is_vite_source_url(url: str) -> bool:
    return "/src/" in url or VITE_FS_PREFIX in url


def is_vite_internal_url(url: str) -> bool:
    return VITE_INTERNAL_PREFIX in url or VITE_REACT_REFRESH_PREFIX in url


def extract_vite_fs_path(url: str) -> str | None:
    """``http://host/@fs/abs/path.ts`` -> ``/abs/path.ts``."""
    index = url.find(VITE_FS_PREFIX)
    if index == -1:
        return None
    return url[index + len(VITE_FS_PREFIX) - 1 :]


def normalize_vite_source_path(source_path: str) -> str:
    path = extract_vite_fs_path(source_path) or source_path
    return path.split("?", 1)[0]


def is_node_modules_path(path: str) -> bool:
    return "node_modules/" in path or "node_modules\\" in path


def to_file_url(file_path: str, project_root: str | None = None) -> str:
    """Build a ``file://`` URL, resolving relative paths against ``project_root``."""
    if file_path.startswith(FILE_PROTOCOL):
        return file_path
    if _WINDOWS_DRIVE.match(file_path):
        return f"file:///{file_path.replace(chr(92), '/')}"
    if file_path.startswith("/"):
        return f"{FILE_PROTOCOL}{file_path}"
    if project_root:
        joined = str(PurePosixPath(project_root.replace("\\", "/")) / file_path)
        if _WINDOWS_DRIVE.match(joined):
            return f"file:///{joined}"
        return f"{FILE_PROTOCOL}{joined}"
    return f"{FILE_PROTOCOL}{file_path}"
