"""Map remote resource URLs to deterministic local paths inside the output root."""
import posixpath
import re
from typing import Dict, Iterator, Optional, Set, Tuple
from urllib.parse import unquote, urldefrag, urljoin, urlsplit

from .utils import detect_extension, url_hash

ASSETS_DIR = "assets"
EXTERNAL_DIR = "_external"
ROOT_ROUTES = ("", "/", "/index.html")

UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._~/-]")
UNSAFE_HOST_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def clean_segments(path: str) -> str:
    """Drop empty, "." and ".." segments and replace unsafe characters."""
    path = unquote(path.split("#")[0].split("?")[0])
    segments = [s for s in path.split("/") if s and s not in (".", "..")]
    return "/".join(UNSAFE_PATH_CHARS.sub("_", s) for s in segments)


def _origin(url: str) -> Tuple[str, str]:
    parts = urlsplit(url)
    return (parts.scheme.lower(), (parts.netloc or "").lower())


def same_origin(url: str, base_url: str) -> bool:
    return _origin(url) == _origin(base_url)


def normalize_url(url: str) -> str:
    """Key used for the capture map: the URL without its fragment."""
    return urldefrag(url)[0]


def local_path_for(
    remote_url: str,
    base_url: str,
    content_type: Optional[str] = None,
    body: Optional[bytes] = None,
) -> str:
    """Relative output path for a captured resource.

    Same-origin resources land under ``assets/``; anything else under
    ``assets/_external/<host>/``.
    """
    parts = urlsplit(remote_url)
    rel = clean_segments(parts.path)
    if not rel:
        rel = "index.html"
    elif parts.path.endswith("/"):
        rel = rel + "/index"

    if not posixpath.splitext(posixpath.basename(rel))[1]:
        rel += detect_extension(remote_url, content_type, body)

    if same_origin(remote_url, base_url):
        return posixpath.join(ASSETS_DIR, rel)
    host = UNSAFE_HOST_CHARS.sub("_", (parts.netloc or "unknown").lower())
    return posixpath.join(ASSETS_DIR, EXTERNAL_DIR, host, rel)


def with_suffix(path: str, suffix: str) -> str:
    stem, ext = posixpath.splitext(path)
    return f"{stem}-{suffix}{ext}"


def is_root_route(route: str) -> bool:
    return route.strip() in ROOT_ROUTES or not clean_segments(route)


def route_output_path(route: str) -> str:
    """'/' -> 'index.html', '/about/' -> 'about/index.html'"""
    if is_root_route(route):
        return "index.html"
    return posixpath.join(clean_segments(route), "index.html")


def route_url(route: str, base_url: str) -> str:
    """Resolve a route against the target's origin."""
    parts = urlsplit(base_url)
    origin = f"{parts.scheme}://{parts.netloc}/"
    return urljoin(origin, route.strip() or "/")


def relative_link(from_file: str, to_file: str) -> str:
    """Path of to_file as seen from the directory holding from_file."""
    start = posixpath.dirname(from_file) or "."
    return posixpath.relpath(to_file, start)


class CaptureMap:
    """Per-job mapping from remote URL to local relative path.

    Each URL is stored once and each local path belongs to exactly one URL.
    When a derived path is already taken (or would need a file where a
    directory exists, or the other way round) a short hash of the URL is
    appended to the file name.
    """

    def __init__(self, base_url: str):
        self.base_url = base_url
        self._by_url: Dict[str, str] = {}
        self._files: Set[str] = set()
        self._dirs: Set[str] = set()

    def __contains__(self, url: str) -> bool:
        return normalize_url(url) in self._by_url

    def __len__(self) -> int:
        return len(self._by_url)

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_url)

    def items(self):
        return self._by_url.items()

    def lookup(self, url: str) -> Optional[str]:
        return self._by_url.get(normalize_url(url))

    def _conflicts(self, path: str) -> bool:
        if path in self._files or path in self._dirs:
            return True
        parent = posixpath.dirname(path)
        while parent:
            if parent in self._files:
                return True
            parent = posixpath.dirname(parent)
        return False

    def _reserve(self, path: str) -> None:
        self._files.add(path)
        parent = posixpath.dirname(path)
        while parent:
            self._dirs.add(parent)
            parent = posixpath.dirname(parent)

    def claim(self, url: str, content_type: Optional[str] = None, body: Optional[bytes] = None) -> str:
        """Return the local path for url, allocating one on first sight."""
        key = normalize_url(url)
        existing = self._by_url.get(key)
        if existing:
            return existing

        path = local_path_for(key, self.base_url, content_type, body)
        if self._conflicts(path):
            path = with_suffix(path, url_hash(key))
            if self._conflicts(path):
                # the hashed name is taken by a directory; fall back to a flat name
                path = posixpath.join(ASSETS_DIR, url_hash(key, 40) + posixpath.splitext(path)[1])
        self._reserve(path)
        self._by_url[key] = path
        return path

    def register(self, url: str, path: str) -> None:
        """Record a fixed path (route pages) without collision handling."""
        self._by_url.setdefault(normalize_url(url), path)
        self._reserve(path)
