import os
import re
import hashlib
from typing import Optional
from urllib.parse import urlsplit

import filetype

CONTENT_TYPE_EXTENSIONS = {
    "text/css": ".css",
    "text/javascript": ".js",
    "application/javascript": ".js",
    "application/x-javascript": ".js",
    "application/ecmascript": ".js",
    "text/ecmascript": ".js",
    "application/json": ".json",
    "application/manifest+json": ".json",
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "image/avif": ".avif",
    "image/x-icon": ".ico",
    "image/vnd.microsoft.icon": ".ico",
    "font/woff": ".woff",
    "font/woff2": ".woff2",
    "application/font-woff": ".woff",
    "application/font-woff2": ".woff2",
    "font/ttf": ".ttf",
    "font/otf": ".otf",
    "text/plain": ".txt",
    "text/xml": ".xml",
    "application/xml": ".xml",
}

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")

URL_EXTENSION_REGEX = re.compile(r"\.([A-Za-z0-9]{1,5})$")


def mkdir(path):
    """Create directory if it doesn't exist"""
    os.makedirs(path, exist_ok=True)


def media_type(content_type: Optional[str]) -> str:
    """'text/css; charset=utf-8' -> 'text/css'"""
    return (content_type or "").split(";")[0].strip().lower()


def is_html(content_type: Optional[str]) -> bool:
    return media_type(content_type) in HTML_CONTENT_TYPES


def is_css(content_type: Optional[str]) -> bool:
    return media_type(content_type) == "text/css"


def url_hash(url: str, length: int = 10) -> str:
    """Short stable hash of a URL, used to break local path collisions"""
    return hashlib.sha1(url.encode()).hexdigest()[:length]


def detect_extension(url: str, content_type: Optional[str], data: Optional[bytes] = None) -> str:
    """Detect a file extension from Content-Type, a trailing URL token, or magic bytes.

    Returns "" when nothing matches.
    """
    ext = CONTENT_TYPE_EXTENSIONS.get(media_type(content_type))
    if ext:
        return ext

    parts = urlsplit(url)
    tail = parts.path + ("?" + parts.query if parts.query else "")
    match = URL_EXTENSION_REGEX.search(tail)
    if match:
        return "." + match.group(1).lower()

    if data:
        kind = filetype.guess(data)
        if kind:
            return f".{kind.extension}"

    return ""


def parse_timeout(value: str) -> int:
    """Parse timeout string (e.g., '30s', '1m') into milliseconds"""
    value = str(value).lower().strip()
    if value.endswith("ms"):
        return int(value[:-2])
    elif value.endswith("s"):
        return int(float(value[:-1]) * 1000)
    elif value.endswith("m"):
        return int(float(value[:-1]) * 60 * 1000)
    else:
        return int(float(value) * 1000)
