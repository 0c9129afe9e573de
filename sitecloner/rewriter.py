import re
from typing import Mapping
from urllib.parse import urldefrag, urljoin

from bs4 import BeautifulSoup, NavigableString

from .localizer import relative_link

SKIP_PREFIXES = ("data:", "mailto:", "tel:", "javascript:", "blob:", "about:", "#")

CSS_URL_REGEX = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_REGEX = re.compile(r"(@import\s+)([\"'])([^\"']+)\2", re.IGNORECASE)


def convert_url_to_local(url, base_url, links, doc_path):
    """Convert URL to a path relative to doc_path when it was captured"""
    if not url:
        return url
    stripped = url.strip()
    if not stripped or stripped.lower().startswith(SKIP_PREFIXES):
        return url

    reference, fragment = urldefrag(stripped)
    absolute_url = urljoin(base_url, reference)
    local_path = links.get(urldefrag(absolute_url)[0])
    if local_path is None:
        # not downloaded, or already rewritten to a local target
        return url

    rel_path = relative_link(doc_path, local_path)
    return f"{rel_path}#{fragment}" if fragment else rel_path


def rewrite_css_urls(css_content, base_url, links, doc_path):
    """Change all url() and @import references in CSS to local paths"""

    def replace_url(match):
        quote, url = match.group(1), match.group(2)
        local_url = convert_url_to_local(url, base_url, links, doc_path)
        if local_url == url:
            return match.group(0)
        return f"url({quote}{local_url}{quote})"

    def replace_import(match):
        prefix, quote, url = match.groups()
        local_url = convert_url_to_local(url, base_url, links, doc_path)
        if local_url == url:
            return match.group(0)
        return f"{prefix}{quote}{local_url}{quote}"

    css_content = CSS_URL_REGEX.sub(replace_url, css_content)
    return CSS_IMPORT_REGEX.sub(replace_import, css_content)


def _rewrite_srcset(srcset, base_url, links, doc_path):
    new_srcset_parts = []
    for part in srcset.split(","):
        url_width = part.strip().split()
        if not url_width:
            continue
        local_url = convert_url_to_local(url_width[0], base_url, links, doc_path)
        new_srcset_parts.append(" ".join([local_url] + url_width[1:]))
    return ", ".join(new_srcset_parts)


def _is_blank(node):
    return type(node) is NavigableString and not node.strip()


def _remove_tag(tag):
    """Decompose tag without leaving two whitespace strings side by side.

    html.parser collapses a whitespace-only run into a single "\\n" or " ",
    so adjacent runs would serialize differently after a reparse.
    """
    before, after = tag.previous_sibling, tag.next_sibling
    tag.decompose()
    if _is_blank(before) and _is_blank(after):
        joined = "\n" if "\n" in before + after else " "
        after.extract()
        before.replace_with(NavigableString(joined))


def rewrite_html_links(html_content, base_url, links, doc_path):
    """Change src/href/srcset references and inline CSS in HTML to local paths.

    ``<base>`` tags are removed; their href still counts as the resolution
    base for the document, since that is what the browser used.
    """
    soup = BeautifulSoup(html_content, "html.parser")

    for base_tag in soup.find_all("base"):
        href = base_tag.get("href")
        if isinstance(href, str) and href.strip():
            base_url = urljoin(base_url, href.strip())
            break
    for base_tag in soup.find_all("base"):
        _remove_tag(base_tag)

    for tag in soup.find_all(True):
        for attr in ("src", "href"):
            value = tag.get(attr)
            if isinstance(value, str):
                tag[attr] = convert_url_to_local(value, base_url, links, doc_path)

        srcset = tag.get("srcset")
        if isinstance(srcset, str) and srcset.strip():
            tag["srcset"] = _rewrite_srcset(srcset, base_url, links, doc_path)

        style = tag.get("style")
        if isinstance(style, str) and "url(" in style.lower():
            tag["style"] = rewrite_css_urls(style, base_url, links, doc_path)

    for style_tag in soup.find_all("style"):
        text = style_tag.string
        if text is None:
            continue
        new_text = rewrite_css_urls(str(text), base_url, links, doc_path)
        if new_text != str(text):
            # keep the original string class so CSS is not entity-escaped
            text.replace_with(type(text)(new_text))

    return str(soup)


def rewrite(document: bytes, kind: str, base_url: str, links: Mapping[str, str], doc_path: str) -> bytes:
    """Rewrite an HTML or CSS document so captured references point at local copies.

    ``links`` maps remote URLs (without fragment) to paths relative to the
    output root; ``doc_path`` is where the document itself is written.
    """
    if kind == "html":
        text = document.decode("utf-8", errors="replace")
        return rewrite_html_links(text, base_url, links, doc_path).encode("utf-8")
    if kind == "css":
        text = document.decode("utf-8", errors="surrogateescape")
        return rewrite_css_urls(text, base_url, links, doc_path).encode("utf-8", errors="surrogateescape")
    raise ValueError(f"Unsupported document kind: {kind!r}")

