import re
from urllib.parse import urlparse

import nh3

POST_TAGS = {
    "p", "br", "strong", "em", "u", "s", "strike", "del",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "ul", "ol", "li", "blockquote", "pre", "code",
    "a", "img",
    "table", "thead", "tbody", "tr", "th", "td",
    "div", "span",
}
POST_ATTRIBUTES = {
    "a": {"href", "title", "target"},
    "img": {"src", "alt", "title", "width", "height"},
    "th": {"colspan", "rowspan"},
    "td": {"colspan", "rowspan"},
    "div": {"class"},
    "span": {"class"},
}
COMMENT_TAGS = {"p", "br", "strong", "em", "u", "a"}
COMMENT_ATTRIBUTES = {"a": {"href", "title"}}
URL_SCHEMES = {"http", "https", "mailto"}

_WHITESPACE = re.compile(r"\s+")


def sanitize_post_content(value: str) -> str:
    return nh3.clean(
        value,
        tags=POST_TAGS,
        attributes=POST_ATTRIBUTES,
        url_schemes=URL_SCHEMES,
        link_rel="noopener noreferrer",
    ).strip()


def sanitize_comment(value: str) -> str:
    return nh3.clean(
        value,
        tags=COMMENT_TAGS,
        attributes=COMMENT_ATTRIBUTES,
        url_schemes=URL_SCHEMES,
        link_rel="noopener noreferrer",
    ).strip()


def sanitize_title(text: str) -> str:
    """Titles are plain text with every tag dropped; entities stay escaped."""
    return _WHITESPACE.sub(" ", nh3.clean(text, tags=set())).strip()


def strip_tags(value: str) -> str:
    return _WHITESPACE.sub(" ", nh3.clean(value, tags=set())).strip()


def is_safe_url(url: str) -> bool:
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    if parsed.scheme == "mailto":
        return bool(parsed.path)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def is_safe_image_url(url: str) -> bool:
    if not is_safe_url(url):
        return False
    path = urlparse(url).path.lower()
    return path.endswith((".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg")) or "/files/" in path
