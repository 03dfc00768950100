"""Helpers shared by revision building and replay."""

import re
from datetime import datetime, timedelta
from typing import Iterable, Iterator, Optional, Set, Tuple
from urllib.parse import unquote, urlsplit

from bs4 import BeautifulSoup, Tag

REVISION_DELTA = timedelta(milliseconds=50)

_IMAGE_WRAP = re.compile(
    r'<span\s+class="image-wrap"[^>]*>\s*\(?\s*(<img\b[^>]*>)\s*\)?\s*</span>',
    re.IGNORECASE | re.DOTALL,
)


def next_valid_delta_rev(current: datetime, candidate: Optional[datetime] = None) -> datetime:
    """Get the timestamp for the revision following ``current``.

    Args:
        current: Timestamp of the previous revision
        candidate: Timestamp reported by the source, if any

    Returns:
        ``current + 50ms`` without a candidate, else the later of both
    """
    floor = current + REVISION_DELTA
    if candidate is None:
        return floor
    return max(candidate, floor)


def replace_html_elements(html: Optional[str]) -> str:
    """Strip the image-wrap decoration Jira renders around embedded images.

    The ``<img>`` tag itself is kept verbatim.

    Raises:
        ValueError: If ``html`` is None
    """
    if html is None:
        raise ValueError("html must not be None")
    return _IMAGE_WRAP.sub(lambda m: m.group(1), html)


def has_any_by_ref_name(fields: Iterable, reference_name: str) -> bool:
    """Check whether a field list carries a change for ``reference_name``."""
    return any(f.reference_name == reference_name for f in fields)


def file_reference_name(value: str) -> str:
    """Get the file name a ``src``/``href`` value points at.

    Query strings are ignored, so an attachment URL such as
    ``.../attachments/{guid}?fileName=a.png`` resolves to the guid.
    """
    path = urlsplit(value.replace("\\", "/")).path
    return unquote(path.rstrip("/").rsplit("/", 1)[-1])


def iter_file_references(soup: BeautifulSoup) -> Iterator[Tuple[Tag, str]]:
    """Yield ``(tag, attribute)`` for every image source and link target."""
    for img in soup.find_all("img", src=True):
        yield img, "src"
    for link in soup.find_all("a", href=True):
        yield link, "href"


def referenced_file_names(html: str) -> Set[str]:
    """Get the names of the files referenced by images and links in HTML."""
    soup = BeautifulSoup(html, "html.parser")
    return {file_reference_name(tag[attr]) for tag, attr in iter_file_references(soup)}
