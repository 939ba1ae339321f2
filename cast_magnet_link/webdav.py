"""
WebDAV multistatus rendering for the virtual directories.
Only the read side of RFC 4918 that media players use: PROPFIND with Depth 0 or 1.
"""

from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Iterable, List, Optional
from urllib.parse import quote
from xml.etree import ElementTree as ET

from .directory import VirtualFileEntry
from .utils import utc_now

DAV_NS = "DAV:"
MULTISTATUS_CONTENT_TYPE = "application/xml; charset=utf-8"

ET.register_namespace("D", DAV_NS)


def _tag(name: str) -> str:
    return f"{{{DAV_NS}}}{name}"


def _http_date(value: datetime) -> str:
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def _response(
    parent: ET.Element,
    href: str,
    display_name: str,
    modified: datetime,
    is_collection: bool,
    size: Optional[int] = None,
    content_type: Optional[str] = None,
) -> None:
    response = ET.SubElement(parent, _tag("response"))
    ET.SubElement(response, _tag("href")).text = href

    propstat = ET.SubElement(response, _tag("propstat"))
    prop = ET.SubElement(propstat, _tag("prop"))
    ET.SubElement(prop, _tag("displayname")).text = display_name

    resource_type = ET.SubElement(prop, _tag("resourcetype"))
    if is_collection:
        ET.SubElement(resource_type, _tag("collection"))
    else:
        ET.SubElement(prop, _tag("getcontentlength")).text = str(size or 0)
        ET.SubElement(prop, _tag("getcontenttype")).text = content_type or "application/octet-stream"

    ET.SubElement(prop, _tag("getlastmodified")).text = _http_date(modified)
    ET.SubElement(propstat, _tag("status")).text = "HTTP/1.1 200 OK"


def _serialize(root: ET.Element) -> str:
    body = ET.tostring(root, encoding="unicode")
    return f'<?xml version="1.0" encoding="utf-8"?>\n{body}'


def render_directory(
    path: str,
    entries: Iterable[VirtualFileEntry],
    depth: str = "1",
    modified: Optional[datetime] = None,
) -> str:
    """Multistatus for a directory of .strm files. Children are omitted at Depth 0."""
    if not path.endswith("/"):
        path += "/"
    entries = list(entries)

    root = ET.Element(_tag("multistatus"))
    newest = max((e.modified for e in entries), default=None)
    _response(
        root,
        href=path,
        display_name=path.strip("/").rsplit("/", 1)[-1] or "/",
        modified=modified or newest or utc_now(),
        is_collection=True,
    )

    if depth != "0":
        for entry in entries:
            _response(
                root,
                href=path + quote(entry.name),
                display_name=entry.name,
                modified=entry.modified,
                is_collection=False,
                size=entry.size,
                content_type=entry.content_type,
            )

    return _serialize(root)


def render_root(directories: List[str], depth: str = "1") -> str:
    """Multistatus for / listing the virtual directories as collections."""
    now = utc_now()
    root = ET.Element(_tag("multistatus"))
    _response(root, href="/", display_name="/", modified=now, is_collection=True)

    if depth != "0":
        for name in directories:
            _response(root, href=f"/{name}/", display_name=name, modified=now, is_collection=True)

    return _serialize(root)
