"""
Rich Text Content Translator
Converts between ClickUp delta documents ({"ops": [...]}) and HubSpot HTML,
and pulls shared meeting-clip links out of either representation.

Every function here is total: bad input degrades to plain text, never raises.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

logger = logging.getLogger(__name__)

MEDIA_SHARE_HOST = "fathom.video"
MEDIA_SHARE_PATTERN = re.compile(r"https://fathom\.video/share/[^\s\"<>]+")
CLIP_LABEL = "WATCH FATHOM CLIP"

_TAG_PATTERN = re.compile(r"<[a-zA-Z][^>]*>")


def is_delta(value: Any) -> bool:
    """True for objects shaped like a delta document"""
    return isinstance(value, dict) and isinstance(value.get("ops"), list)


def _as_delta(value: Any) -> Optional[Dict[str, Any]]:
    """Return value as a delta if it is one, or a JSON string holding one"""
    if is_delta(value):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text.startswith("{"):
            return None
        try:
            parsed = json.loads(text)
        except ValueError:
            return None
        if is_delta(parsed):
            return parsed
    return None


def _looks_like_html(text: str) -> bool:
    return bool(_TAG_PATTERN.search(text))


def _is_media_link(href: Any) -> bool:
    return isinstance(href, str) and MEDIA_SHARE_PATTERN.match(href.strip()) is not None


def _op_link(op: Any) -> Optional[str]:
    if not isinstance(op, dict):
        return None
    attributes = op.get("attributes")
    if not isinstance(attributes, dict):
        return None
    link = attributes.get("link")
    return link if isinstance(link, str) else None


def delta_from_html(html: Any) -> Dict[str, List[Dict[str, Any]]]:
    """
    Parse an HTML fragment into a delta.

    Text nodes become plain inserts, anchors become inserts carrying a
    ``link`` attribute. The result always ends with a newline op.
    """
    ops: List[Dict[str, Any]] = []
    if not isinstance(html, str):
        html = "" if html is None else str(html)

    soup = BeautifulSoup(html, "html.parser")

    def walk(node) -> None:
        if isinstance(node, Comment):
            return
        if isinstance(node, NavigableString):
            text = str(node)
            if text:
                ops.append({"insert": text})
        elif isinstance(node, Tag):
            if node.name == "a":
                op: Dict[str, Any] = {"insert": node.get_text()}
                href = node.get("href")
                if href:
                    op["attributes"] = {"link": href}
                ops.append(op)
            elif node.name == "br":
                ops.append({"insert": "\n"})
            else:
                for child in node.children:
                    walk(child)

    for child in soup.contents:
        walk(child)

    ops.append({"insert": "\n"})
    return {"ops": ops}


def html_from_delta(delta: Any) -> Optional[str]:
    """
    Render the clip call-to-action anchor for a delta carrying a media-share link.

    Returns None when the delta has no such link; callers fall back to the
    delta's plain text.
    """
    doc = _as_delta(delta)
    if doc is None:
        return None

    for op in doc["ops"]:
        link = _op_link(op)
        if _is_media_link(link):
            return f'<a href="{link}" target="_blank" style="font-size: 18.5px;">{CLIP_LABEL}</a>'
    return None


def extract_media_link(rich_text: Any) -> Optional[str]:
    """Find the media-share URL in a delta, JSON delta, HTML or plain string"""
    doc = _as_delta(rich_text)
    if doc is not None:
        for op in doc["ops"]:
            link = _op_link(op)
            if _is_media_link(link):
                return link.strip()
            # A pasted URL without link formatting still counts
            insert = op.get("insert") if isinstance(op, dict) else None
            if isinstance(insert, str):
                match = MEDIA_SHARE_PATTERN.search(insert)
                if match:
                    return match.group(0)
        return None

    if not isinstance(rich_text, str) or not rich_text:
        return None

    if _looks_like_html(rich_text):
        soup = BeautifulSoup(rich_text, "html.parser")
        anchor = soup.find("a", href=MEDIA_SHARE_PATTERN)
        if anchor is not None:
            return anchor["href"].strip()

    match = MEDIA_SHARE_PATTERN.search(rich_text)
    return match.group(0) if match else None


def to_plain_text(rich_text: Any) -> str:
    """Flatten any supported rich text representation to trimmed plain text"""
    if rich_text is None:
        return ""

    doc = _as_delta(rich_text)
    if doc is not None:
        return "".join(
            op["insert"] for op in doc["ops"]
            if isinstance(op, dict) and isinstance(op.get("insert"), str)
        ).strip()

    if isinstance(rich_text, dict):
        # ClickUp sometimes wraps values as {"value": ...}
        if "value" in rich_text:
            return to_plain_text(rich_text.get("value"))
        return ""

    text = rich_text if isinstance(rich_text, str) else str(rich_text)
    if _looks_like_html(text):
        return BeautifulSoup(text, "html.parser").get_text().strip()
    return text.strip()


def clip_text(url: str) -> str:
    return f"{CLIP_LABEL}: {url}"


def build_clip_delta(url: str) -> Dict[str, List[Dict[str, Any]]]:
    """Single-line delta used as a ClickUp description for clip-only bodies"""
    return {"ops": [{"insert": f"{clip_text(url)}\n"}]}
