"""Translation between local task fields and Jira's wire formats"""

import html
import re
from typing import Any, Dict, List, Optional

PRIORITY_FROM_JIRA = {
    "Highest": "critical",
    "High": "high",
    "Medium": "medium",
    "Low": "low",
    "Lowest": "low",
}

PRIORITY_TO_JIRA = {
    "critical": "Highest",
    "high": "High",
    "medium": "Medium",
    "low": "Low",
}

STATUS_COLORS = {
    "medium-gray": "gray",
    "green": "green",
    "yellow": "yellow",
    "red": "red",
    "blue-gray": "blue",
    "blue": "blue",
    "orange": "orange",
    "purple": "purple",
    "pink": "pink",
}

_HTML_TAG_RE = re.compile(r"<\s*/?\s*[a-zA-Z][a-zA-Z0-9]*(\s[^<>]*)?/?\s*>")
_EXCESS_NEWLINES_RE = re.compile(r"\n\s*\n(\s*\n)+")


def priority_from_jira(name: Optional[str]) -> str:
    if not name:
        return "medium"
    return PRIORITY_FROM_JIRA.get(name, "medium")


def priority_to_jira(priority: Optional[str]) -> str:
    return PRIORITY_TO_JIRA.get((priority or "").lower(), "Medium")


def status_color_from_jira(color_name: Optional[str]) -> str:
    return STATUS_COLORS.get(color_name or "", "gray")


def normalize_text(text: Optional[str]) -> str:
    """Canonical plain text: unix newlines, no trailing spaces, <= 1 blank line in a row."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    text = _EXCESS_NEWLINES_RE.sub("\n\n", text)
    return text.strip()


def looks_like_html(text: Optional[str]) -> bool:
    return bool(text) and _HTML_TAG_RE.search(text) is not None


def html_to_jira_text(content: Optional[str]) -> str:
    """Convert editor HTML to Jira wiki-style text.

    Covers the markup our editor produces: headings, emphasis, code, lists,
    links, blockquotes, preformatted blocks and paragraphs. Anything else is
    stripped.
    """
    if not content:
        return ""

    text = content
    flags = re.IGNORECASE | re.DOTALL

    for level in range(1, 7):
        text = re.sub(rf"<h{level}[^>]*>(.*?)</h{level}>", rf"h{level}. \1\n\n", text, flags=flags)

    text = re.sub(r"<(b|strong)[^>]*>(.*?)</\1>", r"*\2*", text, flags=flags)
    text = re.sub(r"<(i|em)[^>]*>(.*?)</\1>", r"_\2_", text, flags=flags)
    text = re.sub(r"<u[^>]*>(.*?)</u>", r"+\1+", text, flags=flags)
    text = re.sub(r"<(s|strike|del)[^>]*>(.*?)</\1>", r"-\2-", text, flags=flags)
    text = re.sub(r"<pre[^>]*>(.*?)</pre>", r"{code}\n\1\n{code}\n\n", text, flags=flags)
    text = re.sub(r"<(code|tt)[^>]*>(.*?)</\1>", r"{{\2}}", text, flags=flags)
    text = re.sub(r"<a[^>]*href=[\"']([^\"']*)[\"'][^>]*>(.*?)</a>", r"[\2|\1]", text, flags=flags)

    def _list(match, ordered: bool) -> str:
        items = re.findall(r"<li[^>]*>(.*?)</li>", match.group(1), flags=flags)
        marker = "#" if ordered else "*"
        return "".join(f"{marker} {item.strip()}\n" for item in items) + "\n"

    text = re.sub(r"<ul[^>]*>(.*?)</ul>", lambda m: _list(m, False), text, flags=flags)
    text = re.sub(r"<ol[^>]*>(.*?)</ol>", lambda m: _list(m, True), text, flags=flags)

    def _quote(match) -> str:
        lines = [line for line in match.group(1).strip().split("\n")]
        return "\n".join(f"bq. {line}" for line in lines) + "\n\n"

    text = re.sub(r"<blockquote[^>]*>(.*?)</blockquote>", _quote, text, flags=flags)
    text = re.sub(r"<p[^>]*>(.*?)</p>", r"\1\n\n", text, flags=flags)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=flags)

    # Drop whatever markup is left, then decode entities.
    text = re.sub(r"<[^>]*>", "", text)
    text = html.unescape(text).replace("\xa0", " ")
    return normalize_text(text)


def description_for_jira(description: Optional[str]) -> str:
    """Plain text we send to Jira for a local description."""
    if looks_like_html(description):
        return html_to_jira_text(description)
    return normalize_text(description)


def text_to_adf(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Wrap plain text in an Atlassian Document Format doc.

    Blank lines separate paragraphs; single newlines become hard breaks, so
    adf_to_text(text_to_adf(t)) == normalize_text(t).
    """
    text = normalize_text(text)
    if not text:
        return None

    paragraphs = []
    for block in text.split("\n\n"):
        content: List[Dict[str, Any]] = []
        for i, line in enumerate(block.split("\n")):
            if i:
                content.append({"type": "hardBreak"})
            if line:
                content.append({"type": "text", "text": line})
        paragraphs.append({"type": "paragraph", "content": content})
    return {"type": "doc", "version": 1, "content": paragraphs}


def _adf_inline_text(node: Any) -> str:
    if not isinstance(node, dict):
        return ""
    kind = node.get("type")
    if kind == "text":
        return node.get("text", "")
    if kind == "hardBreak":
        return "\n"
    if kind == "mention":
        return (node.get("attrs") or {}).get("text", "")
    if kind in ("emoji", "inlineCard"):
        attrs = node.get("attrs") or {}
        return attrs.get("text") or attrs.get("shortName") or attrs.get("url", "")
    return "".join(_adf_inline_text(child) for child in node.get("content") or [])


def _adf_block_text(node: Any) -> List[str]:
    if not isinstance(node, dict):
        return []
    kind = node.get("type")
    children = node.get("content") or []
    if kind in ("bulletList", "orderedList"):
        marker = "#" if kind == "orderedList" else "*"
        lines = []
        for item in children:
            item_text = "\n".join(b for child in item.get("content") or [] for b in _adf_block_text(child))
            lines.append(f"{marker} {item_text}")
        return ["\n".join(lines)]
    if kind in ("doc", "blockquote", "panel", "expand", "layoutSection", "layoutColumn"):
        return [b for child in children for b in _adf_block_text(child)]
    if kind == "codeBlock":
        return ["{code}\n" + _adf_inline_text(node) + "\n{code}"]
    if kind == "heading":
        level = (node.get("attrs") or {}).get("level", 1)
        return [f"h{level}. {_adf_inline_text(node)}"]
    if kind == "rule":
        return ["----"]
    return [_adf_inline_text(node)]


def adf_to_text(doc: Any) -> str:
    """Extract plain text from an ADF document (or pass plain strings through)."""
    if doc is None:
        return ""
    if isinstance(doc, str):
        return normalize_text(doc)
    if not isinstance(doc, dict):
        return ""
    return normalize_text("\n\n".join(_adf_block_text(doc)))
