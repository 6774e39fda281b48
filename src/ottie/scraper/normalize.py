"""Turn scraped HTML or JSON into LLM-ready text.

Three renderings, all deterministic for a given input:
  extract_structured_text  DOM walk keeping heading and list hierarchy
  html_to_markdown         readability main-content pass + markdownify
  format_json_to_text      human-readable dump of structured-JSON scraper items
"""

import logging
import re

import markdownify
from bs4 import BeautifulSoup, Tag
from readability import Document

from ottie import config

log = logging.getLogger(__name__)

_CONTAINERS = {"div", "section", "article", "main"}
_SKIP = {"script", "style"}
_HEADING_RE = re.compile(r"^h([1-6])$")


# ── Structured text ─────────────────────────────────────────────────────

def extract_structured_text(html: str) -> str:
    """Walk the DOM and emit headings, paragraphs and list items as plain text.

    Headings become "#" x level lines framed by blank lines, paragraphs are
    kept when longer than a minimum length, list items get "• " or "N. "
    prefixes. Containers are recursed into; other leaf text is kept unless the
    previous line already contains it. Script and style are skipped.
    """
    if not html or not html.strip():
        return ""

    min_paragraph = config.DEFAULTS["min_paragraph_chars"]
    min_leaf = config.DEFAULTS["min_leaf_chars"]
    soup = BeautifulSoup(html, "html.parser")
    lines: list[str] = []

    def child_tags(el: Tag) -> list[Tag]:
        return [c for c in el.children if isinstance(c, Tag)]

    def visit(el: Tag) -> None:
        tag = (el.name or "").lower()
        if tag in _SKIP:
            return

        heading = _HEADING_RE.match(tag)
        if heading:
            text = el.get_text().strip()
            if text:
                lines.extend(["", "#" * int(heading.group(1)) + " " + text, ""])
            return

        if tag == "p":
            text = el.get_text().strip()
            if len(text) > min_paragraph:
                lines.extend([text, ""])
            return

        if tag in ("ul", "ol"):
            items = [c for c in child_tags(el) if c.name == "li"]
            for i, li in enumerate(items, 1):
                text = li.get_text().strip()
                if text:
                    lines.append(("• " if tag == "ul" else f"{i}. ") + text)
            lines.append("")
            return

        children = child_tags(el)
        if tag in _CONTAINERS or children:
            for child in children:
                visit(child)
            return

        text = el.get_text().strip()
        if len(text) > min_leaf and not (lines and text in lines[-1]):
            lines.append(text)

    for node in soup.children:
        if isinstance(node, Tag):
            visit(node)

    text = "\n".join(lines)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    return text.strip()


# ── Markdown (readability) ──────────────────────────────────────────────

def _meta(soup: BeautifulSoup, *selectors: str) -> str | None:
    for selector in selectors:
        el = soup.select_one(selector)
        if el is not None and el.get("content"):
            return el["content"].strip()
    return None


def html_to_markdown(html: str) -> dict:
    """Main-content markdown plus article metadata.

    Returns:
        {markdown, title, excerpt, byline, length, siteName}. If conversion
        fails the raw HTML is returned as the markdown.
    """
    try:
        doc = Document(html)
        content_html = doc.summary(html_partial=True)
        title = doc.short_title() or doc.title() or None

        page = BeautifulSoup(html, "html.parser")
        content = BeautifulSoup(content_html, "html.parser")
        text = content.get_text(" ", strip=True)

        first_p = content.find("p")
        excerpt = _meta(page, 'meta[name="description"]', 'meta[property="og:description"]')
        if not excerpt and first_p is not None:
            excerpt = first_p.get_text().strip() or None

        markdown = markdownify.markdownify(
            content_html,
            heading_style="ATX",
            bullets="-",
            strip=["script", "style"],
        )
        markdown = re.sub(r"\n{3,}", "\n\n", markdown).strip()

        return {
            "markdown": markdown,
            "title": title,
            "excerpt": excerpt,
            "byline": _meta(page, 'meta[name="author"]', 'meta[property="article:author"]'),
            "length": len(text),
            "siteName": _meta(page, 'meta[property="og:site_name"]'),
        }
    except Exception as e:
        log.warning("Markdown conversion failed, using raw HTML: %s", e)
        return {
            "markdown": html,
            "title": None,
            "excerpt": None,
            "byline": None,
            "length": 0,
            "siteName": None,
        }


# ── Structured JSON -> text ─────────────────────────────────────────────

# Item-level bookkeeping fields never shown to the model
TECHNICAL_KEYS = frozenset({"__typename", "url", "loadedUrl", "requestId", "requestQueueId"})

_MONEY_HINTS = ("price", "fee", "tax")


def format_field_name(key: str) -> str:
    """camelCase / snake_case key -> Title Case words."""
    spaced = re.sub(r"([A-Z])", r" \1", key).replace("_", " ")
    return " ".join(w[:1].upper() + w[1:] for w in spaced.split(" ") if w).strip()


def _is_empty(value) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


def _format_number(value) -> str:
    if isinstance(value, float) and not value.is_integer():
        return f"{value:,.3f}".rstrip("0").rstrip(".")
    return f"{int(value):,}"


def format_value(value, key: str) -> str | None:
    if _is_empty(value):
        return None
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (int, float)):
        if any(hint in key.lower() for hint in _MONEY_HINTS):
            return "$" + _format_number(value)
        return _format_number(value)
    if isinstance(value, str):
        return value
    return None


def _format_array(values: list, key: str, indent: str, depth: int) -> list[str]:
    out = []
    for idx, item in enumerate(values, 1):
        if isinstance(item, (dict, list)):
            out.append(f"{indent}  {idx}.")
            out.extend(_format_object(item, depth + 2))
        else:
            formatted = format_value(item, key)
            if formatted:
                out.append(f"{indent}  - {formatted}")
    return out


def _format_object(obj, depth: int) -> list[str]:
    if _is_empty(obj):
        return []
    if isinstance(obj, list):
        return _format_array(obj, "", "  " * (depth - 1), depth - 1)
    indent = "  " * depth
    out: list[str] = []
    for key, value in obj.items():
        if _is_empty(value):
            continue
        name = format_field_name(key)
        if isinstance(value, dict):
            out.append(f"{indent}{name}:")
            out.extend(_format_object(value, depth + 1))
        elif isinstance(value, list):
            out.append(f"{indent}{name}: ({len(value)} items)")
            out.extend(_format_array(value, key, indent, depth))
        else:
            formatted = format_value(value, key)
            if formatted:
                out.append(f"{indent}{name}: {formatted}")
    return out


def _format_item(item, lines: list[str]) -> None:
    if not isinstance(item, dict):
        return
    for key, value in item.items():
        if _is_empty(value) or key in TECHNICAL_KEYS:
            continue
        name = format_field_name(key)
        if isinstance(value, dict):
            lines.extend(["", f"{name}:"])
            lines.extend(_format_object(value, 1))
        elif isinstance(value, list):
            lines.extend(["", f"{name}: ({len(value)} items)"])
            lines.extend(_format_array(value, key, "", 0))
        else:
            formatted = format_value(value, key)
            if formatted:
                lines.append(f"{name}: {formatted}")


def format_json_to_text(data) -> str:
    """Render cleaned scraper JSON (one item or a list of items) as readable text."""
    if _is_empty(data):
        return ""
    items = data if isinstance(data, list) else [data]
    lines: list[str] = []
    for index, item in enumerate(items):
        if index > 0:
            lines.extend(["", f"--- Property {index + 1} ---", ""])
        _format_item(item, lines)
    return "\n".join(lines)
