"""Structured data extraction from raw listing HTML.

Pulls every machine-readable source a listing page tends to embed, before
any cleaning removes it:
  - JSON-LD blocks and microdata
  - framework hydration payloads (__NEXT_DATA__, __NUXT__, window.* states)
  - Google Tag Manager dataLayer entries
  - OpenGraph / Twitter / extended meta tags and basic page metadata
  - <noscript> content, JSON in HTML comments, data-* attributes

Each source is independent: a malformed or missing one yields an empty value
and never aborts the others. No network I/O.
"""

import json
import logging
import re

from bs4 import BeautifulSoup, Comment

log = logging.getLogger(__name__)

_decoder = json.JSONDecoder()

# window.<name> assignments probed for hydration state -> result key
WINDOW_STATES: dict[str, str] = {
    "__PRELOADED_STATE__": "preloadedState",
    "__REDUX_STATE__": "reduxState",
    "__APOLLO_STATE__": "apolloState",
    "__GATSBY_STATE__": "gatsbyState",
    "__remixContext": "remixContext",
    "__SVELTEKIT_DATA__": "sveltekitData",
    "__NEXT_PROPS__": "nextProps",
    "ngState": "ngState",
    "__APP_DATA__": "appData",
    "__DATA__": "data",
    "__STATE__": "state",
    "__CONTEXT__": "context",
}

_DATA_ATTR_SELECTOR = "[data-price], [data-listing-id], [data-property-id], [data-id]"
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")


def empty_result() -> dict:
    return {
        "jsonLd": [],
        "microdata": [],
        "nextData": None,
        "nuxtData": None,
        "initialState": None,
        "windowStates": {},
        "dataLayer": [],
        "openGraph": {},
        "extendedMeta": {},
        "noscriptContent": [],
        "comments": [],
        "dataAttributes": [],
        "metadata": {
            "title": None,
            "description": None,
            "favicon": None,
            "canonical": None,
            "imageSrc": None,
        },
    }


def _decode_assignment(script: str, name: str):
    """Decode the JSON value assigned to window.<name> in a script, or None."""
    match = re.search(rf"window\.{re.escape(name)}\s*=\s*", script)
    if not match:
        return None
    try:
        value, _end = _decoder.raw_decode(script, match.end())
    except json.JSONDecodeError:
        return None
    return value


def _script_texts(soup: BeautifulSoup) -> list[str]:
    texts = []
    for el in soup.find_all("script"):
        if el.get("type") == "application/ld+json":
            continue
        text = el.string or el.get_text()
        if text and text.strip():
            texts.append(text)
    return texts


# -- Individual sources -------------------------------------------------------

def _json_ld(soup: BeautifulSoup) -> list:
    blocks = []
    for el in soup.find_all("script", attrs={"type": "application/ld+json"}):
        text = (el.string or el.get_text() or "").strip()
        if not text:
            continue
        try:
            blocks.append(json.loads(text))
        except json.JSONDecodeError as e:
            log.debug("Skipping malformed JSON-LD block: %s", e)
    return blocks


def _next_data(soup: BeautifulSoup):
    el = soup.find("script", id="__NEXT_DATA__")
    if el is None:
        return None
    try:
        return json.loads(el.string or el.get_text())
    except json.JSONDecodeError as e:
        log.debug("Malformed __NEXT_DATA__: %s", e)
        return None


def _nuxt_data(soup: BeautifulSoup, scripts: list[str]):
    el = soup.find("script", id="__NUXT__")
    candidates = [el.string or el.get_text()] if el is not None else []
    candidates += [s for s in scripts if "__NUXT__" in s]
    for text in candidates:
        value = _decode_assignment(text or "", "__NUXT__")
        if value is not None:
            return value
    return None


def _first_assignment(scripts: list[str], name: str):
    for text in scripts:
        if name not in text:
            continue
        value = _decode_assignment(text, name)
        if value is not None:
            return value
    return None


def _window_states(scripts: list[str]) -> dict:
    states = {}
    for name, key in WINDOW_STATES.items():
        value = _first_assignment(scripts, name)
        if value is not None:
            states[key] = value
    return states


def _data_layer(scripts: list[str]) -> list:
    entries: list = []
    for text in scripts:
        if "dataLayer" not in text:
            continue
        match = re.search(r"dataLayer\s*=\s*(?=\[)", text)
        if match:
            try:
                value, _ = _decoder.raw_decode(text, match.end())
                entries.extend(value if isinstance(value, list) else [value])
            except json.JSONDecodeError:
                pass
        for push in re.finditer(r"dataLayer\.push\(\s*(?=\{)", text):
            try:
                value, _ = _decoder.raw_decode(text, push.end())
                entries.append(value)
            except json.JSONDecodeError:
                continue
    return entries


def _meta_tags(soup: BeautifulSoup) -> tuple[dict, dict]:
    open_graph: dict[str, str] = {}
    extended: dict[str, str] = {}
    for meta in soup.find_all("meta"):
        content = meta.get("content")
        if not content:
            continue
        prop = meta.get("property") or ""
        name = meta.get("name") or ""
        if prop.startswith("og:"):
            open_graph[prop] = content
        elif name.startswith("twitter:"):
            open_graph[name] = content
        elif (name in ("geo.position", "geo.placename", "ICBM", "price")
              or name.startswith(("DC.", "parsely-", "sailthru."))):
            extended[name] = content
    return open_graph, extended


def _metadata(soup: BeautifulSoup) -> dict:
    def attr(selector: str, name: str):
        el = soup.select_one(selector)
        return (el.get(name) or None) if el is not None else None

    title = soup.find("title")
    return {
        "title": (title.get_text().strip() or None) if title else None,
        "description": attr('meta[name="description"]', "content")
        or attr('meta[property="og:description"]', "content"),
        "favicon": attr('link[rel="icon"]', "href") or attr('link[rel="shortcut icon"]', "href"),
        "canonical": attr('link[rel="canonical"]', "href"),
        "imageSrc": attr('link[rel="image_src"]', "href"),
    }


def _comments(soup: BeautifulSoup) -> list:
    found = []
    for comment in soup.find_all(string=lambda t: isinstance(t, Comment)):
        text = comment.strip()
        if not text.startswith("{"):
            continue
        try:
            found.append(json.loads(text))
        except json.JSONDecodeError:
            continue
    return found


def _microdata(soup: BeautifulSoup) -> list:
    items = []
    for scope in soup.find_all(attrs={"itemscope": True}):
        item: dict = {"@type": scope.get("itemtype") or "Thing", "@context": "http://schema.org"}
        for prop in scope.find_all(attrs={"itemprop": True}):
            name = prop.get("itemprop")
            if prop.has_attr("itemscope"):
                nested: dict = {"@type": prop.get("itemtype") or "Thing"}
                for inner in prop.find_all(attrs={"itemprop": True}):
                    nested[inner.get("itemprop")] = inner.get_text().strip()
                item[name] = nested
            else:
                item[name] = prop.get("content") or prop.get_text().strip()
        if len(item) > 2:
            items.append(item)
    return items


def _data_attributes(soup: BeautifulSoup) -> list:
    found = []
    for el in soup.select(_DATA_ATTR_SELECTOR):
        attrs = {}
        for key, value in el.attrs.items():
            if not key.startswith("data-"):
                continue
            if isinstance(value, list):
                value = " ".join(value)
            clean_key = key[len("data-"):]
            if _NUMBER_RE.match(value.strip()):
                number = float(value)
                attrs[clean_key] = int(number) if number.is_integer() and "." not in value else number
            else:
                attrs[clean_key] = value
        if attrs:
            found.append(attrs)
    return found


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def extract_structured_data(html: str) -> dict:
    """Aggregate every embedded structured-data source in a page.

    Returns:
        Dict with keys jsonLd, microdata, nextData, nuxtData, initialState,
        windowStates, dataLayer, openGraph, extendedMeta, noscriptContent,
        comments, dataAttributes, metadata. Missing sources are empty.
    """
    result = empty_result()
    if not html or not html.strip():
        return result

    try:
        soup = BeautifulSoup(html, "html.parser")
    except Exception as e:
        log.warning("Could not parse HTML for structured data: %s", e)
        return result

    scripts = _script_texts(soup)

    steps = {
        "jsonLd": lambda: _json_ld(soup),
        "nextData": lambda: _next_data(soup),
        "nuxtData": lambda: _nuxt_data(soup, scripts),
        "initialState": lambda: _first_assignment(scripts, "INITIAL_STATE"),
        "windowStates": lambda: _window_states(scripts),
        "dataLayer": lambda: _data_layer(scripts),
        "noscriptContent": lambda: [
            el.decode_contents().strip() for el in soup.find_all("noscript")
            if el.decode_contents().strip()
        ],
        "comments": lambda: _comments(soup),
        "microdata": lambda: _microdata(soup),
        "dataAttributes": lambda: _data_attributes(soup),
        "metadata": lambda: _metadata(soup),
    }
    for key, step in steps.items():
        try:
            result[key] = step()
        except Exception as e:
            log.warning("Structured data source %s failed: %s", key, e)

    try:
        result["openGraph"], result["extendedMeta"] = _meta_tags(soup)
    except Exception as e:
        log.warning("Structured data source meta failed: %s", e)

    log.info(
        "Structured data: %d JSON-LD, %d microdata, next=%s, nuxt=%s, %d window states, "
        "%d dataLayer, %d og tags",
        len(result["jsonLd"]), len(result["microdata"]), result["nextData"] is not None,
        result["nuxtData"] is not None, len(result["windowStates"]), len(result["dataLayer"]),
        len(result["openGraph"]),
    )
    return result
