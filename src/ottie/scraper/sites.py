"""Site adapters: per-host HTML cleaning, gallery extraction and JSON cleaning.

Adapters are loaded from config/sites.yaml and resolved once per job by
hostname. A URL with no adapter is passed through unmodified; callers treat
``None`` from find_adapter() as "no special handling", never as an error.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from ottie import config

log = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif", ".avif")

# Attributes that may carry an image URL, in preference order
_IMG_SRC_ATTRS = ("src", "data-src", "data-lazy", "data-original")

# Technical fields every structured-JSON scraper returns
_GENERIC_JSON_STRIP = frozenset({"url", "loadedUrl", "requestId", "requestQueueId"})


def normalize_host(hostname: str | None) -> str:
    host = (hostname or "").strip().lower().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    return host


def hostname_of(url: str) -> str:
    try:
        return normalize_host(urlparse(url).hostname)
    except ValueError:
        return ""


# -- Empty-value pruning ------------------------------------------------------

def _is_empty(value) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


def remove_empty_values(obj):
    """Drop None, "", [] and {} recursively. Empty containers left behind are dropped too."""
    if isinstance(obj, dict):
        cleaned = {}
        for key, value in obj.items():
            value = remove_empty_values(value)
            if not _is_empty(value):
                cleaned[key] = value
        return cleaned
    if isinstance(obj, list):
        items = [remove_empty_values(v) for v in obj]
        return [v for v in items if not _is_empty(v)]
    return obj


# -- Image URL helpers --------------------------------------------------------

def _has_image_extension(url: str) -> bool:
    path = urlparse(url).path.lower()
    return path.endswith(IMAGE_EXTENSIONS)


def _img_src(img) -> str | None:
    for attr in _IMG_SRC_ATTRS:
        value = img.get(attr)
        if value and value.strip():
            return value.strip()
    return None


def _dimension(img, attr: str) -> int | None:
    """Declared pixel size, or None when the attribute is absent or not a number."""
    value = str(img.get(attr) or "").strip().removesuffix("px")
    try:
        return int(value) if value else None
    except ValueError:
        return None


def _too_small(img, min_size: int) -> bool:
    for attr in ("width", "height"):
        size = _dimension(img, attr)
        if size is not None and size <= min_size:
            return True
    return False


def collect_image_urls(imgs, base_url: str | None = None, min_size: int = 0) -> list[str]:
    """Absolute, de-duplicated (first occurrence wins) image URLs with a known extension."""
    seen: set[str] = set()
    urls: list[str] = []
    for img in imgs:
        src = _img_src(img)
        if not src or src.startswith("data:"):
            continue
        if min_size and _too_small(img, min_size):
            continue
        if base_url:
            src = urljoin(base_url, src)
        if not _has_image_extension(src):
            continue
        if src not in seen:
            seen.add(src)
            urls.append(src)
    return urls


# -- JSON cleaning ------------------------------------------------------------

_CENTER_RE = re.compile(r"center=([^&]+)")


def simplify_static_map(static_map) -> dict:
    """Reduce a staticMap block to {latitude, longitude} read from its first source URL."""
    latitude = longitude = None
    sources = static_map.get("sources") if isinstance(static_map, dict) else None
    if isinstance(sources, list) and sources:
        first = sources[0].get("url") if isinstance(sources[0], dict) else None
        match = _CENTER_RE.search(first or "")
        if match:
            coords = match.group(1).replace("%2C", ",").split(",")
            if len(coords) >= 2:
                try:
                    latitude, longitude = float(coords[0]), float(coords[1])
                except ValueError:
                    latitude = longitude = None
    return {"latitude": latitude, "longitude": longitude}


def keep_largest_sources(mixed_sources: dict) -> dict:
    """Keep only the widest image per webp/jpeg/jpg format; other formats untouched."""
    processed = {}
    for fmt, images in mixed_sources.items():
        if fmt in ("webp", "jpeg", "jpg") and isinstance(images, list) and images:
            largest = max(images, key=lambda img: (img or {}).get("width") or 0)
            processed[fmt] = [largest]
        else:
            processed[fmt] = images
    return processed


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

@dataclass
class SiteAdapter:
    """Everything the pipeline does differently for one listing site."""
    id: str
    hosts: list[str]
    main_selector: str | None = None
    remove: list[str] = field(default_factory=list)
    actions: list[dict] = field(default_factory=list)
    gallery_click: str | None = None
    gallery_containers: str | None = None
    gallery_images: str | None = None
    gallery_min_size: int = 0
    json_scraper: dict | None = None
    json_strip: frozenset = frozenset()
    json_strip_nested: dict = field(default_factory=dict)
    json_strip_rooms: frozenset = frozenset()

    @classmethod
    def from_dict(cls, entry: dict) -> "SiteAdapter":
        gallery = entry.get("gallery") or {}
        scraper = entry.get("json_scraper")
        if scraper:
            scraper = {"id": entry["id"], **scraper}
        return cls(
            id=entry["id"],
            hosts=[normalize_host(h) for h in entry.get("hosts", [])],
            main_selector=entry.get("main_selector"),
            remove=list(entry.get("remove") or []),
            actions=list(entry.get("actions") or []),
            gallery_click=gallery.get("click"),
            gallery_containers=gallery.get("containers"),
            gallery_images=gallery.get("images"),
            gallery_min_size=int(gallery.get("min_size") or 0),
            json_scraper=scraper,
            json_strip=frozenset(entry.get("json_strip") or ()),
            json_strip_nested={k: frozenset(v) for k, v in (entry.get("json_strip_nested") or {}).items()},
            json_strip_rooms=frozenset(entry.get("json_strip_rooms") or ()),
        )

    def matches(self, hostname: str) -> bool:
        return normalize_host(hostname) in self.hosts

    @property
    def has_html_processor(self) -> bool:
        return bool(self.main_selector or self.remove)

    # -- HTML ---------------------------------------------------------------

    def _isolate(self, html: str, selector: str | None) -> str | None:
        soup = BeautifulSoup(html, "html.parser")
        if selector:
            node = soup.select_one(selector)
            if node is None:
                return None
            soup = BeautifulSoup(str(node), "html.parser")
        for sel in self.remove:
            for el in soup.select(sel):
                el.decompose()
        return str(soup)

    def clean(self, html: str) -> str:
        """Isolate the main content subtree and strip known noise.

        Returns the input unchanged when it is empty, when the adapter has no
        HTML rules, or when the main element is missing.
        """
        if not html or not html.strip() or not self.has_html_processor:
            return html
        try:
            cleaned = self._isolate(html, self.main_selector)
        except Exception as e:
            log.warning("[%s] HTML cleaning failed, keeping raw HTML: %s", self.id, e)
            return html
        if cleaned is None:
            log.warning("[%s] No %s element found, keeping raw HTML", self.id, self.main_selector)
            return html
        log.debug("[%s] Cleaned HTML %d -> %d chars", self.id, len(html), len(cleaned))
        return cleaned

    def main_content(self, html: str) -> str | None:
        """HTML of the main content element (adapter selector, else <main>), noise removed."""
        try:
            return self._isolate(html, self.main_selector or "main")
        except Exception as e:
            log.warning("[%s] Main content lookup failed: %s", self.id, e)
            return None

    def extract_gallery(self, html: str, base_url: str | None = None) -> list[str]:
        """Ordered, de-duplicated image URLs from the post-click gallery HTML."""
        if not html or not html.strip():
            return []
        try:
            soup = BeautifulSoup(html, "html.parser")
            if self.gallery_containers:
                imgs = []
                for container in soup.select(self.gallery_containers):
                    img = container.find("img")
                    if img is not None:
                        imgs.append(img)
            elif self.gallery_images:
                imgs = soup.select(self.gallery_images)
            else:
                imgs = soup.find_all("img")
            return collect_image_urls(imgs, base_url, self.gallery_min_size)
        except Exception as e:
            log.warning("[%s] Gallery extraction failed: %s", self.id, e)
            return []

    # -- JSON ---------------------------------------------------------------

    def _clean_item(self, item):
        if isinstance(item, list):
            return [self._clean_item(v) for v in item]
        if not isinstance(item, dict):
            return item

        cleaned = {k: v for k, v in item.items() if k not in self.json_strip}

        for key, fields in self.json_strip_nested.items():
            nested = cleaned.get(key)
            if isinstance(nested, dict):
                cleaned[key] = {k: v for k, v in nested.items() if k not in fields}

        facts = cleaned.get("resoFacts")
        if self.json_strip_rooms and isinstance(facts, dict) and isinstance(facts.get("rooms"), list):
            facts["rooms"] = [
                {k: v for k, v in room.items() if k not in self.json_strip_rooms}
                if isinstance(room, dict) else room
                for room in facts["rooms"]
            ]

        if cleaned.get("staticMap"):
            cleaned["staticMap"] = simplify_static_map(cleaned["staticMap"])
        if isinstance(cleaned.get("mixedSources"), dict):
            cleaned["mixedSources"] = keep_largest_sources(cleaned["mixedSources"])

        for key, value in cleaned.items():
            if key in ("staticMap", "mixedSources"):
                continue
            if isinstance(value, (dict, list)):
                cleaned[key] = self._clean_item(value)
        return cleaned

    def clean_json(self, data):
        """Strip internal fields, simplify nested blocks, prune empty values."""
        data = copy.deepcopy(data)
        if isinstance(data, dict) and isinstance(data.get("apifyData"), list):
            data["apifyData"] = self._clean_item(data["apifyData"])
            return remove_empty_values(data)
        return remove_empty_values(self._clean_item(data))


def clean_json_generic(data):
    """Cleaner for structured-JSON results from a scraper with no site rules.

    Only item-level request bookkeeping is dropped; nested "url" keys are
    usually photo links and stay.
    """
    def strip(item):
        if isinstance(item, dict):
            return {k: v for k, v in item.items() if k not in _GENERIC_JSON_STRIP}
        return item

    if isinstance(data, list):
        data = [strip(item) for item in data]
    else:
        data = strip(data)
    return remove_empty_values(data)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_registry: list[SiteAdapter] | None = None


def load_adapters(sites_cfg: dict | None = None) -> list[SiteAdapter]:
    """Build adapters from sites.yaml (or the given mapping)."""
    if sites_cfg is None:
        sites_cfg = config.load_sites_config()
    return [SiteAdapter.from_dict(entry) for entry in sites_cfg.get("sites", [])]


def get_adapters() -> list[SiteAdapter]:
    global _registry
    if _registry is None:
        _registry = load_adapters()
        log.debug("Loaded %d site adapters", len(_registry))
    return _registry


def find_adapter(url: str) -> SiteAdapter | None:
    """Adapter registered for the URL's host, or None."""
    host = hostname_of(url)
    if not host:
        return None
    for adapter in get_adapters():
        if adapter.matches(host):
            return adapter
    return None


def find_adapter_by_id(adapter_id: str | None) -> SiteAdapter | None:
    for adapter in get_adapters():
        if adapter.id == adapter_id:
            return adapter
    return None


def clean_scraped_json(data, scraper_id: str | None):
    """Run the site's JSON cleaner for a scraper id, else the generic one."""
    adapter = find_adapter_by_id(scraper_id)
    try:
        if adapter is not None and adapter.json_scraper:
            return adapter.clean_json(data)
        return clean_json_generic(data)
    except Exception as e:
        log.warning("JSON cleaning failed for %s, keeping raw data: %s", scraper_id, e)
        return data
