from ottie.scraper.sites import (
    clean_scraped_json,
    find_adapter,
    find_adapter_by_id,
    remove_empty_values,
    simplify_static_map,
)
from ottie.worker import extract_html

REALTOR_PAGE = (
    "<html><body>"
    "<header>Site navigation</header>"
    "<main>"
    "<h1>12 Oak Lane</h1>"
    '<div data-testid="ldp-sidebar">Mortgage calculator ad</div>'
    "<script>var tracking = true;</script>"
    "<p>Bright three bedroom home with a heated pool.</p>"
    "</main>"
    "</body></html>"
)


# -- Adapter lookup ------------------------------------------------------------

def test_find_adapter_ignores_www_and_case():
    assert find_adapter("https://www.realtor.com/realestateandhomes-detail/x").id == "realtor"
    assert find_adapter("https://WWW.Realtor.COM/x").id == "realtor"
    assert find_adapter("https://zillow.com/homedetails/1").id == "zillow"
    assert find_adapter("https://www.redfin.com/TX/Austin/home/1").id == "redfin"
    assert find_adapter("https://www.homes.com/property/1").id == "homes"


def test_find_adapter_unknown_host():
    assert find_adapter("https://example.com/listing/1") is None
    assert find_adapter("not a url") is None


def test_find_adapter_by_id():
    assert find_adapter_by_id("zillow").json_scraper["actor_id"] == "maxcopell~zillow-detail-scraper"
    assert find_adapter_by_id("nope") is None


def test_unknown_site_passes_html_through():
    raw = "<html><body><main><p>Untouched listing text here.</p></main></body></html>"
    cleaned, structured, readable = extract_html(raw, None)
    assert cleaned == raw
    assert "metadata" in structured
    assert "markdown" in readable


# -- HTML cleaning -------------------------------------------------------------

def test_realtor_clean_keeps_main_and_strips_noise():
    cleaned = find_adapter("https://www.realtor.com/x").clean(REALTOR_PAGE)
    assert "12 Oak Lane" in cleaned
    assert "heated pool" in cleaned
    assert "Mortgage calculator" not in cleaned
    assert "Site navigation" not in cleaned
    assert "tracking" not in cleaned


def test_clean_without_main_returns_input():
    adapter = find_adapter("https://www.realtor.com/x")
    raw = "<div><p>No main element on this page.</p></div>"
    assert adapter.clean(raw) == raw
    assert adapter.clean("") == ""


def test_adapter_without_html_rules_returns_input():
    adapter = find_adapter("https://www.redfin.com/x")
    assert adapter.clean(REALTOR_PAGE) == REALTOR_PAGE


def test_main_content_defaults_to_main_element():
    adapter = find_adapter("https://www.redfin.com/x")
    main = adapter.main_content(REALTOR_PAGE)
    assert main.startswith("<main>")
    assert "Site navigation" not in main


# -- Gallery -------------------------------------------------------------------

def test_realtor_gallery_reads_first_image_per_container():
    html = (
        '<div data-testid="gallery-photo-container"><img src="/photos/1.jpg"><img src="/photos/skip.jpg"></div>'
        '<div data-testid="gallery-photo-container"><img data-src="https://cdn.example.com/2.webp"></div>'
        '<div data-testid="gallery-photo-container"><img src="/photos/1.jpg"></div>'
        '<div data-testid="gallery-photo-container"><img src="/icons/logo.svg"></div>'
        '<img src="/photos/outside.jpg">'
    )
    adapter = find_adapter("https://www.realtor.com/x")
    assert adapter.extract_gallery(html, base_url="https://www.realtor.com/realestateandhomes-detail/x") == [
        "https://www.realtor.com/photos/1.jpg",
        "https://cdn.example.com/2.webp",
    ]


def test_redfin_gallery_skips_small_images():
    html = (
        '<div class="gallery-container">'
        '<img src="thumb.jpg" width="40" height="40">'
        '<img src="large.jpg" width="800" height="600">'
        '<img src="undeclared.png">'
        '<img src="data:image/gif;base64,R0lGOD">'
        "</div>"
    )
    adapter = find_adapter("https://www.redfin.com/x")
    assert adapter.extract_gallery(html, base_url="https://www.redfin.com/TX/home/1") == [
        "https://www.redfin.com/TX/home/large.jpg",
        "https://www.redfin.com/TX/home/undeclared.png",
    ]


def test_gallery_of_empty_html():
    assert find_adapter("https://www.homes.com/x").extract_gallery("") == []


# -- JSON cleaning -------------------------------------------------------------

def test_zillow_json_cleaning():
    item = {
        "zpid": 1,
        "price": 450000,
        "staticMap": {"sources": [{"url": "https://maps.example.com/?center=30.1%2C-97.7&zoom=15"}]},
        "mixedSources": {"jpeg": [{"url": "a.jpg", "width": 384}, {"url": "b.jpg", "width": 1536}]},
        "resoFacts": {"gas": "yes", "bedrooms": 3, "rooms": [{"roomType": "Kitchen", "area": "10x12"}]},
        "description": "",
    }
    assert clean_scraped_json([item], "zillow") == [{
        "price": 450000,
        "staticMap": {"latitude": 30.1, "longitude": -97.7},
        "mixedSources": {"jpeg": [{"url": "b.jpg", "width": 1536}]},
        "resoFacts": {"bedrooms": 3, "rooms": [{"roomType": "Kitchen"}]},
    }]
    # Input untouched
    assert item["zpid"] == 1


def test_generic_json_cleaning_keeps_nested_urls():
    data = [{
        "url": "https://example.com/listing/1",
        "requestId": "r1",
        "photos": [{"url": "https://img.example.com/1.jpg"}],
        "agent": None,
    }]
    assert clean_scraped_json(data, "unknown-scraper") == [
        {"photos": [{"url": "https://img.example.com/1.jpg"}]},
    ]


def test_static_map_without_center():
    assert simplify_static_map({"sources": [{"url": "https://maps.example.com/"}]}) == {
        "latitude": None, "longitude": None,
    }


def test_remove_empty_values_drops_emptied_containers():
    assert remove_empty_values({"a": {"b": None, "c": []}, "d": 0, "e": False, "f": ["", {}]}) == {
        "d": 0, "e": False,
    }
