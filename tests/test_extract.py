from ottie.scraper.extract import extract_structured_data

PAGE = """<html>
<head>
  <title> 12 Oak Lane | Example Realty </title>
  <meta name="description" content="Three bedroom home in Austin">
  <meta property="og:title" content="12 Oak Lane">
  <meta property="og:image" content="https://img.example.com/og.jpg">
  <meta name="twitter:card" content="summary_large_image">
  <meta name="geo.position" content="30.1;-97.7">
  <link rel="canonical" href="https://example.com/listing/123">
  <link rel="icon" href="/favicon.ico">
  <script type="application/ld+json">{"@type": "SingleFamilyResidence", "name": "12 Oak Lane"}</script>
  <script type="application/ld+json">{not valid json</script>
  <script id="__NEXT_DATA__" type="application/json">{"props": {"pageProps": {"price": 450000}}}</script>
  <script>window.__PRELOADED_STATE__ = {"listing": {"beds": 3}}; var other = 1;</script>
  <script>window.dataLayer = window.dataLayer || []; dataLayer.push({"event": "view", "price": 450000});</script>
</head>
<body>
  <!-- {"listingId": "abc-123"} -->
  <!-- just a comment -->
  <noscript><img src="https://img.example.com/pixel.gif"></noscript>
  <div data-price="450000" data-id="abc">Price</div>
  <div itemscope itemtype="http://schema.org/Offer">
    <span itemprop="price" content="450000">$450,000</span>
    <span itemprop="priceCurrency">USD</span>
  </div>
</body>
</html>"""


def test_json_ld_skips_malformed_blocks():
    data = extract_structured_data(PAGE)
    assert data["jsonLd"] == [{"@type": "SingleFamilyResidence", "name": "12 Oak Lane"}]


def test_next_data():
    data = extract_structured_data(PAGE)
    assert data["nextData"] == {"props": {"pageProps": {"price": 450000}}}


def test_window_state_assignment():
    data = extract_structured_data(PAGE)
    assert data["windowStates"] == {"preloadedState": {"listing": {"beds": 3}}}


def test_data_layer_push():
    data = extract_structured_data(PAGE)
    assert {"event": "view", "price": 450000} in data["dataLayer"]


def test_meta_tags():
    data = extract_structured_data(PAGE)
    assert data["openGraph"] == {
        "og:title": "12 Oak Lane",
        "og:image": "https://img.example.com/og.jpg",
        "twitter:card": "summary_large_image",
    }
    assert data["extendedMeta"] == {"geo.position": "30.1;-97.7"}


def test_page_metadata():
    meta = extract_structured_data(PAGE)["metadata"]
    assert meta["title"] == "12 Oak Lane | Example Realty"
    assert meta["description"] == "Three bedroom home in Austin"
    assert meta["canonical"] == "https://example.com/listing/123"
    assert meta["favicon"] == "/favicon.ico"
    assert meta["imageSrc"] is None


def test_json_comments_only():
    assert extract_structured_data(PAGE)["comments"] == [{"listingId": "abc-123"}]


def test_noscript_content():
    noscript = extract_structured_data(PAGE)["noscriptContent"]
    assert len(noscript) == 1
    assert "pixel.gif" in noscript[0]


def test_data_attributes_parse_numbers():
    assert extract_structured_data(PAGE)["dataAttributes"] == [{"price": 450000, "id": "abc"}]


def test_microdata():
    items = extract_structured_data(PAGE)["microdata"]
    assert len(items) == 1
    assert items[0]["@type"] == "http://schema.org/Offer"
    assert items[0]["price"] == "450000"
    assert items[0]["priceCurrency"] == "USD"


def test_empty_input_gives_empty_result():
    data = extract_structured_data("")
    assert data["jsonLd"] == []
    assert data["nextData"] is None
    assert data["windowStates"] == {}
    assert data["metadata"]["title"] is None


def test_page_without_sources():
    data = extract_structured_data("<html><body><p>Nothing embedded here</p></body></html>")
    assert data["jsonLd"] == []
    assert data["dataLayer"] == []
    assert data["openGraph"] == {}
    assert data["dataAttributes"] == []
