import json

import pytest

from ottie import config, database, llm
from ottie.llm import LLMResponse
from ottie.queue import ScrapeQueue

CREDENTIAL_VARS = (
    "SCRAPER_PROVIDER", "SCRAPERAPI_KEY", "FIRECRAWL_API_KEY", "APIFY_API_TOKEN",
    "INTERNAL_API_TOKEN", "OPENAI_API_KEY", "GEMINI_API_KEY", "LLM_URL", "LLM_MODEL",
)

USAGE = {"prompt_tokens": 120, "completion_tokens": 40, "total_tokens": 160}

CALL1_CONFIG = {
    # Deliberately out of reference order
    "description": "Bright three bedroom home with a heated pool and mountain views.",
    "beds": 3,
    "language": "en",
    "baths": 2,
    "currency": "USD",
    "address": {"city": "Austin", "street": "12 Oak Lane", "state": "TX", "country": "US"},
    "price_info": {"unit": "sqft", "price": 450000},
    "property_type": "HOUSE",
    "living_area": {"value": 1850, "unit": "sqft"},
    "features_amenities": {"outdoor": {"pool": True, "garden": True}},
    "photos": [{"alt": "Front", "url": "https://img.example.com/1.jpg"}],
    "extra_field": "kept",
}

CALL2_RESPONSE = {
    "title": "Sunlit Family Retreat With Pool",
    "highlights": [
        {"title": "Heated Pool", "value": "Year-round swimming", "icon": "SwimmingPool"},
        {"title": "Three Bedrooms", "value": "3 beds", "icon": "Bed"},
    ],
    "description": "Model tried to rewrite this",
}


class FakeLLM:
    """Stands in for LLMClient: returns scripted responses in order, records every call."""

    def __init__(self, responses, on_call=None):
        self.responses = list(responses)
        self.calls = []
        self.on_call = on_call

    def chat(self, messages, temperature=0.0, max_tokens=4096, json_mode=False):
        self.calls.append({"messages": messages, "temperature": temperature,
                           "json_mode": json_mode})
        if self.on_call is not None:
            self.on_call(len(self.calls))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        text = item if isinstance(item, str) else json.dumps(item)
        return LLMResponse(text=text, usage=dict(USAGE), duration_ms=25)


@pytest.fixture(autouse=True)
def ottie_home(tmp_path, monkeypatch):
    """Point the data directory and database at tmp_path, clear credentials."""
    monkeypatch.setattr(config, "APP_DIR", tmp_path)
    monkeypatch.setattr(config, "DB_PATH", tmp_path / "ottie.db")
    monkeypatch.setattr(config, "LOG_DIR", tmp_path / "logs")
    for var in CREDENTIAL_VARS:
        monkeypatch.delenv(var, raising=False)
    database.init_db()
    yield tmp_path
    database.close_connection()
    llm.set_client(None)


@pytest.fixture
def queue():
    q = ScrapeQueue().init()
    yield q
    q.shutdown()


@pytest.fixture
def call1_config():
    return json.loads(json.dumps(CALL1_CONFIG))


@pytest.fixture
def call2_response():
    return json.loads(json.dumps(CALL2_RESPONSE))


@pytest.fixture
def fake_llm(call1_config, call2_response):
    """Factory: fake_llm() scripts a Call 1 + Call 2 success, or pass explicit responses."""
    def make(*responses, on_call=None):
        if not responses:
            responses = (call1_config, call2_response)
        return FakeLLM(responses, on_call=on_call)
    return make


@pytest.fixture
def pending_preview():
    """A preview with scraped markdown, ready for Call 1."""
    record = database.create_preview("https://example.com/listing/123")
    database.update_preview(
        record["id"], status="pending",
        markdown="# 12 Oak Lane\n\nBright three bedroom home with a heated pool.",
        source_domain="scraperapi",
    )
    return record["id"]
