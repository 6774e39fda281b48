import pytest

from ottie import database
from ottie.generator import (
    GenerationError,
    build_config_prompt,
    build_title_prompt,
    format_property_data_for_title,
    relevant_title_data,
    run_call1,
    run_call2,
    sort_config_to_sample_order,
)
from ottie.status import derive_phase


# -- Key ordering ----------------------------------------------------------------

def test_sort_follows_reference_order(call1_config):
    ordered = sort_config_to_sample_order(call1_config)
    assert list(ordered) == [
        "language", "currency", "photos", "address", "price_info", "beds", "baths",
        "property_type", "living_area", "description", "features_amenities", "extra_field",
    ]
    assert list(ordered["address"]) == ["street", "city", "state", "country"]
    assert list(ordered["price_info"]) == ["price", "unit"]
    assert list(ordered["photos"][0]) == ["url", "alt"]
    assert ordered == call1_config


def test_sort_keeps_unknown_keys_in_model_order():
    ordered = sort_config_to_sample_order({"zeta": 1, "beds": 2, "alpha": 3, "language": "en"})
    assert list(ordered) == ["language", "beds", "zeta", "alpha"]


# -- Prompts ---------------------------------------------------------------------

def test_config_prompt_leaves_out_call2_keys():
    prompt = build_config_prompt("LISTING TEXT")
    assert prompt.rstrip().endswith("LISTING TEXT")
    assert '"highlights"' not in prompt
    assert '"subtitle"' not in prompt
    assert '"features_amenities"' in prompt
    assert "at most 20" in prompt


def test_title_prompt_offers_current_copy():
    prompt = build_title_prompt("Language: en", current_title="Old Title",
                                current_highlights=[{"title": "Pool", "value": "Yes", "icon": "Water"}])
    assert "CURRENT TITLE (optional to improve):\nOld Title" in prompt
    assert "CURRENT HIGHLIGHTS" in prompt
    assert '"SwimmingPool"' in prompt
    assert prompt.rstrip().endswith('{"title": "...", "highlights": [{"title": "...", "value": "...", "icon": "..."}]}')


def test_title_prompt_without_current_copy():
    assert "CURRENT TITLE" not in build_title_prompt("Language: en")


def test_format_property_data_for_title(call1_config):
    text = format_property_data_for_title(relevant_title_data(call1_config))
    assert text.split("\n") == [
        "Language: en",
        "Address: 12 Oak Lane, Austin, TX, US",
        "Property: 3 beds, 2 baths - HOUSE",
        "Living Area: 1850 sqft",
        "",
        "Description:",
        "Bright three bedroom home with a heated pool and mountain views.",
        "",
        "Features & Amenities:",
        "- Pool",
        "- Garden",
    ]


def test_format_property_data_singular_and_highlights():
    text = format_property_data_for_title({
        "title": "Old",
        "beds": 1,
        "baths": 1,
        "property_type": "CONDO",
        "year_built": 1998,
        "lot_size": {"value": 0.25, "unit": "acres"},
        "highlights": [{"title": "Quiet", "value": "Cul-de-sac"}],
    })
    assert text.split("\n") == [
        "Current Title: Old",
        "Property: 1 bed, 1 bath - CONDO",
        "Year Built: 1998",
        "Lot Size: 0.25 acres",
        "",
        "Current Highlights (for improvement):",
        "1. Quiet: Cul-de-sac",
    ]


# -- Call 1 ----------------------------------------------------------------------

def test_run_call1_stores_config_and_metadata(pending_preview, fake_llm, call1_config):
    llm = fake_llm(call1_config)
    generated = run_call1(pending_preview, client=llm)

    assert generated["extra_field"] == "kept"
    assert list(generated)[0] == "language"

    call = llm.calls[0]
    assert call["temperature"] == 0.3
    assert call["json_mode"] is True
    assert [m["role"] for m in call["messages"]] == ["system", "user"]
    assert "12 Oak Lane" in call["messages"][1]["content"]

    record = database.get_preview(pending_preview)
    meta = record["generated_config"]["_metadata"]
    assert set(meta) == {"call1_started_at", "call1_completed_at", "call1_duration_ms", "call1_usage"}
    assert meta["call1_usage"]["total_tokens"] == 160
    assert record["unified_json"] == record["generated_config"]
    assert record["status"] == "pending"
    assert derive_phase(record, None, True) == "call2"


def test_run_call1_reads_scraped_json(fake_llm, call1_config):
    record = database.create_preview("https://www.zillow.com/homedetails/1")
    database.update_preview(record["id"], status="pending",
                            scraped_data={"provider": "apify", "scraperId": "zillow",
                                          "data": [{"price": 450000, "bedrooms": 3}]},
                            markdown="ignored when scraped data exists")
    llm = fake_llm(call1_config)
    run_call1(record["id"], client=llm)
    prompt = llm.calls[0]["messages"][1]["content"]
    assert "Price: $450,000\nBedrooms: 3" in prompt
    assert "ignored when scraped data exists" not in prompt


def test_run_call1_invalid_json(pending_preview, fake_llm):
    with pytest.raises(GenerationError, match="invalid JSON"):
        run_call1(pending_preview, client=fake_llm("this is not json"))
    record = database.get_preview(pending_preview)
    assert record["generated_config"] is None
    assert "call1_started_at" in record["unified_json"]["_metadata"]
    assert derive_phase(record, None, True) == "call1"


def test_run_call1_llm_failure(pending_preview, fake_llm):
    with pytest.raises(GenerationError, match="Config generation failed: rate limited"):
        run_call1(pending_preview, client=fake_llm(RuntimeError("rate limited")))


def test_run_call1_without_content(fake_llm):
    record = database.create_preview("https://example.com/1")
    with pytest.raises(GenerationError, match="No scraped content"):
        run_call1(record["id"], client=fake_llm())


# -- Call 2 ----------------------------------------------------------------------

def test_run_call2_merges_only_title_and_highlights(pending_preview, fake_llm, call1_config,
                                                    call2_response):
    llm = fake_llm()
    run_call1(pending_preview, client=llm)
    final = run_call2(pending_preview, client=llm)

    assert final["title"] == call2_response["title"]
    assert final["highlights"] == call2_response["highlights"]
    assert final["description"] == call1_config["description"]
    assert list(final)[0] == "title"

    call = llm.calls[1]
    assert call["temperature"] == 0.8
    assert [m["role"] for m in call["messages"]] == ["user"]
    assert "Address: 12 Oak Lane, Austin, TX, US" in call["messages"][0]["content"]

    record = database.get_preview(pending_preview)
    assert record["status"] == "completed"
    unified = record["unified_json"]
    assert unified["title"] == call2_response["title"]
    assert {"call1_completed_at", "call2_started_at", "call2_completed_at",
            "call2_duration_ms", "call2_usage"} <= set(unified["_metadata"])
    # Call 1 output is kept as generated
    assert "title" not in record["generated_config"]


def test_run_call2_strips_title_whitespace(pending_preview, fake_llm, call1_config):
    llm = fake_llm(call1_config, {"title": "  Padded Title  ", "highlights": []})
    run_call1(pending_preview, client=llm)
    assert run_call2(pending_preview, client=llm)["title"] == "Padded Title"


def test_run_call2_requires_call1(pending_preview, fake_llm):
    with pytest.raises(GenerationError, match="No generated config found"):
        run_call2(pending_preview, client=fake_llm())


@pytest.mark.parametrize("response, field", [
    ({"highlights": []}, "title"),
    ({"title": "", "highlights": []}, "title"),
    ({"title": "Fine", "highlights": "six of them"}, "highlights"),
])
def test_run_call2_rejects_bad_response(pending_preview, fake_llm, call1_config, response, field):
    llm = fake_llm(call1_config, response)
    run_call1(pending_preview, client=llm)
    with pytest.raises(GenerationError, match=f"missing or invalid {field} field"):
        run_call2(pending_preview, client=llm)

    record = database.get_preview(pending_preview)
    assert record["status"] == "pending"
    assert derive_phase(record, None, True) == "call2"


def test_run_call2_caps_highlights(pending_preview, fake_llm, call1_config):
    highlights = [{"title": f"Highlight {i}", "value": "v", "icon": "Star"} for i in range(9)]
    llm = fake_llm(call1_config, {"title": "Oak Lane", "highlights": highlights})
    run_call1(pending_preview, client=llm)
    final = run_call2(pending_preview, client=llm)
    assert final["highlights"] == highlights[:6]
    assert database.get_preview(pending_preview)["unified_json"]["highlights"] == highlights[:6]


def test_failed_rerun_keeps_completed_config(pending_preview, fake_llm, call2_response):
    run_call1(pending_preview, client=fake_llm())
    run_call2(pending_preview, client=fake_llm(call2_response))
    before = database.get_preview(pending_preview)["unified_json"]

    with pytest.raises(GenerationError):
        run_call1(pending_preview, client=fake_llm(RuntimeError("quota exceeded")))
    with pytest.raises(GenerationError):
        run_call2(pending_preview, client=fake_llm({"title": "", "highlights": []}))

    record = database.get_preview(pending_preview)
    assert record["status"] == "completed"
    unified = record["unified_json"]
    assert {k: v for k, v in unified.items() if k != "_metadata"} == (
        {k: v for k, v in before.items() if k != "_metadata"})
    assert unified["title"] == call2_response["title"]
    assert "call2_started_at" in unified["_metadata"]


def test_run_call_unknown_preview(fake_llm):
    with pytest.raises(KeyError):
        run_call1("missing", client=fake_llm())
    with pytest.raises(KeyError):
        run_call2("missing", client=fake_llm())
