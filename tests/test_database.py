import pytest

from ottie import database
from ottie.database import InvalidTransition


def test_create_preview_defaults():
    record = database.create_preview("https://example.com/listing/1")
    assert record["status"] == "queued"
    assert record["external_url"] == "https://example.com/listing/1"
    assert record["created_at"] == record["updated_at"]
    assert record["unified_json"] is None


def test_json_columns_round_trip():
    record = database.create_preview("https://example.com/listing/1")
    database.update_preview(record["id"], structured_data={"jsonLd": [{"name": "Villa"}]},
                            gallery_image_urls=[])
    updated = database.get_preview(record["id"])
    assert updated["structured_data"] == {"jsonLd": [{"name": "Villa"}]}
    assert updated["gallery_image_urls"] == []


def test_status_only_moves_forward():
    pid = database.create_preview("https://example.com/listing/1")["id"]
    database.update_preview(pid, status="pending")
    with pytest.raises(InvalidTransition):
        database.update_preview(pid, status="scraping")
    assert database.get_preview(pid)["status"] == "pending"


def test_error_is_reachable_and_resumable():
    pid = database.create_preview("https://example.com/listing/1")["id"]
    database.mark_error(pid, "boom")
    record = database.get_preview(pid)
    assert record["status"] == "error"
    assert record["error_message"] == "boom"

    database.update_preview(pid, status="completed")
    record = database.get_preview(pid)
    assert record["status"] == "completed"
    assert record["error_message"] is None


@pytest.mark.parametrize("target", ["queued", "scraping"])
def test_error_cannot_go_back_to_scraping(target):
    pid = database.create_preview("https://example.com/listing/1")["id"]
    database.mark_error(pid, "timeout")
    with pytest.raises(InvalidTransition, match=f"error -> {target}"):
        database.update_preview(pid, status=target)
    record = database.get_preview(pid)
    assert record["status"] == "error"
    assert record["error_message"] == "timeout"


def test_error_can_be_marked_again():
    pid = database.create_preview("https://example.com/listing/1")["id"]
    database.mark_error(pid, "first")
    database.mark_error(pid, "second")
    assert database.get_preview(pid)["error_message"] == "second"


def test_update_rejects_unknown_input():
    pid = database.create_preview("https://example.com/listing/1")["id"]
    with pytest.raises(ValueError, match="Unknown preview columns"):
        database.update_preview(pid, not_a_column=1)
    with pytest.raises(ValueError, match="Unknown status"):
        database.update_preview(pid, status="archived")
    with pytest.raises(KeyError):
        database.update_preview("missing", status="pending")


def test_stats():
    first = database.create_preview("https://example.com/1")["id"]
    database.create_preview("https://example.com/2")
    database.update_preview(first, status="completed", source_domain="firecrawl")

    stats = database.get_stats()
    assert stats["total"] == 2
    assert stats["by_status"]["queued"] == 1
    assert stats["by_status"]["completed"] == 1
    assert stats["by_source"] == [("firecrawl", 1)]
    assert stats["claimed"] == 0


def test_list_previews_filters_by_status():
    first = database.create_preview("https://example.com/1")["id"]
    database.create_preview("https://example.com/2")
    database.mark_error(first, "boom")
    rows = database.list_previews(status="error")
    assert [r["id"] for r in rows] == [first]
    assert "raw_html" not in rows[0]
