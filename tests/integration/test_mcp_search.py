from __future__ import annotations

import pytest
import pytest_asyncio

from neemee_mcp import load_config
from neemee_mcp.errors import VALIDATION_ERROR
from neemee_mcp.server import (
    _create_note_impl,
    _create_notebook_impl,
    _search_notebooks_impl,
    _search_notes_impl,
    initialize_app,
    shutdown_app,
)


@pytest.fixture
def app(tmp_path):
    config = load_config(argv=["--storage-dir", str(tmp_path)], environ={})
    initialize_app(config)
    yield config
    shutdown_app()


@pytest_asyncio.fixture
async def corpus(app):
    work = (await _create_notebook_impl("Work Notes", "Meetings and plans"))["notebook"]
    workshop = (await _create_notebook_impl("Workshop", "Woodworking projects"))["notebook"]
    home = (await _create_notebook_impl("Home"))["notebook"]
    notes = {
        "standup": (
            await _create_note_impl(
                "Standup summary",
                url="https://docs.example.com/standup",
                notebook=work["id"],
                frontmatter={"tags": ["Meetings", "team"]},
            )
        )["note"],
        "bench": (
            await _create_note_impl(
                "Workbench build log",
                url="https://www.woodsite.org/bench",
                notebook=workshop["id"],
                frontmatter={"tags": "diy, wood"},
            )
        )["note"],
        "groceries": (await _create_note_impl("Groceries: milk, eggs", notebook=home["id"]))["note"],
    }
    return {"work": work, "workshop": workshop, "home": home, "notes": notes}


def _ids(response) -> set[str]:
    return {note["id"] for note in response["notes"]}


@pytest.mark.asyncio
async def test_empty_query_lists_everything_newest_first(corpus) -> None:
    response = await _search_notes_impl()
    assert response["ok"] is True
    assert [note["id"] for note in response["notes"]] == [
        corpus["notes"]["groceries"]["id"],
        corpus["notes"]["bench"]["id"],
        corpus["notes"]["standup"]["id"],
    ]
    assert response["pagination"] == {"total": 3, "page": 1, "limit": 20, "pages": 1}


@pytest.mark.asyncio
async def test_query_matches_content_and_title(corpus) -> None:
    response = await _search_notes_impl(query="STANDUP")
    assert _ids(response) == {corpus["notes"]["standup"]["id"]}


@pytest.mark.asyncio
async def test_partial_notebook_name_searches_every_match(corpus) -> None:
    response = await _search_notes_impl(notebook="work")
    assert _ids(response) == {corpus["notes"]["standup"]["id"], corpus["notes"]["bench"]["id"]}


@pytest.mark.asyncio
async def test_exact_notebook_name_narrows(corpus) -> None:
    response = await _search_notes_impl(notebook="workshop")
    assert _ids(response) == {corpus["notes"]["bench"]["id"]}


@pytest.mark.asyncio
async def test_notebook_id_and_description_fragment(corpus) -> None:
    by_id = await _search_notes_impl(notebook=corpus["home"]["id"])
    assert _ids(by_id) == {corpus["notes"]["groceries"]["id"]}
    by_description = await _search_notes_impl(notebook="woodworking")
    assert _ids(by_description) == {corpus["notes"]["bench"]["id"]}


@pytest.mark.asyncio
async def test_unknown_notebook_id_returns_empty_with_message(corpus) -> None:
    response = await _search_notes_impl(notebook="cmzzzzzzzzzzzzzzzzzzzzzzz")
    assert response["ok"] is True
    assert response["notes"] == []
    assert response["pagination"]["total"] == 0
    assert "cmzzzzzzzzzzzzzzzzzzzzzzz" in response["message"]


@pytest.mark.asyncio
async def test_domain_filter_is_url_substring(corpus) -> None:
    response = await _search_notes_impl(domain="example.com")
    assert _ids(response) == {corpus["notes"]["standup"]["id"]}


@pytest.mark.asyncio
async def test_tags_accept_string_or_list(corpus) -> None:
    as_string = await _search_notes_impl(tags="meetings, wood")
    as_list = await _search_notes_impl(tags=["MEETINGS", "wood"])
    expected = {corpus["notes"]["standup"]["id"], corpus["notes"]["bench"]["id"]}
    assert _ids(as_string) == expected
    assert _ids(as_list) == expected
    assert as_string["filters"]["tags"] == ["meetings", "wood"]


@pytest.mark.asyncio
async def test_date_bounds(corpus) -> None:
    everything = await _search_notes_impl(start_date="2000-01-01", end_date="2999-12-31T23:59:59Z")
    assert everything["pagination"]["total"] == 3
    nothing = await _search_notes_impl(end_date="2000-01-01T00:00:00Z")
    assert nothing["notes"] == []
    inverted = await _search_notes_impl(start_date="2999-01-01", end_date="2000-01-01")
    assert inverted["ok"] is True
    assert inverted["notes"] == []


@pytest.mark.asyncio
async def test_invalid_dates_are_rejected(corpus) -> None:
    response = await _search_notes_impl(start_date="last tuesday")
    assert response["ok"] is False
    assert response["error"]["code"] == VALIDATION_ERROR
    assert response["error"]["details"]["field"] == "start_date"


@pytest.mark.asyncio
async def test_pagination_and_limit_clamping(corpus) -> None:
    page_two = await _search_notes_impl(limit=2, page=2)
    assert page_two["pagination"] == {"total": 3, "page": 2, "limit": 2, "pages": 2}
    assert len(page_two["notes"]) == 1

    clamped_high = await _search_notes_impl(limit=1000)
    assert clamped_high["pagination"]["limit"] == 100
    clamped_low = await _search_notes_impl(limit=0, page=0)
    assert clamped_low["pagination"]["limit"] == 1
    assert clamped_low["pagination"]["page"] == 1

    beyond = await _search_notes_impl(page=9)
    assert beyond["notes"] == []
    assert beyond["pagination"]["total"] == 3


@pytest.mark.asyncio
async def test_filters_combine(corpus) -> None:
    response = await _search_notes_impl(query="build", notebook="work", tags="wood")
    assert _ids(response) == {corpus["notes"]["bench"]["id"]}
    response = await _search_notes_impl(query="build", notebook="home")
    assert response["notes"] == []


@pytest.mark.asyncio
async def test_search_notebooks(corpus) -> None:
    everything = await _search_notebooks_impl()
    assert [nb["name"] for nb in everything["notebooks"]] == ["Home", "Work Notes", "Workshop"]
    assert all(nb["note_count"] == 1 for nb in everything["notebooks"])

    by_description = await _search_notebooks_impl(query="meetings")
    assert [nb["name"] for nb in by_description["notebooks"]] == ["Work Notes"]

    paged = await _search_notebooks_impl(limit=1, page=3)
    assert [nb["name"] for nb in paged["notebooks"]] == ["Workshop"]
    assert paged["pagination"]["pages"] == 3
