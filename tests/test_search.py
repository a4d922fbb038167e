"""Tests for member search: ranking, caching, debounce and adoption."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from starfield.cache import CacheLayer
from starfield.clients.remote_client import RemoteClient
from starfield.entity_store import EntityStore
from starfield.errors import TransientNetworkError
from starfield.layout import HashLayout
from starfield.search import FALLBACK_RADIUS, MemberSearch, rank


def _user(member_id, username, comments=0, pic=None):
    return {
        "id": member_id,
        "username": username,
        "total_comments": comments,
        "profile_image_ref": pic,
        "sobriety_date": None,
    }


@pytest.fixture
def remote():
    remote = AsyncMock(spec=RemoteClient)
    remote.search_users.return_value = [
        _user("u1", "samantha", 5),
        _user("u2", "sam", 1),
        _user("u3", "busam", 50),
        _user("u4", "sammy", 9),
    ]
    remote.fetch_profile_pictures.return_value = {}
    return remote


@pytest.fixture
def store():
    store = EntityStore()
    store.append("u4", (1.0, 2.0, 3.0), username="sammy")
    return store


@pytest.fixture
def search(store, remote):
    return MemberSearch(store, remote, CacheLayer(), HashLayout(), debounce=0.01)


def test_rank_exact_then_prefix_then_rest():
    ranked = rank("Sam", [_user("u1", "samantha", 5), _user("u2", "sam", 1), _user("u3", "busam", 50), _user("u4", "sammy", 9)])
    assert [u["id"] for u in ranked] == ["u2", "u4", "u1", "u3"]


class TestMemberSearch:
    async def test_results_mark_known_members(self, search):
        results = await search.search("sam")
        assert [r.member.username for r in results] == ["sam", "sammy", "samantha", "busam"]
        sammy = results[1]
        assert not sammy.is_new and sammy.slot == 0
        assert results[0].is_new and results[0].slot == -1
        assert search.events.values["search.results"] == results

    async def test_repeat_query_served_from_cache(self, search, remote):
        await search.search("sam")
        await search.search("SAM ")
        remote.search_users.assert_awaited_once_with("sam")

    async def test_failed_search_is_not_cached(self, search, remote):
        users = remote.search_users.return_value
        remote.search_users.side_effect = [TransientNetworkError("timeout"), users]
        assert await search.search("sam") == []
        assert len(await search.search("sam")) == 4
        assert remote.search_users.await_count == 2

    async def test_empty_query_clears_results(self, search, remote):
        await search.search("sam")
        assert await search.search("   ") == []
        assert search.results == []
        assert search.events.visible["search_results"] is False

    async def test_missing_pictures_resolved_in_one_batch(self, search, remote):
        remote.fetch_profile_pictures.return_value = {"u1": "https://cdn/u1.png"}
        results = await search.search("sam")
        remote.fetch_profile_pictures.assert_awaited_once()
        by_id = {r.member.id: r for r in results}
        assert by_id["u1"].member.profile_image_ref == "https://cdn/u1.png"

    async def test_keystrokes_debounce_to_latest(self, search, remote):
        first = search.on_input("sa")
        await asyncio.sleep(0)
        second = search.on_input("sam")
        assert await second
        assert await first is None
        remote.search_users.assert_awaited_once_with("sam")
        assert search.last_query == "sam"

    async def test_blank_keystroke_publishes_immediately(self, search):
        assert search.on_input("") is None
        assert search.results == []

    async def test_adopt_appends_at_fallback_radius(self, search, store):
        results = await search.search("sam")
        member_id = search.adopt(results[0])
        assert member_id == "u2"
        member = store.get("u2")
        assert member.cluster_label == "Search"
        x, y, z = member.position
        assert (x * x + y * y + z * z) ** 0.5 == pytest.approx(FALLBACK_RADIUS, rel=1e-4)
        assert search.adopt(results[1]) == "u4"
        assert len(store) == 2

    async def test_find(self, search):
        await search.search("sam")
        assert search.find("u3").member.username == "busam"
        assert search.find("nope") is None
