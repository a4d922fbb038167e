"""Tests for resumable ingestion against a Parse-style transport."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from starfield.cache import CacheLayer
from starfield.entity_store import EntityStore
from starfield.errors import RemoteServiceError, TransientNetworkError
from starfield.ingestion import IngestionController, IngestionState
from starfield.jobs import JobBoard
from starfield.layout import HashLayout
from starfield.persistence import SnapshotPersistence


def _pointer(class_name, object_id):
    return {"__type": "Pointer", "className": class_name, "objectId": object_id}


@pytest.fixture
def persistence(kv):
    return SnapshotPersistence(kv)


@pytest.fixture
def controller(remote_client, persistence):
    return IngestionController(
        EntityStore(),
        remote_client,
        persistence,
        HashLayout(),
        JobBoard(),
        caches=CacheLayer(),
        page_delay=0,
        auto_reschedule=False,
    )


def _three_users(fake_parse):
    fake_parse.add_user("u1", "alice", TotalComments=4)
    fake_parse.add_user("u2", "bob")
    fake_parse.add_user("u3", "carol")


class TestIngestion:
    async def test_loads_until_an_empty_page(self, fake_parse, controller, persistence):
        _three_users(fake_parse)
        state = await controller.run()

        assert state is IngestionState.COMPLETE
        assert len(controller.store) == 3
        assert controller.cursor.user_skip == 3
        assert controller.cursor.total_members == 3
        assert controller.cursor.is_complete
        job = controller.jobs.list_jobs()[0]
        assert job.status == "completed"
        assert job.progress == 100.0
        assert job.message == "Loaded all 3 members"

        saved = await persistence.load_cursor()
        assert saved.is_complete and saved.user_skip == 3
        snapshot = await persistence.load()
        assert [m.id for m in snapshot.members] == ["u1", "u2", "u3"]

    async def test_resumes_from_cursor_across_runs(self, fake_parse, remote_client, persistence, controller):
        _three_users(fake_parse)
        controller.user_page_size = 2
        controller.max_pages_per_run = 1

        assert await controller.run() is IngestionState.IDLE
        assert len(controller.store) == 2
        assert controller.cursor.user_skip == 2

        assert await controller.run() is IngestionState.IDLE
        assert len(controller.store) == 3

        assert await controller.run() is IngestionState.COMPLETE
        assert controller.cursor.total_members == 3

    async def test_replayed_page_adds_nothing(self, controller):
        users = [{"id": "u1", "username": "alice"}, {"id": "u2", "username": "bob"}]
        assert controller.merge_page(users, [], []) == 2
        position = controller.store.get("u1").position
        assert controller.merge_page(users, [], []) == 0
        assert len(controller.store) == 2
        assert controller.store.get("u1").position == position

    async def test_posts_and_comments_add_stub_members(self, fake_parse, controller):
        fake_parse.add_user("u1", "alice")
        fake_parse.classes["post"].append(
            {"objectId": "p1", "creator": _pointer("_User", "u1"), "commentCount": 1, "createdAt": "2024-01-01"}
        )
        fake_parse.classes["comment"].append(
            {
                "objectId": "c1",
                "creator": _pointer("_User", "u9abcdef"),
                "post": _pointer("post", "p1"),
                "createdAt": "2024-01-02",
            }
        )
        await controller.run()

        stub = controller.store.get("u9abcdef")
        assert stub is not None
        assert stub.username == "user_u9abc"
        assert stub.activity == 1
        assert controller.store.get("u1").activity == 1
        assert controller.cursor.post_skip == 1
        assert controller.cursor.comment_skip == 1

    async def test_real_user_row_fills_stub(self, controller):
        controller.merge_page([], [{"id": "p1", "creator_id": "u5", "comment_count": 0}], [])
        assert controller.store.get("u5").username == "user_u5"
        controller.merge_page([{"id": "u5", "username": "eve", "profile_image_ref": "https://cdn/e.png"}], [], [])
        member = controller.store.get("u5")
        assert member.username == "eve"
        assert member.profile_image_ref == "https://cdn/e.png"

    async def test_first_page_falls_back_to_plain_query(self, fake_parse, controller):
        _three_users(fake_parse)
        fake_parse.primary_users_empty = True
        await controller.run()
        assert len(controller.store) == 3
        fallback = [r for r in fake_parse.requests if r.url.path == "/classes/_User" and "keys" not in r.url.params]
        assert len(fallback) == 1

    async def test_error_keeps_last_merged_cursor(self, fake_parse, controller, persistence):
        _three_users(fake_parse)
        controller.user_page_size = 2
        controller.max_pages_per_run = 1
        await controller.run()

        fake_parse.fail_status = 500
        state = await controller.run()

        assert state is IngestionState.ERROR
        job = max(controller.jobs.list_jobs(), key=lambda j: j.id)
        assert job.status == "error"
        assert job.message.startswith("Error:")
        assert (await persistence.load_cursor()).user_skip == 2
        assert len(controller.store) == 2

    async def test_reload_after_crash_resumes_saved_cursor(self, fake_parse, remote_client, persistence, controller):
        _three_users(fake_parse)
        controller.user_page_size = 2
        fake_parse.fail_after = 3
        assert await controller.run() is IngestionState.ERROR
        assert await persistence.load() is None
        assert (await persistence.load_cursor()).user_skip == 2

        fake_parse.fail_after = None
        fake_parse.requests.clear()
        reloaded = IngestionController(
            EntityStore(), remote_client, persistence, HashLayout(), JobBoard(), page_delay=0, auto_reschedule=False
        )
        assert await reloaded.bootstrap() == 0
        assert reloaded.cursor.user_skip == 2
        assert reloaded.cursor.total_members == 2

        assert await reloaded.run() is IngestionState.COMPLETE
        user_skips = [
            int(r.url.params.get("skip", 0)) for r in fake_parse.requests if r.url.path == "/classes/_User"
        ]
        assert user_skips and 0 not in user_skips
        assert reloaded.cursor.total_members == 3
        assert list(reloaded.store.ids()) == ["u3"]

    async def test_complete_cursor_without_snapshot_starts_fresh(self, remote_client, persistence):
        from starfield.schemas import IngestionCursor

        await persistence.save_cursor(IngestionCursor(user_skip=3, total_members=3, is_complete=True))
        controller = IngestionController(
            EntityStore(), remote_client, persistence, HashLayout(), JobBoard(), auto_reschedule=False
        )
        assert await controller.bootstrap() == 0
        assert controller.cursor.user_skip == 0
        assert await persistence.load_cursor() is None

    async def test_failed_fetch_waits_for_sibling_fetches(self, persistence):
        remote = MagicMock()
        remote.fetch_user_page = AsyncMock(return_value=[{"id": "u1", "username": "alice"}])
        remote.fetch_post_page = AsyncMock(side_effect=TransientNetworkError("posts down"))
        remote.fetch_comment_page = AsyncMock(side_effect=RemoteServiceError(503, "comments down"))
        controller = IngestionController(
            EntityStore(), remote, persistence, HashLayout(), JobBoard(), auto_reschedule=False
        )

        with pytest.raises(TransientNetworkError):
            await controller.fetch_and_merge()

        remote.fetch_user_page.assert_awaited_once()
        remote.fetch_comment_page.assert_awaited_once()
        assert len(controller.store) == 0
        assert controller.cursor.user_skip == 0
        assert await persistence.load_cursor() is None

    async def test_fresh_complete_snapshot_skips_fetching(self, fake_parse, remote_client, persistence, controller):
        _three_users(fake_parse)
        await controller.run()
        requests_before = len(fake_parse.requests)

        restarted = IngestionController(
            EntityStore(), remote_client, persistence, HashLayout(), JobBoard(), page_delay=0, auto_reschedule=False
        )
        assert await restarted.run() is IngestionState.COMPLETE
        assert len(restarted.store) == 3
        assert len(fake_parse.requests) == requests_before
        assert restarted.jobs.list_jobs()[0].message == "Universe fully loaded from snapshot"

    async def test_existing_positions_kept_until_complete(self, controller):
        users = [{"id": f"u{i}", "username": f"name{i}"} for i in range(12)]
        controller.merge_page(users[:6], [], [])
        before = {mid: controller.store.get(mid).position for mid in ("u0", "u5")}
        controller.merge_page(users[6:], [], [])
        assert {mid: controller.store.get(mid).position for mid in ("u0", "u5")} == before

    async def test_engagement_feedback_enters_layout(self, controller):
        from starfield.schemas import EngagementComment

        controller.feed_engagement("u1", [EngagementComment(from_member="u1", to_member="u2", post_id="p9")])
        controller._merge_pending_engagement()
        assert "p9" in controller.layout_state.posts
        assert any(c["from"] == "u1" for c in controller.layout_state.comments.values())

    async def test_reset(self, fake_parse, controller, persistence):
        _three_users(fake_parse)
        await controller.run()
        await controller.reset()
        assert len(controller.store) == 0
        assert controller.cursor.user_skip == 0
        assert await persistence.load_cursor() is None
        assert await persistence.load() is None
