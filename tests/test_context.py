"""Tests for the engine context: the UI entry points wired together."""
import asyncio

import pytest

from starfield.clients.kv_store import MemoryKeyValueStore
from starfield.context import EngineContext
from starfield.errors import NotFoundError, StaleResultDiscarded
from starfield.selection import SelectionState


@pytest.fixture
async def engine(fake_remote):
    engine = EngineContext(remote=fake_remote, kv=MemoryKeyValueStore(), page_delay=0, auto_reschedule=False)
    await engine.start()
    yield engine
    await engine.stop()


async def _load(engine):
    job = engine.start_load_job()
    await engine._load_task
    return engine.jobs.get(job.id)


class TestEngineContext:
    async def test_load_job_fills_universe(self, engine):
        job = await _load(engine)
        assert job.status == "completed"
        assert len(engine.store) == 3
        assert engine.render.points.positions.shape == (3, 3)

    async def test_second_load_request_joins_running_job(self, engine):
        first = engine.start_load_job()
        assert engine.start_load_job().id == first.id
        await engine._load_task

    async def test_select_by_username(self, engine):
        await _load(engine)
        detail = await engine.on_select("bob")
        assert detail.member.id == "u2"
        assert detail.initials == "B"
        assert engine.selection.state is SelectionState.TRAVELING
        engine.on_close()
        assert engine.selection.state is SelectionState.IDLE

    async def test_select_unknown_member(self, engine):
        with pytest.raises(NotFoundError):
            await engine.on_select("nobody")

    async def test_select_fetches_missing_member(self, engine):
        detail = await engine.on_select("alice")
        assert detail.member.cluster_label == "Deep Link"
        assert detail.member.sobriety_days > 0
        assert "u1" in engine.store

    async def test_slow_lookup_does_not_override_later_selection(self, engine, fake_remote):
        gate = asyncio.Event()
        fake_remote.gates["bob"] = gate
        slow = asyncio.create_task(engine.on_select("bob"))
        await asyncio.sleep(0)

        detail = await engine.on_select("alice")
        assert detail.member.id == "u1"

        gate.set()
        with pytest.raises(StaleResultDiscarded):
            await slow
        assert engine.selection.selected_id == "u1"

    async def test_close_during_lookup_discards_selection(self, engine, fake_remote):
        gate = asyncio.Event()
        fake_remote.gates["carol"] = gate
        slow = asyncio.create_task(engine.on_select("carol"))
        await asyncio.sleep(0)

        engine.on_close()
        gate.set()
        with pytest.raises(StaleResultDiscarded):
            await slow
        assert engine.selection.selected_id is None

    async def test_select_adopts_search_result(self, engine):
        results = await engine.on_search_input("car")
        assert [r.member.id for r in results] == ["u3"]
        detail = await engine.on_select("u3")
        assert detail.member.cluster_label == "Search"

    async def test_deep_link_before_data(self, engine):
        token = await engine.open_deep_link("carol")
        assert token is not None
        assert engine.selection.selected_id == "u3"
        assert engine.selection.travel.duration == pytest.approx(2.8)

    async def test_frame_advances_travel_and_uploads_points(self, engine):
        await _load(engine)
        await engine.on_select("alice")
        engine.selection.travel.duration = 0
        engine.on_frame()
        assert engine.selection.state is SelectionState.SELECTED
        assert engine.frame == 1
        await engine.selection_guard.drain()

    async def test_reset_job_state(self, engine):
        await _load(engine)
        await engine.on_select("alice")
        await engine.on_reset_job_state()
        assert len(engine.store) == 0
        assert engine.selection.state is SelectionState.IDLE
        assert engine.render.points.positions.shape == (0, 3)
        assert await engine.persistence.load() is None

    async def test_clear_snapshot_keeps_cursor(self, engine):
        await _load(engine)
        await engine.on_clear_snapshot()
        assert await engine.persistence.load() is None
        assert (await engine.persistence.load_cursor()).is_complete

    async def test_restart_restores_from_snapshot(self, engine, fake_remote):
        await _load(engine)
        restarted = EngineContext(remote=fake_remote, kv=engine.kv, page_delay=0, auto_reschedule=False)
        await restarted.start()
        try:
            assert len(restarted.store) == 3
            assert restarted.store.get("u1").cluster_label == "Snapshot"
        finally:
            await restarted.stop()
