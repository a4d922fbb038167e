"""Tests for the location filter: matching, options and the filtered point upload."""
import pytest

from starfield.clients.kv_store import MemoryKeyValueStore
from starfield.context import EngineContext
from starfield.entity_store import EntityStore
from starfield.locations import filter_options, is_active, visible_slots
from starfield.schemas import LocationFilter


@pytest.fixture
def store():
    store = EntityStore()
    store.append("a", (0, 0, 0), country="Canada", region="Ontario", city="Toronto")
    store.append("b", (1, 1, 1), country="Canada", region="Quebec")
    store.append("c", (2, 2, 2), country="United States", region="Ontario")
    store.append("d", (3, 3, 3))
    return store


class TestLocationFilter:
    def test_empty_filter_shows_everyone(self, store):
        criteria = LocationFilter()
        assert not is_active(criteria)
        assert visible_slots(store, criteria).tolist() == [0, 1, 2, 3]

    def test_country_match_is_case_insensitive(self, store):
        assert visible_slots(store, LocationFilter(country=" canada ")).tolist() == [0, 1]

    def test_fields_combine(self, store):
        criteria = LocationFilter(country="Canada", region="Ontario")
        assert visible_slots(store, criteria).tolist() == [0]

    def test_missing_value_is_hidden(self, store):
        assert visible_slots(store, LocationFilter(city="Toronto")).tolist() == [0]

    def test_no_match(self, store):
        assert visible_slots(store, LocationFilter(country="Peru")).tolist() == []

    def test_options_are_distinct_and_sorted(self, store):
        options = filter_options(store, LocationFilter(country="Canada"))
        assert options.countries == ["Canada", "United States"]
        assert options.regions == ["Ontario", "Quebec"]
        assert options.cities == ["Toronto"]
        assert options.active.country == "Canada"


@pytest.fixture
async def engine(fake_remote):
    engine = EngineContext(remote=fake_remote, kv=MemoryKeyValueStore(), page_delay=0, auto_reschedule=False)
    await engine.start()
    job = engine.start_load_job()
    await engine._load_task
    assert engine.jobs.get(job.id).status == "completed"
    yield engine
    await engine.stop()


class TestEngineLocationFilter:
    async def test_ingested_locations_feed_the_options(self, engine):
        options = engine.location_filter_options()
        assert options.countries == ["Canada", "United States"]
        assert options.regions == ["Ontario", "Quebec"]
        assert engine.store.get("u1").city == "Toronto"

    async def test_filter_rebuilds_pushed_points(self, engine):
        assert engine.on_location_filter(LocationFilter(country="Canada")) == 2
        points = engine.render.points
        assert points.positions.shape == (2, 3)
        shown = {engine.store.id_at(int(i)) for i in points.indices}
        assert shown == {"u1", "u2"}

        assert engine.on_location_filter(LocationFilter()) == 3
        assert engine.render.points.positions.shape == (3, 3)

    async def test_filter_survives_frame_uploads(self, engine):
        engine.on_location_filter(LocationFilter(region="Quebec"))
        engine._points_dirty = True
        engine.on_frame()
        assert engine.render.points.positions.shape == (1, 3)
        assert engine.events.values["location.filter"].region == "Quebec"

    async def test_snapshot_keeps_locations(self, engine, fake_remote):
        restarted = EngineContext(remote=fake_remote, kv=engine.kv, page_delay=0, auto_reschedule=False)
        await restarted.start()
        try:
            assert restarted.store.get("u2").region == "Quebec"
            assert restarted.on_location_filter(LocationFilter(country="United States")) == 1
        finally:
            await restarted.stop()
