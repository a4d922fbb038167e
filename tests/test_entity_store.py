"""Tests for the columnar entity store."""
import numpy as np
import pytest

from starfield.entity_store import EntityStore, is_indexable_username


class TestEntityStore:
    def test_append_assigns_sequential_slots(self):
        store = EntityStore()
        assert store.append("a", (1, 2, 3)) == 0
        assert store.append("b", (4, 5, 6)) == 1
        assert len(store) == 2
        assert store.id_at(1) == "b"
        assert store.indices.tolist() == [0.0, 1.0]

    def test_append_existing_id_is_noop(self):
        store = EntityStore()
        store.append("a", (1, 2, 3), username="alice")
        assert store.append("a", (9, 9, 9), username="other") == 0
        assert len(store) == 1
        assert store.get("a").username == "alice"
        np.testing.assert_allclose(store.positions[0], (1, 2, 3))

    def test_growth_preserves_rows(self):
        store = EntityStore(initial_capacity=2)
        for i in range(5):
            store.append(f"m{i}", (i, i * 2, i * 3), size=1.0 + i)
        assert store.capacity == 8
        assert len(store.positions) == 5
        np.testing.assert_allclose(store.positions[0], (0, 0, 0))
        np.testing.assert_allclose(store.positions[4], (4, 8, 12))
        assert store.sizes[3] == pytest.approx(4.0)
        assert [store.slot_of(f"m{i}") for i in range(5)] == [0, 1, 2, 3, 4]

    def test_position_change_needs_relayout(self):
        store = EntityStore()
        store.append("a", (1, 1, 1))
        with pytest.raises(ValueError):
            store.update("a", {"position": (5, 5, 5)})
        store.update("a", {"position": (5, 5, 5)}, allow_relayout=True)
        np.testing.assert_allclose(store.positions[0], (5, 5, 5))

    def test_update_metadata_and_columns(self):
        store = EntityStore()
        store.append("a", (0, 0, 0))
        store.update("a", {"risk_score": 80, "risk_level": "high", "size": 3.5})
        member = store.get("a")
        assert member.risk_level == "high"
        assert member.size == pytest.approx(3.5)

    def test_update_unknown_member(self):
        with pytest.raises(KeyError):
            EntityStore().update("missing", {"username": "x"})

    def test_unknown_field_rejected(self):
        store = EntityStore()
        with pytest.raises(TypeError):
            store.append("a", (0, 0, 0), favourite_colour="blue")

    def test_members_past_cap_are_tracked_without_slot(self):
        store = EntityStore(max_slots=2)
        store.append("a", (0, 0, 0))
        store.append("b", (1, 1, 1))
        assert store.append("c", (2, 2, 2), username="carol") is None
        assert len(store) == 2
        assert store.known_count == 3
        assert "c" in store
        member = store.get("c")
        assert member.slot is None
        assert member.position == (2.0, 2.0, 2.0)

    def test_members_past_cap_resolve_by_username(self):
        store = EntityStore(max_slots=1)
        store.append("a", (0, 0, 0), username="alice")
        store.append("c", (2, 2, 2), username="Carol")
        assert store.resolve_slug("carol") == "c"
        store.update("c", {"username": "caroline"})
        assert store.resolve_slug("carol") is None
        assert store.resolve_slug("caroline") == "c"

    def test_rendered_member_wins_username_clash(self):
        store = EntityStore(max_slots=1)
        store.append("a", (0, 0, 0), username="sam")
        store.append("b", (1, 1, 1), username="Sam")
        assert store.resolve_slug("sam") == "a"

    def test_resolve_slug_by_id_and_username(self):
        store = EntityStore()
        store.append("abc123", (0, 0, 0), username="Alice")
        assert store.resolve_slug("abc123") == "abc123"
        assert store.resolve_slug("alice") == "abc123"
        assert store.resolve_slug(" ALICE ") == "abc123"
        assert store.resolve_slug("") is None
        assert store.resolve_slug("nobody") is None

    def test_username_rename_reindexes(self):
        store = EntityStore()
        store.append("a", (0, 0, 0), username="user_a1b2c")
        store.update("a", {"username": "alice"})
        assert store.resolve_slug("alice") == "a"
        assert store.resolve_slug("user_a1b2c") is None

    def test_placeholder_usernames_not_indexed(self):
        assert not is_indexable_username("Anonymous")
        assert not is_indexable_username("user123")
        assert not is_indexable_username("  ")
        assert is_indexable_username("user_abc")
        store = EntityStore()
        store.append("a", (0, 0, 0), username="User42")
        assert store.resolve_slug("user42") is None

    def test_clear(self):
        store = EntityStore(initial_capacity=2)
        for i in range(4):
            store.append(str(i), (0, 0, 0))
        store.clear()
        assert len(store) == 0
        assert store.known_count == 0
        assert store.capacity == 2
        assert list(store.ids()) == []
