"""
Tests for state persistence.
"""

import random

from granite_sim.engine import GameEngine
from granite_sim.state import GameState, JsonStateStore, MemoryStateStore, Phase, StateStore

from conftest import FakeClock, join_depositor


class TestJsonStateStore:
    def test_round_trip(self, engine, tmp_path):
        """Saved state loads back with participants and phase intact."""
        depositor = join_depositor(engine)
        engine.set_phase("phase1")
        store = JsonStateStore(tmp_path)
        store.save(engine.state)

        loaded = store.load()
        assert isinstance(loaded, GameState)
        assert loaded.session.phase == Phase.PHASE1
        assert loaded.participants[depositor.id].name == "Ada Lovelace"
        assert loaded.session.join.token == engine.state.session.join.token

    def test_missing_file_loads_none(self, tmp_path):
        store = JsonStateStore(tmp_path / "fresh")
        assert store.load() is None
        assert not store.exists()
        assert (tmp_path / "fresh").is_dir()

    def test_backup_written(self, engine, tmp_path):
        """The previous save is kept alongside as a .bak."""
        store = JsonStateStore(tmp_path)
        store.save(engine.state)
        join_depositor(engine)
        store.save(engine.state)

        backup = tmp_path / "state.json.bak"
        assert backup.exists()
        previous = GameState.model_validate_json(backup.read_text(encoding="utf-8"))
        assert previous.participants == {}

    def test_corrupt_file_loads_none(self, tmp_path):
        (tmp_path / "state.json").write_text("{not json", encoding="utf-8")
        assert JsonStateStore(tmp_path).load() is None

    def test_incompatible_file_loads_none(self, tmp_path):
        (tmp_path / "state.json").write_text('{"session": 5}', encoding="utf-8")
        assert JsonStateStore(tmp_path).load() is None

    def test_protocol(self, tmp_path):
        assert isinstance(JsonStateStore(tmp_path), StateStore)
        assert isinstance(MemoryStateStore(), StateStore)


class TestMemoryStateStore:
    def test_save_is_a_copy(self, engine, memory_store):
        """Mutating live state after a save does not change what was stored."""
        memory_store.save(engine.state)
        engine.state.metrics.panic_meter = 77
        assert memory_store.load().metrics.panic_meter != 77

    def test_clear(self, engine, memory_store):
        memory_store.save(engine.state)
        memory_store.clear()
        assert memory_store.load() is None


class TestEngineRestore:
    def test_engine_persists_every_commit(self, engine, memory_store):
        saves = memory_store.save_count
        join_depositor(engine)
        assert memory_store.save_count == saves + 1

    def test_restart_restores_session(self, engine, memory_store):
        """A new engine over the same store picks up where the last one stopped."""
        depositor = join_depositor(engine)
        engine.set_phase("phase1")

        restarted = GameEngine(store=memory_store, rng=random.Random(5), clock=FakeClock())
        assert restarted.state.session.code == engine.state.session.code
        assert restarted.state.session.phase == Phase.PHASE1
        assert depositor.id in restarted.state.participants

    def test_failed_save_is_logged_not_raised(self, engine, caplog):
        class BrokenStore:
            def save(self, state):
                raise OSError("disk full")

            def load(self):
                return None

        engine.store = BrokenStore()
        assert engine.persist() is False
        assert "disk full" in caplog.text
