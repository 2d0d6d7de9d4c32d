from pathlib import Path

import pytest

from mpca.adapters import LocalStorage, MemoryStorage
from mpca.errors import (
    FeatureAlreadyExists,
    InvalidFeatureSlug,
    StateMissing,
    StoragePermissionDenied,
    StorageWriteError,
)
from mpca.state import STATE_FILE, Phase, RunStateStore


SPECS = Path("/repo/.mpca/specs")


@pytest.fixture
def store() -> RunStateStore:
    return RunStateStore(MemoryStorage(), SPECS)


@pytest.mark.parametrize("slug", ["add-caching", "abc", "feature-42"])
def test_create_then_load_is_fresh(store, slug):
    store.create(slug)
    state = store.load(slug)
    assert state.feature_slug == slug
    assert state.phase == Phase.INIT
    assert state.step == 0
    assert state.turns == 0
    assert state.cost_usd == 0.0


def test_record_lives_beside_the_spec_docs(store):
    store.create("add-caching")
    assert store.path_for("add-caching") == SPECS / "add-caching" / STATE_FILE
    assert store.exists("add-caching")


def test_create_never_overwrites(store):
    state = store.create("add-caching")
    state.turns = 7
    store.save(state)

    with pytest.raises(FeatureAlreadyExists):
        store.create("add-caching")
    assert store.load("add-caching").turns == 7


def test_missing_record(store):
    with pytest.raises(StateMissing):
        store.load("add-caching")


def test_rejected_slug_touches_nothing():
    storage = MemoryStorage()
    store = RunStateStore(storage, SPECS)

    with pytest.raises(InvalidFeatureSlug):
        store.create("Bad Slug")
    with pytest.raises(InvalidFeatureSlug):
        store.load("../escape")
    assert storage.calls == []


def test_save_refreshes_updated_at(store):
    state = store.create("add-caching")
    before = state.updated_at
    state.step = 2
    store.save(state)
    loaded = store.load("add-caching")
    assert loaded.step == 2
    assert loaded.updated_at >= before


def test_failed_save_keeps_previous_record(store):
    state = store.create("add-caching")
    state.step = 1
    store.save(state)

    store.storage.fail_on("write", store.path_for("add-caching"), StorageWriteError("state.toml", "disk full"))
    state.step = 2
    with pytest.raises(StorageWriteError):
        store.save(state)

    assert store.load("add-caching").step == 1


def test_archive_and_reset(store):
    store.create("add-caching")
    path = store.path_for("add-caching")
    store.storage.files[path] = "garbage ["

    archived = store.archive("add-caching")
    assert archived.parent == path.parent
    assert archived.name.startswith(f"{STATE_FILE}.corrupt-")
    assert store.storage.files[archived] == "garbage ["

    fresh = store.reset("add-caching")
    assert fresh.phase == Phase.INIT
    assert store.load("add-caching") == fresh


def test_list_features(store):
    assert store.list_features() == []
    store.create("beta-feature")
    store.create("add-caching")
    store.storage.mkdir_all(SPECS / "not-a-feature")
    assert store.list_features() == ["add-caching", "beta-feature"]


# ---------------------------------------------------------------------------
# On disk
# ---------------------------------------------------------------------------

def test_local_round_trip(tmp_path):
    store = RunStateStore(LocalStorage(tmp_path), tmp_path / ".mpca" / "specs")
    state = store.create("add-caching")
    state.begin(Phase.PLAN)
    state.record_exchange(0.12)
    state.advance()
    store.save(state)

    text = (tmp_path / ".mpca" / "specs" / "add-caching" / "state.toml").read_text()
    assert 'phase = "Init"' in text
    assert 'target_phase = "Plan"' in text

    loaded = store.load("add-caching")
    assert loaded.turns == 1
    assert loaded.cost_usd == pytest.approx(0.12)
    assert loaded.step == 1

    # No temp files left behind
    assert sorted(p.name for p in (tmp_path / ".mpca" / "specs" / "add-caching").iterdir()) == ["state.toml"]


def test_local_permission_denied_is_distinct(tmp_path, monkeypatch):
    store = RunStateStore(LocalStorage(tmp_path), tmp_path / "specs")
    state = store.create("add-caching")

    def _denied(*args, **kwargs):
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr("mpca.adapters.storage.os.replace", _denied)
    with pytest.raises(StoragePermissionDenied) as exc:
        store.save(state)
    assert exc.value.kind == "permission_denied"
