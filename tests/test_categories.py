import asyncio

import pytest

from nexus_mod_manager.api import NetworkError
from nexus_mod_manager.categories import CategorySync, SyncMode, load_categories, merge_categories
from nexus_mod_manager.dialogs import PresetConfirmer
from nexus_mod_manager.events import RETRIEVE_CATEGORIES
from nexus_mod_manager.state import Category

REMOTE = {
    "1": Category("1", "Skyrim"),
    "5": Category("5", "Armour", parent_id="1", order=1),
}


@pytest.fixture
def local_categories(store, game):
    store.set(
        ["persistent", "categories", game],
        {
            "1": {"name": "My Skyrim", "parentCategory": None, "order": 0},
            "99": {"name": "Custom", "parentCategory": None, "order": 5},
        },
    )


def _sync(store, api, events, confirm=True):
    confirmer = PresetConfirmer(confirm)
    return CategorySync(store, api, confirmer, events.bus), confirmer


def test_merge_keeps_local_entries():
    local = {"1": Category("1", "Renamed"), "99": Category("99", "Custom")}
    merged = merge_categories(local, REMOTE)
    assert merged["1"].name == "Renamed"
    assert merged["5"].name == "Armour"
    assert "99" in merged


class TestCategorySync:
    def test_incremental_merges_without_asking(
        self, store, game, fake_api, events, local_categories
    ):
        fake_api.categories = REMOTE
        sync, confirmer = _sync(store, fake_api, events)

        result = asyncio.run(sync.sync(game, SyncMode.INCREMENTAL))

        assert result.success
        assert confirmer.shown == []
        assert result.added == 1
        categories = load_categories(store, game)
        assert categories["1"].name == "My Skyrim"
        assert categories["5"].parent_id == "1"
        assert "99" in categories
        [(game_id, tree, is_update)] = events.of(RETRIEVE_CATEGORIES)
        assert (game_id, is_update) == (game, True)
        assert set(tree) == {"1", "5", "99"}

    def test_full_replaces_after_confirmation(
        self, store, game, fake_api, events, local_categories
    ):
        fake_api.categories = REMOTE
        sync, confirmer = _sync(store, fake_api, events)

        result = asyncio.run(sync.sync(game, SyncMode.FULL))

        assert result.success
        assert confirmer.shown == ["Retrieve Categories"]
        assert set(load_categories(store, game)) == {"1", "5"}
        assert load_categories(store, game)["1"].name == "Skyrim"
        assert ("get_category_list", "skyrimspecialedition") in fake_api.calls

    def test_full_cancelled(self, store, game, fake_api, events, local_categories):
        fake_api.categories = REMOTE
        sync, _confirmer = _sync(store, fake_api, events, confirm=False)

        result = asyncio.run(sync.sync(game, SyncMode.FULL))

        assert result.cancelled
        assert fake_api.calls == []
        assert set(load_categories(store, game)) == {"1", "99"}
        assert events.received == []

    def test_fetch_failure_leaves_state(self, store, game, fake_api, events, local_categories):
        fake_api.error = NetworkError("offline")
        sync, _confirmer = _sync(store, fake_api, events)

        result = asyncio.run(sync.sync(game, SyncMode.FULL))

        assert not result.success
        assert set(load_categories(store, game)) == {"1", "99"}
        assert events.of(RETRIEVE_CATEGORIES) == []
        assert events.notifications[-1].type == "error"
