"""Retrieve the Nexus category tree of a game."""

import logging
from dataclasses import dataclass
from enum import Enum

from .api import NexusAPI, NexusAPIError
from .dialogs import Confirmer
from .events import RETRIEVE_CATEGORIES, EventBus
from .notifications import notification_for_category_sync
from .nxm import normalize_game_id
from .state import Category, StateStore

logger = logging.getLogger(__name__)


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass
class CategorySyncResult:
    game_id: str
    mode: SyncMode
    cancelled: bool = False
    count: int = 0
    added: int = 0
    error: str | None = None

    @property
    def success(self) -> bool:
        return not self.cancelled and self.error is None


def load_categories(store: StateStore, game_id: str) -> dict[str, Category]:
    raw = store.get(["persistent", "categories", game_id], {}) or {}
    return {cat_id: Category.from_dict(cat_id, data) for cat_id, data in raw.items()}


def merge_categories(
    local: dict[str, Category], remote: dict[str, Category]
) -> dict[str, Category]:
    """Add remote categories missing locally; local entries are kept as they are."""
    merged = dict(local)
    for cat_id, category in remote.items():
        merged.setdefault(cat_id, category)
    return merged


class CategorySync:
    def __init__(
        self,
        store: StateStore,
        api: NexusAPI,
        confirmer: Confirmer,
        events: EventBus | None = None,
    ):
        self.store = store
        self.api = api
        self.confirmer = confirmer
        self.events = events or EventBus()

    async def sync(self, game_id: str, mode: SyncMode) -> CategorySyncResult:
        """
        Fetch the category tree of game_id.

        FULL replaces the local tree and asks first since local changes are
        lost. INCREMENTAL merges without asking. Nothing changes locally if
        the fetch fails.
        """
        result = CategorySyncResult(game_id=game_id, mode=mode)
        if mode is SyncMode.FULL:
            dialog = await self.confirmer.show(
                "Retrieve Categories",
                "Clicking RETRIEVE you will lose all your changes",
                [],
                ["Cancel", "Retrieve"],
            )
            if dialog.action != "Retrieve":
                result.cancelled = True
                return result

        try:
            remote = await self.api.get_category_list(normalize_game_id(game_id))
        except NexusAPIError as e:
            logger.warning("Failed to retrieve categories for %s: %s", game_id, e)
            result.error = str(e)
            self.events.notify(notification_for_category_sync(result))
            return result

        if mode is SyncMode.FULL:
            tree = remote
            result.added = len(remote)
        else:
            local = load_categories(self.store, game_id)
            tree = merge_categories(local, remote)
            result.added = len(tree) - len(local)

        self.store.set(
            ["persistent", "categories", game_id],
            {cat_id: category.to_dict() for cat_id, category in tree.items()},
        )
        result.count = len(tree)
        self.events.emit(RETRIEVE_CATEGORIES, game_id, tree, mode is SyncMode.INCREMENTAL)
        self.events.notify(notification_for_category_sync(result))
        return result
