"""Derived reads over the state store."""

from pathlib import Path

from .state import ModRecord, ProfileModState, StateStore

DEFAULT_PROFILE = "default"


def active_game_id(store: StateStore) -> str:
    return store.get(["settings", "gameMode", "current"], "") or ""


def active_profile_id(store: StateStore) -> str:
    return store.get(["settings", "profiles", "activeProfileId"], "") or DEFAULT_PROFILE


def install_path_for_game(store: StateStore, game_id: str) -> Path:
    """
    Resolve the directory mods of a game are installed to.

    The configured pattern may contain a {game} placeholder.
    """
    if not game_id:
        raise ValueError("game_id can't be empty")
    pattern = store.get(["settings", "mods", "installPath", game_id])
    if not pattern:
        return store.home / "mods" / game_id
    return Path(str(pattern).replace("{game}", game_id)).expanduser()


def download_path(store: StateStore) -> Path:
    configured = store.get(["settings", "downloads", "path"])
    if configured:
        return Path(configured).expanduser()
    return store.home / "downloads"


def game_path(store: StateStore, game_id: str) -> Path | None:
    configured = store.get(["settings", "gameMode", "discovered", game_id, "path"])
    return Path(configured).expanduser() if configured else None


def activator_for_game(store: StateStore, game_id: str) -> str:
    return store.get(["settings", "mods", "activator", game_id], "symlink") or "symlink"


def need_to_deploy(store: StateStore, game_id: str) -> bool:
    return bool(store.get(["persistent", "deployment", "needToDeploy", game_id], False))


def mods_for_game(store: StateStore, game_id: str) -> dict[str, ModRecord]:
    raw = store.get(["persistent", "mods", game_id], {}) or {}
    return {mod_id: ModRecord.from_dict(mod_id, data) for mod_id, data in raw.items()}


def mod_state_for_profile(store: StateStore, profile_id: str) -> dict[str, ProfileModState]:
    raw = store.get(["persistent", "profiles", profile_id, "modState"], {}) or {}
    return {mod_id: ProfileModState.from_dict(data) for mod_id, data in raw.items()}


def is_enabled(store: StateStore, profile_id: str, mod_id: str) -> bool:
    return bool(
        store.get(["persistent", "profiles", profile_id, "modState", mod_id, "enabled"], False)
    )
