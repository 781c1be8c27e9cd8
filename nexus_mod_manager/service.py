"""Service layer - enabling, removing and updating mods."""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .api import FileInfo, NexusAPI, NexusAPIError, NotFoundError
from .deploy import DeploymentEngine, DeploymentError
from .dialogs import Checkbox, Confirmer
from .events import (
    CHECK_MODS_VERSION_COMPLETE,
    DISABLE_DEPENDENTS,
    MODS_ENABLED,
    MODS_REMOVED,
    REMOVE_DOWNLOAD,
    START_DOWNLOAD,
    EventBus,
)
from .notifications import (
    notification_for_activation,
    notification_for_download,
    notification_for_removal,
    notification_for_update_check,
)
from .nxm import DeepLink, parse_nxm_url
from .selectors import (
    active_game_id,
    active_profile_id,
    install_path_for_game,
    is_enabled,
    mods_for_game,
)
from .state import ModRecord, StateStore
from .updates import UpdateChecker, UpdateCheckSummary
from .versions import UpdateStatus, VersionGroup, VersionIndex

logger = logging.getLogger(__name__)

REMOVE_ACTION = "Remove"
CANCEL_ACTION = "Cancel"


class NoActiveGame(Exception):
    """Raised when an operation needs a game but none is selected."""

    pass


class UpdateCheckInProgress(Exception):
    """Raised when an update check for the same game is already running."""

    def __init__(self, game_id: str):
        self.game_id = game_id
        super().__init__(f"An update check for {game_id} is already running")


class FileSystemError(Exception):
    """Raised when the files of one mod could not be deleted."""

    def __init__(self, mod_id: str, path: Path | None, message: str):
        self.mod_id = mod_id
        self.path = path
        super().__init__(message)


class RemovalPhase(str, Enum):
    IDLE = "idle"
    CONFIRMING = "confirming"
    DEACTIVATING = "deactivating"
    APPLYING_DEPLOYMENT = "applying-deployment"
    CLEANING = "cleaning"
    DONE = "done"
    FAILED = "failed"


@dataclass
class EnableResult:
    mod_ids: list[str]
    enabled: bool
    changed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)


@dataclass
class SelectVersionResult:
    old_id: str
    new_id: str
    changed: bool


@dataclass
class RemoveResult:
    mod_ids: list[str]
    phase: RemovalPhase = RemovalPhase.IDLE
    remove_files: bool = False
    remove_archive: bool = False
    disable_dependents: bool = False
    removed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.phase == RemovalPhase.IDLE

    @property
    def success(self) -> bool:
        return self.phase == RemovalPhase.DONE


@dataclass
class UpdateCheckResult:
    game_id: str
    full: bool
    success: bool
    summary: UpdateCheckSummary | None = None
    error: str | None = None


@dataclass
class DownloadStartResult:
    link: DeepLink
    success: bool
    uris: list[str] = field(default_factory=list)
    file_info: FileInfo | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class ActivateResult:
    game_id: str
    success: bool
    error: str = ""
    errors: list[str] = field(default_factory=list)


@dataclass
class ModOverview:
    id: str
    name: str
    version: str
    enabled: bool
    external_mod_id: int | None
    active_id: str
    status: UpdateStatus
    versions: list[tuple[str, str | None]]


class ModManagerService:
    """
    Orchestrates mod state changes for the active game and profile.

    Reads and writes go through the store one key path at a time; the
    deployment engine is only called when files have to change on disk.
    """

    def __init__(
        self,
        store: StateStore,
        api: NexusAPI,
        deployer: DeploymentEngine,
        confirmer: Confirmer,
        events: EventBus | None = None,
        update_checker: UpdateChecker | None = None,
    ):
        self.store = store
        self.api = api
        self.deployer = deployer
        self.confirmer = confirmer
        self.events = events or EventBus()
        self.update_checker = update_checker or UpdateChecker(api, store)
        self._index: VersionIndex | None = None
        self._unsubscribe = [
            store.subscribe(["settings", "gameMode", "current"], self._on_game_changed),
            store.subscribe(["account", "nexus", "APIKey"], self._on_key_changed),
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        if self._index is not None:
            self._index.close()
            self._index = None

    @property
    def game_id(self) -> str:
        game_id = active_game_id(self.store)
        if not game_id:
            raise NoActiveGame("No game selected. Use 'nexus-mm set-game GAME' first.")
        return game_id

    @property
    def profile_id(self) -> str:
        return active_profile_id(self.store)

    # -- settings --

    def set_game(self, game_id: str) -> None:
        self.store.set(["settings", "gameMode", "current"], game_id)
        self.store.set(["persistent", "profiles", self.profile_id, "gameId"], game_id)

    def set_api_key(self, api_key: str) -> None:
        self.store.set(["account", "nexus", "APIKey"], api_key)

    def _on_game_changed(self, old: Any, new: Any) -> None:
        self.api.update_context(game_id=new or "")

    def _on_key_changed(self, old: Any, new: Any) -> None:
        self.api.update_context(api_key=new or "")

    # -- versions --

    def version_index(self) -> VersionIndex:
        game_id, profile_id = self.game_id, self.profile_id
        index = self._index
        if index is None or index.game_id != game_id or index.profile_id != profile_id:
            if index is not None:
                index.close()
            index = self._index = VersionIndex(self.store, game_id, profile_id)
        return index

    def resolve_version(self, mod_id: str) -> VersionGroup:
        return self.version_index().resolve(mod_id)

    def mod_overview(self) -> list[ModOverview]:
        """One row per installed mod of the active game."""
        index = self.version_index()
        rows = []
        for mod_id, record in mods_for_game(self.store, self.game_id).items():
            group = index.resolve(mod_id)
            rows.append(
                ModOverview(
                    id=mod_id,
                    name=record.display_name,
                    version=record.version or "",
                    enabled=is_enabled(self.store, self.profile_id, mod_id),
                    external_mod_id=record.external_mod_id,
                    active_id=group.active_id,
                    status=group.status,
                    versions=group.versions(),
                )
            )
        return rows

    # -- enable / disable --

    def set_enabled(self, mod_ids: list[str], enabled: bool) -> EnableResult:
        """
        Enable or disable mods in the active profile.

        Only mods whose state differs are touched. The mods-enabled event
        fires once for the whole batch, after all changes, even when
        nothing changed. Deployment is left to a later activate step.
        """
        profile_id = self.profile_id
        result = EnableResult(mod_ids=list(mod_ids), enabled=enabled)
        for mod_id in mod_ids:
            if self._set_mod_enabled(profile_id, mod_id, enabled):
                result.changed.append(mod_id)
            else:
                result.unchanged.append(mod_id)
        self.events.emit(MODS_ENABLED, list(mod_ids), enabled)
        return result

    def enable(self, mod_ids: list[str]) -> EnableResult:
        return self.set_enabled(mod_ids, True)

    def disable(self, mod_ids: list[str]) -> EnableResult:
        return self.set_enabled(mod_ids, False)

    def select_version(self, old_id: str, new_id: str) -> SelectVersionResult:
        """Switch the active version of a mod: disable old_id, enable new_id."""
        if old_id == new_id:
            return SelectVersionResult(old_id, new_id, changed=False)

        profile_id = self.profile_id
        self._set_mod_enabled(profile_id, old_id, False)
        self.events.emit(MODS_ENABLED, [old_id], False)
        self._set_mod_enabled(profile_id, new_id, True)
        self.events.emit(MODS_ENABLED, [new_id], True)
        return SelectVersionResult(old_id, new_id, changed=True)

    def set_mod_attribute(self, mod_id: str, key: str, value: Any) -> None:
        game_id = self.game_id
        if self.store.get(["persistent", "mods", game_id, mod_id]) is None:
            raise KeyError(mod_id)
        self.store.set(["persistent", "mods", game_id, mod_id, "attributes", key], value)

    # -- deployment --

    async def deploy(self) -> ActivateResult:
        """Bring the game directory in line with the enabled mods."""
        game_id = self.game_id
        try:
            await self.deployer.activate(game_id)
            result = ActivateResult(game_id, success=True)
        except DeploymentError as e:
            logger.warning("Deployment of %s failed: %s", game_id, e)
            result = ActivateResult(game_id, success=False, error=str(e), errors=e.errors)
        self.events.notify(notification_for_activation(result))
        return result

    # -- removal --

    async def remove(self, mod_ids: list[str]) -> RemoveResult:
        """
        Remove mods after asking the user.

        With "Remove Mod" chosen the mods are disabled, the deployment is
        reconciled and only then are the installation directories deleted.
        A failed deployment aborts before anything is deleted. Deletion
        failures are collected per mod; mods that were deleted lose their
        record, the others keep it.
        """
        game_id = self.game_id
        result = RemoveResult(mod_ids=list(mod_ids))

        result.phase = RemovalPhase.CONFIRMING
        dialog = await self.confirmer.show(
            "Confirm deletion",
            f"Do you really want to delete {len(mod_ids)} mod(s)?\n" + "\n".join(mod_ids),
            [
                Checkbox("mod", "Remove Mod", True),
                Checkbox("archive", "Remove Archive", False),
                Checkbox("dependents", "Disable Dependent", False),
            ],
            [CANCEL_ACTION, REMOVE_ACTION],
        )
        if dialog.action != REMOVE_ACTION:
            result.phase = RemovalPhase.IDLE
            return result

        result.remove_files = bool(dialog.input.get("mod"))
        result.remove_archive = bool(dialog.input.get("archive"))
        result.disable_dependents = bool(dialog.input.get("dependents"))

        mods = mods_for_game(self.store, game_id)
        targets = [mods[mod_id] for mod_id in mod_ids if mod_id in mods]
        for mod_id in mod_ids:
            if mod_id not in mods:
                result.failed[mod_id] = "Unknown mod"

        deleted: list[str] = []
        if result.remove_files:
            result.phase = RemovalPhase.DEACTIVATING
            profile_id = self.profile_id
            for record in targets:
                self._set_mod_enabled(profile_id, record.id, False)

            result.phase = RemovalPhase.APPLYING_DEPLOYMENT
            try:
                await self.deployer.activate(game_id)
            except Exception as e:
                if isinstance(e, DeploymentError):
                    logger.warning("Not removing mods, deployment failed: %s", e)
                else:
                    logger.exception("Not removing mods, deployment failed")
                result.phase = RemovalPhase.FAILED
                result.error = f"Deployment failed: {e}"
                self.events.notify(notification_for_removal(result))
                return result

            result.phase = RemovalPhase.CLEANING
            deleted = await self._delete_mod_dirs(game_id, targets, result.failed)

            for mod_id in deleted:
                self._remove_record(game_id, mod_id)
            result.removed = deleted
            if deleted:
                self.events.emit(MODS_REMOVED, list(deleted))

        if result.remove_archive:
            archive_owners = deleted if result.remove_files else [r.id for r in targets]
            for record in targets:
                if record.id in archive_owners and record.archive_id:
                    self.events.emit(REMOVE_DOWNLOAD, record.archive_id)

        if result.disable_dependents:
            self.events.emit(DISABLE_DEPENDENTS, [r.id for r in targets])

        result.phase = RemovalPhase.FAILED if result.failed else RemovalPhase.DONE
        self.events.notify(notification_for_removal(result))
        return result

    # -- updates --

    async def check_for_updates(self, full: bool = False) -> UpdateCheckResult:
        """
        Check all mods of the active game for newer files.

        Only one check per game runs at a time; a second request while one
        is running raises UpdateCheckInProgress. Exactly one notification
        reports the outcome.
        """
        game_id = self.game_id
        flag = ["session", "mods", "updatingMods", game_id]
        if not self.store.claim(flag):
            raise UpdateCheckInProgress(game_id)

        try:
            mods = mods_for_game(self.store, game_id)
            summary = await self.update_checker.check(game_id, mods, full=full)
            result = UpdateCheckResult(game_id, full, success=True, summary=summary)
        except Exception as e:
            logger.exception("Update check for %s failed", game_id)
            result = UpdateCheckResult(game_id, full, success=False, error=str(e))
        finally:
            self.store.set(flag, False)

        self.events.emit(CHECK_MODS_VERSION_COMPLETE, game_id, result)
        self.events.notify(notification_for_update_check(result))
        return result

    def update_running(self, game_id: str | None = None) -> bool:
        game_id = game_id or self.game_id
        return bool(self.store.get(["session", "mods", "updatingMods", game_id], False))

    # -- downloads --

    async def start_download(self, nxm_url: str) -> DownloadStartResult:
        """
        Resolve an nxm:// link and hand the download locations to the
        download manager through the start-download event.

        A malformed link raises MalformedLinkError; API failures end in a
        "Download failed" notification.
        """
        link = parse_nxm_url(nxm_url)
        game_id = link.nexus_game_id
        file_info: FileInfo | None = None

        try:
            file_info = await self.api.get_file_info(link.mod_id, link.file_id, game_id)
            started = DownloadStartResult(link, success=True, file_info=file_info)
            self.events.notify(notification_for_download(started))
            uris = await self._download_uris(link)
        except NexusAPIError as e:
            logger.warning("Failed to get mod info for %s: %s", link.raw, e)
            result = DownloadStartResult(link, success=False, file_info=file_info, error=str(e))
            self.events.notify(notification_for_download(result))
            return result

        if not uris:
            logger.warning("No download locations for %s", link.raw)
            result = DownloadStartResult(
                link, success=False, file_info=file_info, error="No download locations (yet)"
            )
            self.events.notify(notification_for_download(result))
            return result

        logger.debug("Got download urls %s", uris)
        meta = {
            "game": link.game_id.lower(),
            "nexus": {
                "ids": {"gameId": game_id, "modId": link.mod_id, "fileId": link.file_id},
                "fileInfo": file_info.to_dict(),
            },
        }
        self.events.emit(START_DOWNLOAD, list(uris), meta)
        return DownloadStartResult(link, success=True, uris=uris, file_info=file_info, meta=meta)

    async def resolve_download_uris(self, nxm_url: str) -> list[str]:
        """Download locations of an nxm:// link, for use as a protocol handler."""
        return await self._download_uris(parse_nxm_url(nxm_url))

    # -- internal helpers --

    async def _download_uris(self, link: DeepLink) -> list[str]:
        try:
            uris = await self.api.get_download_uris(
                link.mod_id, link.file_id, link.nexus_game_id, key=link.key, expires=link.expires
            )
        except NotFoundError:
            return []
        return [u.uri for u in uris]

    def _set_mod_enabled(self, profile_id: str, mod_id: str, enabled: bool) -> bool:
        """Returns whether the state changed."""
        if is_enabled(self.store, profile_id, mod_id) == enabled:
            return False
        self.store.set(
            ["persistent", "profiles", profile_id, "modState", mod_id, "enabled"], enabled
        )
        game_id = active_game_id(self.store)
        if game_id:
            self.store.set(["persistent", "deployment", "needToDeploy", game_id], True)
        return True

    async def _delete_mod_dirs(
        self, game_id: str, targets: list[ModRecord], failed: dict[str, str]
    ) -> list[str]:
        """Delete installation directories concurrently. Returns ids deleted."""
        install_dir = install_path_for_game(self.store, game_id)
        results = await asyncio.gather(
            *(self._delete_mod_dir(install_dir, record) for record in targets),
            return_exceptions=True,
        )
        deleted = []
        for record, outcome in zip(targets, results):
            if isinstance(outcome, BaseException):
                logger.warning("Failed to remove %s: %s", record.id, outcome)
                failed[record.id] = str(outcome)
            else:
                deleted.append(record.id)
        return deleted

    async def _delete_mod_dir(self, install_dir: Path, record: ModRecord) -> None:
        if not record.installation_path:
            return
        path = install_dir / record.installation_path
        resolved, root = path.resolve(), install_dir.resolve()
        if resolved == root or not resolved.is_relative_to(root):
            raise FileSystemError(record.id, path, f"Refusing to delete {path}")
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise FileSystemError(record.id, path, f"Failed to delete {path}: {e}")

    def _remove_record(self, game_id: str, mod_id: str) -> None:
        self.store.delete(["persistent", "mods", game_id, mod_id])
        profiles = self.store.get(["persistent", "profiles"], {}) or {}
        for profile_id, profile in profiles.items():
            if profile.get("gameId") not in (None, game_id):
                continue
            if mod_id in (profile.get("modState") or {}):
                self.store.delete(["persistent", "profiles", profile_id, "modState", mod_id])
