"""Check installed mods against the newest files on Nexus."""

import asyncio
import logging
from dataclasses import dataclass, field

from .api import ModFiles, NexusAPI, NotFoundError
from .state import ModRecord, NewestFile, StateStore, now_iso

logger = logging.getLogger(__name__)

_MAX_CONCURRENT = 4
UPDATE_PERIOD = "1m"

# File categories Nexus moves superseded files to
_SUPERSEDED_CATEGORIES = {"OLD_VERSION", "ARCHIVED", "DELETED"}


@dataclass
class UpdateCheckSummary:
    checked: list[str] = field(default_factory=list)
    updates: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


def find_newest_file(mod_files: ModFiles, file_id: int) -> NewestFile:
    """
    Follow the file update chain starting at file_id.

    Returns the last file of the chain, the file itself when nothing
    replaced it, or UNIDENTIFIED when the file was superseded without a
    recorded successor.
    """
    successors: dict[int, tuple[int, int]] = {}
    for update in mod_files.file_updates:
        stamp = update.uploaded_timestamp or 0
        known = successors.get(update.old_file_id)
        if known is None or stamp >= known[1]:
            successors[update.old_file_id] = (update.new_file_id, stamp)

    current = file_id
    seen = {current}
    while current in successors:
        nxt = successors[current][0]
        if nxt in seen or nxt <= 0:
            break
        seen.add(nxt)
        current = nxt

    if current != file_id:
        return NewestFile.known(current)

    info = mod_files.get(file_id)
    if info is None or (info.category_name or "").upper() in _SUPERSEDED_CATEGORIES:
        return NewestFile.unidentified()
    return NewestFile.known(file_id)


class UpdateChecker:
    """Stores newestFileId / newestVersion on the mods of a game."""

    def __init__(self, api: NexusAPI, store: StateStore):
        self.api = api
        self.store = store

    async def check(
        self, game_id: str, mods: dict[str, ModRecord], full: bool = False
    ) -> UpdateCheckSummary:
        """
        Check mods for updates.

        The optimized check only looks at mods Nexus reports as updated
        within the last month plus mods never checked before; the full
        check looks at all of them. Missing mods are reported per mod,
        any other API failure aborts the check after results already
        fetched have been stored.
        """
        summary = UpdateCheckSummary()
        by_nexus_id: dict[int, list[ModRecord]] = {}
        for mod_id, record in mods.items():
            if record.external_mod_id is None or not record.file_id:
                summary.skipped.append(mod_id)
                continue
            by_nexus_id.setdefault(record.external_mod_id, []).append(record)

        if not full and by_nexus_id:
            recently_updated = await self.api.get_updated_mods(UPDATE_PERIOD, game_id)
            for nexus_id in list(by_nexus_id):
                records = by_nexus_id[nexus_id]
                if nexus_id in recently_updated:
                    continue
                if any(r.last_update_time is None for r in records):
                    continue
                summary.skipped.extend(r.id for r in records)
                del by_nexus_id[nexus_id]

        semaphore = asyncio.Semaphore(_MAX_CONCURRENT)

        async def fetch(nexus_id: int) -> ModFiles:
            async with semaphore:
                return await self.api.get_mod_files(nexus_id, game_id)

        nexus_ids = list(by_nexus_id)
        results = await asyncio.gather(*(fetch(n) for n in nexus_ids), return_exceptions=True)

        fatal: BaseException | None = None
        for nexus_id, result in zip(nexus_ids, results):
            records = by_nexus_id[nexus_id]
            if isinstance(result, NotFoundError):
                logger.warning("Mod %s not found on Nexus: %s", nexus_id, result)
                for record in records:
                    summary.errors[record.id] = str(result)
                continue
            if isinstance(result, BaseException):
                if fatal is None:
                    fatal = result
                continue
            for record in records:
                newest = find_newest_file(result, record.file_id)
                if not self._store_result(game_id, record, newest, result):
                    logger.info("Mod %s was removed during the update check", record.id)
                    summary.skipped.append(record.id)
                    continue
                summary.checked.append(record.id)
                if newest.to_raw() != record.file_id:
                    summary.updates.append(record.id)

        if fatal is not None:
            logger.warning("Update check for %s aborted: %s", game_id, fatal)
            raise fatal
        return summary

    def _store_result(
        self, game_id: str, record: ModRecord, newest: NewestFile, mod_files: ModFiles
    ) -> bool:
        """Returns False when the record no longer exists."""
        changes = {"newestFileId": newest.to_raw(), "lastUpdateTime": now_iso()}
        newest_info = mod_files.get(newest.file_id) if newest.file_id else None
        if newest_info is not None:
            changes["newestVersion"] = newest_info.version
        attributes = ["persistent", "mods", game_id, record.id, "attributes"]
        return self.store.update(attributes, changes)
