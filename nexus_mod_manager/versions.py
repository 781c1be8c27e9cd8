"""Grouping of installed mod versions and update status."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping

from .selectors import mod_state_for_profile, mods_for_game
from .state import ModRecord, NewestFileKind, ProfileModState, StateStore

MAIN_CATEGORY = "MAIN"


class UpdateStatus(str, Enum):
    NONE = "none"
    BLOCKED = "blocked"  # bugged, no fix available: should be disabled
    BUGGY_UPDATE_AVAILABLE = "buggy-update-available"
    UPDATE_AVAILABLE = "update-available"
    MANUAL_UPDATE_REQUIRED = "manual-update-required"


@dataclass(frozen=True)
class VersionGroup:
    """Installed records sharing one Nexus mod id."""

    external_mod_id: int | None
    members: tuple[ModRecord, ...]
    active: ModRecord
    enabled_id: str | None
    status: UpdateStatus

    @property
    def active_id(self) -> str:
        return self.active.id

    def versions(self) -> list[tuple[str, str | None]]:
        """(mod id, version) pairs in the order the records were installed."""
        return [(member.id, member.version) for member in self.members]


def update_status(record: ModRecord) -> UpdateStatus:
    """Classify how a record relates to the newest file known for it."""
    if record.is_primary or record.file_category == MAIN_CATEGORY:
        return UpdateStatus.NONE

    newest = record.newest_file
    if record.bug_message:
        if not newest.is_known:
            return UpdateStatus.BLOCKED
        return UpdateStatus.BUGGY_UPDATE_AVAILABLE
    if newest.kind is NewestFileKind.KNOWN and newest.file_id != record.file_id:
        return UpdateStatus.UPDATE_AVAILABLE
    if (
        newest.kind is NewestFileKind.UNIDENTIFIED
        and record.file_id is not None
        and record.version is not None
    ):
        return UpdateStatus.MANUAL_UPDATE_REQUIRED
    return UpdateStatus.NONE


def _is_enabled(mod_state: Mapping[str, Any], mod_id: str) -> bool:
    return ProfileModState.from_dict(mod_state.get(mod_id)).enabled


def _as_list(all_mods: Iterable[ModRecord] | Mapping[str, ModRecord]) -> list[ModRecord]:
    if isinstance(all_mods, Mapping):
        return list(all_mods.values())
    return list(all_mods)


def resolve_group(
    all_mods: Iterable[ModRecord] | Mapping[str, ModRecord],
    mod_state: Mapping[str, Any],
    subject_id: str,
) -> VersionGroup:
    """
    Work out which version of a mod is active for a profile.

    The group is every record with the subject's Nexus mod id (just the
    subject if it has none). The enabled member is the active version;
    with nothing enabled the subject itself is. Raises KeyError if
    subject_id is not among all_mods.
    """
    records = _as_list(all_mods)
    subject = next((r for r in records if r.id == subject_id), None)
    if subject is None:
        raise KeyError(subject_id)

    external_id = subject.external_mod_id
    if external_id is None:
        members = [subject]
    else:
        members = [r for r in records if r.external_mod_id == external_id]

    return _build_group(external_id, members, subject, mod_state)


def _build_group(
    external_id: int | None,
    members: list[ModRecord],
    subject: ModRecord,
    mod_state: Mapping[str, Any],
) -> VersionGroup:
    enabled = next((r for r in members if _is_enabled(mod_state, r.id)), None)
    active = enabled or subject
    return VersionGroup(
        external_mod_id=external_id,
        members=tuple(members),
        active=active,
        enabled_id=enabled.id if enabled else None,
        status=update_status(active),
    )


@dataclass(frozen=True)
class _Snapshot:
    mods: dict[str, ModRecord]
    mod_state: dict[str, ProfileModState]
    partitions: dict[int, list[ModRecord]]


class VersionIndex:
    """
    Cached version groups of one game and profile.

    The cache is rebuilt from the store after any change to the game's
    mods or the profile's mod state. Store subscribers run on the thread
    that made the change, so readers only ever use a snapshot they hold.
    """

    def __init__(self, store: StateStore, game_id: str, profile_id: str):
        self.store = store
        self.game_id = game_id
        self.profile_id = profile_id
        self._snapshot: _Snapshot | None = None
        self._generation = 0
        self._unsubscribe = [
            store.subscribe(["persistent", "mods", game_id], self._invalidate),
            store.subscribe(["persistent", "profiles", profile_id, "modState"], self._invalidate),
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    def _invalidate(self, old: Any = None, new: Any = None) -> None:
        self._generation += 1
        self._snapshot = None

    def _load(self) -> _Snapshot:
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        generation = self._generation
        mods = mods_for_game(self.store, self.game_id)
        partitions: dict[int, list[ModRecord]] = {}
        for record in mods.values():
            if record.external_mod_id is not None:
                partitions.setdefault(record.external_mod_id, []).append(record)
        snapshot = _Snapshot(mods, mod_state_for_profile(self.store, self.profile_id), partitions)
        # a change while loading leaves the cache empty for the next reader
        if generation == self._generation:
            self._snapshot = snapshot
        return snapshot

    @staticmethod
    def _group(snapshot: _Snapshot, subject: ModRecord) -> VersionGroup:
        external_id = subject.external_mod_id
        members = snapshot.partitions[external_id] if external_id is not None else [subject]
        return _build_group(external_id, members, subject, snapshot.mod_state)

    def resolve(self, subject_id: str) -> VersionGroup:
        snapshot = self._load()
        return self._group(snapshot, snapshot.mods[subject_id])

    def groups(self) -> list[VersionGroup]:
        """One group per Nexus mod id (or per record without one)."""
        snapshot = self._load()
        groups = []
        seen: set[int] = set()
        for record in snapshot.mods.values():
            external_id = record.external_mod_id
            if external_id is not None:
                if external_id in seen:
                    continue
                seen.add(external_id)
            groups.append(self._group(snapshot, record))
        return groups
