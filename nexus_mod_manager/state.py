"""Persisted state: mod records, profile mod state and the key-path store."""

import copy
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

logger = logging.getLogger(__name__)

STATE_FILENAME = "nexus-mm-state.json"

# Top-level branches that only live for the lifetime of the process
VOLATILE_ROOTS = {"session"}

KeyPath = Sequence[str]
Subscriber = Callable[[Any, Any], None]

# Attribute keys with a typed field on ModRecord
_TYPED_ATTRIBUTES = {
    "modId",
    "fileId",
    "version",
    "newestFileId",
    "newestVersion",
    "bugMessage",
    "fileCategory",
    "isPrimary",
    "customFileName",
    "logicalFileName",
    "name",
    "installTime",
    "lastUpdateTime",
}


class StateError(Exception):
    """Raised when state file operations fail."""

    pass


def _to_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _to_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


class NewestFileKind(Enum):
    UNKNOWN = "unknown"
    KNOWN = "known"
    UNIDENTIFIED = "unidentified"


@dataclass(frozen=True)
class NewestFile:
    """
    What is known about the newest file of a mod.

    Persisted as the raw ``newestFileId`` attribute: absent/None means no
    data, 0 means a newer file exists but could not be identified, any
    positive number is the id of the newest file.
    """

    kind: NewestFileKind = NewestFileKind.UNKNOWN
    file_id: int | None = None

    @classmethod
    def unknown(cls) -> "NewestFile":
        return cls(NewestFileKind.UNKNOWN)

    @classmethod
    def unidentified(cls) -> "NewestFile":
        return cls(NewestFileKind.UNIDENTIFIED)

    @classmethod
    def known(cls, file_id: int) -> "NewestFile":
        if file_id <= 0:
            raise ValueError(f"Newest file id must be positive, got {file_id}")
        return cls(NewestFileKind.KNOWN, file_id)

    @classmethod
    def from_raw(cls, value: Any) -> "NewestFile":
        file_id = _to_int(value)
        if file_id is None or file_id < 0:
            return cls.unknown()
        if file_id == 0:
            return cls.unidentified()
        return cls.known(file_id)

    def to_raw(self) -> int | None:
        if self.kind is NewestFileKind.KNOWN:
            return self.file_id
        if self.kind is NewestFileKind.UNIDENTIFIED:
            return 0
        return None

    @property
    def is_known(self) -> bool:
        return self.kind is not NewestFileKind.UNKNOWN


@dataclass
class ModRecord:
    """An installed mod of one game."""

    id: str
    installation_path: str = ""
    archive_id: str | None = None
    state: str = "installed"
    mod_id: int | None = None
    file_id: int | None = None
    version: str | None = None
    newest_file: NewestFile = field(default_factory=NewestFile.unknown)
    newest_version: str | None = None
    bug_message: str | None = None
    file_category: str | None = None
    is_primary: bool = False
    custom_file_name: str | None = None
    logical_file_name: str | None = None
    name: str | None = None
    install_time: str | None = None
    last_update_time: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.custom_file_name or self.logical_file_name or self.name or ""

    @property
    def external_mod_id(self) -> int | None:
        """Nexus mod id, None when unknown or zero."""
        return self.mod_id or None

    def attributes(self) -> dict[str, Any]:
        attrs = dict(self.extra)
        attrs.update(
            {
                "modId": self.mod_id,
                "fileId": self.file_id,
                "version": self.version,
                "newestFileId": self.newest_file.to_raw(),
                "newestVersion": self.newest_version,
                "bugMessage": self.bug_message,
                "fileCategory": self.file_category,
                "isPrimary": self.is_primary,
                "customFileName": self.custom_file_name,
                "logicalFileName": self.logical_file_name,
                "name": self.name,
                "installTime": self.install_time,
                "lastUpdateTime": self.last_update_time,
            }
        )
        return attrs

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "installationPath": self.installation_path,
            "archiveId": self.archive_id,
            "attributes": self.attributes(),
        }

    @classmethod
    def from_dict(cls, mod_id: str, data: dict[str, Any]) -> "ModRecord":
        attrs = data.get("attributes") or {}
        return cls(
            id=mod_id,
            installation_path=data.get("installationPath", "") or "",
            archive_id=data.get("archiveId"),
            state=data.get("state", "installed"),
            mod_id=_to_int(attrs.get("modId")),
            file_id=_to_int(attrs.get("fileId")),
            version=_to_str(attrs.get("version")),
            newest_file=NewestFile.from_raw(attrs.get("newestFileId")),
            newest_version=_to_str(attrs.get("newestVersion")),
            bug_message=_to_str(attrs.get("bugMessage")) or None,
            file_category=_to_str(attrs.get("fileCategory")),
            is_primary=bool(attrs.get("isPrimary", False)),
            custom_file_name=_to_str(attrs.get("customFileName")),
            logical_file_name=_to_str(attrs.get("logicalFileName")),
            name=_to_str(attrs.get("name")),
            install_time=_to_str(attrs.get("installTime")),
            last_update_time=_to_str(attrs.get("lastUpdateTime")),
            extra={k: v for k, v in attrs.items() if k not in _TYPED_ATTRIBUTES},
        )


@dataclass(frozen=True)
class ProfileModState:
    enabled: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> "ProfileModState":
        if isinstance(data, ProfileModState):
            return data
        if isinstance(data, dict):
            return cls(enabled=bool(data.get("enabled", False)))
        return cls()


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    parent_id: str | None = None
    order: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "parentCategory": self.parent_id, "order": self.order}

    @classmethod
    def from_dict(cls, category_id: str, data: dict[str, Any]) -> "Category":
        parent = data.get("parentCategory")
        return cls(
            id=str(category_id),
            name=data.get("name", ""),
            parent_id=str(parent) if parent not in (None, False) else None,
            order=data.get("order", 0),
        )


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """
    JSON backed key-path store.

    Values are addressed by key paths such as
    ``["persistent", "mods", "skyrimspecialedition", "my-mod"]``. Every
    mutation is a single call that is applied and saved under a lock.
    The ``session`` branch is kept in memory only.
    """

    def __init__(self, home: Path):
        self.home = Path(home)
        self.state_file = self.home / STATE_FILENAME
        self._data: dict[str, Any] = {}
        self._lock = threading.RLock()
        self._subscribers: list[tuple[tuple[str, ...], Subscriber]] = []

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_file.exists()

    def load(self) -> None:
        """Load state from file. A missing file means an empty state."""
        if not self.state_file.exists():
            self._data = {}
            return

        try:
            with open(self.state_file) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid state file: {e}")
        except OSError as e:
            raise StateError(f"Cannot read state file {self.state_file}: {e}")

        if not isinstance(data, dict):
            raise StateError(f"Invalid state file: expected an object in {self.state_file}")

        with self._lock:
            self._data = {k: v for k, v in data.items() if k not in VOLATILE_ROOTS}

    def save(self) -> None:
        """Save state to file."""
        with self._lock:
            data = {k: v for k, v in self._data.items() if k not in VOLATILE_ROOTS}
            try:
                self.home.mkdir(parents=True, exist_ok=True)
                tmp_file = self.state_file.with_suffix(".tmp")
                with open(tmp_file, "w") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_file, self.state_file)
            except OSError as e:
                raise StateError(f"Cannot write state file {self.state_file}: {e}")

    def get(self, path: KeyPath, default: Any = None) -> Any:
        """Return a copy of the value at path, or default."""
        with self._lock:
            node: Any = self._data
            for key in path:
                if not isinstance(node, dict) or key not in node:
                    return default
                node = node[key]
            return copy.deepcopy(node)

    def set(self, path: KeyPath, value: Any) -> None:
        if not path:
            raise ValueError("Cannot replace the root of the state")
        with self._lock:
            old = self.get(path)
            node = self._data
            for key in path[:-1]:
                child = node.get(key)
                if not isinstance(child, dict):
                    child = {}
                    node[key] = child
                node = child
            node[path[-1]] = copy.deepcopy(value)
            self._persist(path)
        self._notify(path, old, value)

    def update(self, path: KeyPath, changes: dict[str, Any]) -> bool:
        """
        Merge changes into the dict at path.

        Only the last key of path may be missing. When its parent does not
        exist nothing is written and False is returned.
        """
        if not path:
            raise ValueError("Cannot update the root of the state")
        with self._lock:
            parent: Any = self._data
            for key in path[:-1]:
                if not isinstance(parent, dict) or key not in parent:
                    return False
                parent = parent[key]
            if not isinstance(parent, dict):
                return False
            old = self.get(path)
            node = parent.get(path[-1])
            if not isinstance(node, dict):
                node = {}
                parent[path[-1]] = node
            node.update(copy.deepcopy(changes))
            new = copy.deepcopy(node)
            self._persist(path)
        self._notify(path, old, new)
        return True

    def delete(self, path: KeyPath) -> None:
        if not path:
            raise ValueError("Cannot delete the root of the state")
        with self._lock:
            old = self.get(path)
            node: Any = self._data
            for key in path[:-1]:
                if not isinstance(node, dict) or key not in node:
                    return
                node = node[key]
            if not isinstance(node, dict) or path[-1] not in node:
                return
            del node[path[-1]]
            self._persist(path)
        self._notify(path, old, None)

    def claim(self, path: KeyPath) -> bool:
        """Set a boolean flag at path. Returns False if it was already set."""
        with self._lock:
            if self.get(path, False):
                return False
            self.set(path, True)
            return True

    def subscribe(self, path: KeyPath, callback: Subscriber) -> Callable[[], None]:
        """
        Call callback(old, new) whenever the value at path, one of its
        parents or one of its children changes. old and new are the values
        at the changed path, or at the watched path when a parent was
        replaced. Returns an unsubscribe function.
        """
        entry = (tuple(path), callback)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def _persist(self, path: KeyPath) -> None:
        if path[0] not in VOLATILE_ROOTS:
            self.save()

    def _notify(self, path: KeyPath, old: Any, new: Any) -> None:
        changed = tuple(path)
        with self._lock:
            subscribers = list(self._subscribers)
        for sub_path, callback in subscribers:
            overlap = min(len(sub_path), len(changed))
            if sub_path[:overlap] != changed[:overlap]:
                continue
            try:
                if len(sub_path) > len(changed):
                    rest = sub_path[len(changed):]
                    callback(_dig(old, rest), _dig(new, rest))
                else:
                    callback(old, new)
            except Exception:
                logger.exception("State subscriber for %s failed", "/".join(sub_path))


def _dig(value: Any, path: Iterable[str]) -> Any:
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value
