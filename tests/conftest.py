"""Shared fixtures: a store in tmp_path, a fake Nexus API and a fake deployer."""

import asyncio
from dataclasses import replace
from pathlib import Path

import pytest

from nexus_mod_manager.api import DownloadURI, FileInfo, ModFiles, NexusContext, NotFoundError
from nexus_mod_manager.deploy import DeploymentError
from nexus_mod_manager.dialogs import PresetConfirmer
from nexus_mod_manager.events import (
    CHECK_MODS_VERSION_COMPLETE,
    DISABLE_DEPENDENTS,
    MODS_ENABLED,
    MODS_REMOVED,
    NOTIFICATION,
    REMOVE_DOWNLOAD,
    RETRIEVE_CATEGORIES,
    START_DOWNLOAD,
    EventBus,
)
from nexus_mod_manager.selectors import install_path_for_game
from nexus_mod_manager.service import ModManagerService
from nexus_mod_manager.state import ModRecord, NewestFile, StateStore

GAME = "skyrimse"


class FakeAPI:
    """Stands in for NexusAPI; responses are set up per test."""

    def __init__(self):
        self._context = NexusContext(api_key="test-key")
        self.file_info: dict[tuple[int, int], FileInfo] = {}
        self.uris: dict[tuple[int, int], list[str]] = {}
        self.categories = {}
        self.mod_files: dict[int, ModFiles] = {}
        self.updated: set[int] = set()
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.calls: list[tuple] = []

    @property
    def context(self) -> NexusContext:
        return self._context

    def update_context(self, **changes) -> NexusContext:
        self._context = replace(self._context, **changes)
        return self._context

    def _call(self, *call):
        self.calls.append(call)
        if self.error is not None:
            raise self.error

    async def get_file_info(self, mod_id, file_id, game_id=None):
        self._call("get_file_info", mod_id, file_id, game_id)
        if (mod_id, file_id) not in self.file_info:
            raise NotFoundError(f"{mod_id}/{file_id}")
        return self.file_info[(mod_id, file_id)]

    async def get_download_uris(self, mod_id, file_id, game_id=None, key=None, expires=None):
        self._call("get_download_uris", mod_id, file_id, game_id, key, expires)
        return [DownloadURI(uri=u) for u in self.uris.get((mod_id, file_id), [])]

    async def get_category_list(self, game_id=None):
        self._call("get_category_list", game_id)
        return dict(self.categories)

    async def get_mod_files(self, mod_id, game_id=None):
        self._call("get_mod_files", mod_id, game_id)
        if self.gate is not None:
            await self.gate.wait()
        if mod_id not in self.mod_files:
            raise NotFoundError(f"mod {mod_id}")
        return self.mod_files[mod_id]

    async def get_updated_mods(self, period="1m", game_id=None):
        self._call("get_updated_mods", period, game_id)
        return set(self.updated)

    async def validate_key(self):
        self._call("validate_key")
        return {"name": "tester", "is_premium": False}


class FakeDeployer:
    """Records activations; raises DeploymentError when fail is set, or error if given."""

    def __init__(self):
        self.fail = False
        self.error: Exception | None = None
        self.activations: list[str] = []

    async def activate(self, game_id: str) -> None:
        self.activations.append(game_id)
        if self.error is not None:
            raise self.error
        if self.fail:
            raise DeploymentError("disk full", ["Data/foo.esp: disk full"])


class EventRecorder:
    EVENTS = (
        MODS_ENABLED,
        MODS_REMOVED,
        START_DOWNLOAD,
        REMOVE_DOWNLOAD,
        DISABLE_DEPENDENTS,
        RETRIEVE_CATEGORIES,
        CHECK_MODS_VERSION_COMPLETE,
        NOTIFICATION,
    )

    def __init__(self, bus: EventBus):
        self.bus = bus
        self.received: list[tuple] = []
        for event in self.EVENTS:
            bus.on(event, self._recorder(event))

    def _recorder(self, event):
        def record(*args):
            self.received.append((event, *args))

        return record

    def of(self, event: str) -> list[tuple]:
        return [r[1:] for r in self.received if r[0] == event]

    @property
    def notifications(self):
        return [args[0] for args in self.of(NOTIFICATION)]


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    s = StateStore(tmp_path / "home")
    s.load()
    return s


@pytest.fixture
def game(store: StateStore) -> str:
    store.set(["settings", "gameMode", "current"], GAME)
    return GAME


@pytest.fixture
def fake_api() -> FakeAPI:
    return FakeAPI()


@pytest.fixture
def deployer() -> FakeDeployer:
    return FakeDeployer()


@pytest.fixture
def events() -> EventRecorder:
    return EventRecorder(EventBus())


@pytest.fixture
def confirmer() -> PresetConfirmer:
    return PresetConfirmer(True)


@pytest.fixture
def service(store, game, fake_api, deployer, confirmer, events):
    svc = ModManagerService(store, fake_api, deployer, confirmer, events.bus)
    yield svc
    svc.close()


@pytest.fixture
def make_mod(store: StateStore):
    """Install a fake mod: a directory with one file plus its record."""

    def make(
        record_id: str,
        game_id: str = GAME,
        enabled: bool | None = None,
        with_files: bool = True,
        newest_file: NewestFile | None = None,
        **fields,
    ) -> ModRecord:
        record = ModRecord(id=record_id, installation_path=record_id, **fields)
        if newest_file is not None:
            record.newest_file = newest_file
        if with_files:
            mod_dir = install_path_for_game(store, game_id) / record_id
            (mod_dir / "Data").mkdir(parents=True, exist_ok=True)
            (mod_dir / "Data" / f"{record_id}.esp").write_text(record_id)
        store.set(["persistent", "mods", game_id, record_id], record.to_dict())
        if enabled is not None:
            store.set(
                ["persistent", "profiles", "default", "modState", record_id], {"enabled": enabled}
            )
        return record

    return make
