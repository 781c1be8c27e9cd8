import asyncio

import pytest

from nexus_mod_manager.api import FileInfo, ModFiles, NetworkError
from nexus_mod_manager.dialogs import PresetConfirmer
from nexus_mod_manager.events import (
    CHECK_MODS_VERSION_COMPLETE,
    DISABLE_DEPENDENTS,
    MODS_ENABLED,
    MODS_REMOVED,
    REMOVE_DOWNLOAD,
    START_DOWNLOAD,
)
from nexus_mod_manager.nxm import MalformedLinkError
from nexus_mod_manager.selectors import install_path_for_game, is_enabled, need_to_deploy
from nexus_mod_manager.service import (
    ModManagerService,
    NoActiveGame,
    RemovalPhase,
    UpdateCheckInProgress,
)
from nexus_mod_manager.versions import UpdateStatus


def _mod_exists(store, game, mod_id):
    return store.get(["persistent", "mods", game, mod_id]) is not None


class TestEnable:
    def test_enable_batch_emits_once(self, service, store, game, make_mod, events):
        make_mod("a", enabled=False)
        make_mod("b", enabled=True)
        result = service.enable(["a", "b"])

        assert result.changed == ["a"]
        assert result.unchanged == ["b"]
        assert is_enabled(store, "default", "a")
        assert events.of(MODS_ENABLED) == [(["a", "b"], True)]
        assert need_to_deploy(store, game)

    def test_noop_still_emits_once(self, service, store, make_mod, events):
        make_mod("a", enabled=True)
        result = service.enable(["a"])

        assert result.changed == []
        assert events.of(MODS_ENABLED) == [(["a"], True)]

    def test_disable(self, service, store, make_mod, events):
        make_mod("a", enabled=True)
        service.disable(["a"])
        assert not is_enabled(store, "default", "a")
        assert events.of(MODS_ENABLED) == [(["a"], False)]

    def test_does_not_deploy(self, service, make_mod, deployer):
        make_mod("a", enabled=False)
        service.enable(["a"])
        assert deployer.activations == []

    def test_requires_game(self, store, fake_api, deployer, confirmer):
        svc = ModManagerService(store, fake_api, deployer, confirmer)
        with pytest.raises(NoActiveGame):
            svc.mod_overview()
        with pytest.raises(NoActiveGame):
            asyncio.run(svc.check_for_updates())
        svc.close()


class TestSelectVersion:
    def test_switches_versions(self, service, store, make_mod, events):
        make_mod("v1", mod_id=10, version="1.0", enabled=True)
        make_mod("v2", mod_id=10, version="2.0", enabled=False)

        result = service.select_version("v1", "v2")

        assert result.changed
        assert not is_enabled(store, "default", "v1")
        assert is_enabled(store, "default", "v2")
        assert events.of(MODS_ENABLED) == [(["v1"], False), (["v2"], True)]
        assert service.resolve_version("v1").active_id == "v2"

    def test_same_version_is_noop(self, service, make_mod, events):
        make_mod("v1", mod_id=10, enabled=True)
        result = service.select_version("v1", "v1")
        assert not result.changed
        assert events.of(MODS_ENABLED) == []


class TestOverview:
    def test_rows(self, service, make_mod):
        make_mod("v1", mod_id=10, file_id=1, version="1.0", enabled=True, name="SkyUI")
        make_mod("v2", mod_id=10, file_id=2, version="2.0", enabled=False, name="SkyUI")

        rows = {row.id: row for row in service.mod_overview()}
        assert rows["v2"].active_id == "v1"
        assert rows["v1"].enabled
        assert rows["v1"].versions == [("v1", "1.0"), ("v2", "2.0")]
        assert rows["v1"].status is UpdateStatus.NONE

    def test_index_follows_game_change(self, service, store, make_mod):
        make_mod("a")
        assert [r.id for r in service.mod_overview()] == ["a"]
        service.set_game("fallout4")
        assert service.mod_overview() == []

    def test_set_mod_attribute(self, service, store, game, make_mod):
        make_mod("a")
        service.set_mod_attribute("a", "bugMessage", "bad")
        assert store.get(["persistent", "mods", game, "a", "attributes", "bugMessage"]) == "bad"
        with pytest.raises(KeyError):
            service.set_mod_attribute("missing", "x", 1)


class TestRemove:
    def test_removes_mods(self, service, store, game, make_mod, events, deployer):
        make_mod("a", enabled=True)
        make_mod("b", enabled=False)

        result = asyncio.run(service.remove(["a", "b"]))

        assert result.phase is RemovalPhase.DONE
        assert sorted(result.removed) == ["a", "b"]
        assert deployer.activations == [game]
        assert not _mod_exists(store, game, "a")
        assert not (install_path_for_game(store, game) / "a").exists()
        assert store.get(["persistent", "profiles", "default", "modState", "a"]) is None
        assert events.of(MODS_REMOVED) == [(["a", "b"],)]
        assert events.notifications[-1].type == "success"

    def test_cancelled(self, store, game, fake_api, deployer, make_mod, events):
        make_mod("a", enabled=True)
        svc = ModManagerService(store, fake_api, deployer, PresetConfirmer(False), events.bus)

        result = asyncio.run(svc.remove(["a"]))

        assert result.cancelled
        assert deployer.activations == []
        assert _mod_exists(store, game, "a")
        assert is_enabled(store, "default", "a")
        assert events.notifications == []
        svc.close()

    def test_deployment_failure_deletes_nothing(
        self, service, store, game, make_mod, deployer, events
    ):
        make_mod("a", enabled=True)
        make_mod("b", enabled=True)
        deployer.fail = True

        result = asyncio.run(service.remove(["a", "b"]))

        assert result.phase is RemovalPhase.FAILED
        assert result.removed == []
        assert "disk full" in result.error
        for mod_id in ("a", "b"):
            assert _mod_exists(store, game, mod_id)
            assert (install_path_for_game(store, game) / mod_id).is_dir()
        assert events.of(MODS_REMOVED) == []
        assert events.notifications[-1].type == "error"

    def test_unexpected_deployment_error_fails_closed(
        self, service, store, game, make_mod, deployer, events
    ):
        make_mod("a", enabled=True)
        deployer.error = PermissionError("game dir is read-only")

        result = asyncio.run(service.remove(["a"]))

        assert result.phase is RemovalPhase.FAILED
        assert "read-only" in result.error
        assert _mod_exists(store, game, "a")
        assert (install_path_for_game(store, game) / "a").is_dir()
        assert not is_enabled(store, "default", "a")
        assert [n.type for n in events.notifications] == ["error"]

    def test_partial_failure(self, service, store, game, make_mod, events):
        make_mod("a", enabled=True)
        make_mod("b")
        make_mod("c")
        # installation path pointing outside the install directory can't be deleted
        store.set(["persistent", "mods", game, "b", "installationPath"], "../../outside")

        result = asyncio.run(service.remove(["a", "b", "c"]))

        assert result.phase is RemovalPhase.FAILED
        assert sorted(result.removed) == ["a", "c"]
        assert list(result.failed) == ["b"]
        assert _mod_exists(store, game, "b")
        assert not _mod_exists(store, game, "a")
        assert not _mod_exists(store, game, "c")
        notification = events.notifications[-1]
        assert notification.type == "warning"
        assert "b" in notification.message

    def test_missing_directory_counts_as_removed(self, service, store, game, make_mod):
        make_mod("a", with_files=False)
        result = asyncio.run(service.remove(["a"]))
        assert result.removed == ["a"]
        assert result.success

    def test_unknown_mod_is_reported(self, service, make_mod):
        make_mod("a")
        result = asyncio.run(service.remove(["a", "ghost"]))
        assert result.removed == ["a"]
        assert result.failed == {"ghost": "Unknown mod"}

    def test_archive_and_dependents(self, store, game, fake_api, deployer, make_mod, events):
        make_mod("a", archive_id="a-archive")
        confirmer = PresetConfirmer(True, {"archive": True, "dependents": True})
        svc = ModManagerService(store, fake_api, deployer, confirmer, events.bus)

        asyncio.run(svc.remove(["a"]))

        assert confirmer.shown == ["Confirm deletion"]
        assert events.of(REMOVE_DOWNLOAD) == [("a-archive",)]
        assert events.of(DISABLE_DEPENDENTS) == [(["a"],)]
        svc.close()

    def test_keep_files(self, store, game, fake_api, deployer, make_mod, events):
        make_mod("a", archive_id="a-archive", enabled=True)
        confirmer = PresetConfirmer(True, {"mod": False, "archive": True})
        svc = ModManagerService(store, fake_api, deployer, confirmer, events.bus)

        result = asyncio.run(svc.remove(["a"]))

        assert result.success
        assert deployer.activations == []
        assert _mod_exists(store, game, "a")
        assert events.of(REMOVE_DOWNLOAD) == [("a-archive",)]
        svc.close()


class TestCheckForUpdates:
    def _setup(self, fake_api, make_mod):
        make_mod("a", mod_id=10, file_id=1, version="1.0")
        fake_api.mod_files[10] = ModFiles(
            files=[FileInfo(1, "a", version="1.0"), FileInfo(2, "a", version="1.1")],
        )

    def test_stores_results(self, service, store, game, fake_api, make_mod, events):
        self._setup(fake_api, make_mod)
        result = asyncio.run(service.check_for_updates(full=True))

        assert result.success
        attrs = store.get(["persistent", "mods", game, "a", "attributes"])
        assert attrs["newestFileId"] == 1
        assert attrs["lastUpdateTime"]
        assert not service.update_running()
        assert len(events.of(CHECK_MODS_VERSION_COMPLETE)) == 1
        assert len(events.notifications) == 1
        assert events.notifications[0].message.startswith("Check for mod updates complete")

    def test_failure_releases_flag(self, service, fake_api, make_mod, events):
        self._setup(fake_api, make_mod)
        fake_api.error = NetworkError("offline")

        result = asyncio.run(service.check_for_updates())

        assert not result.success
        assert not service.update_running()
        assert len(events.notifications) == 1
        assert events.notifications[0].type == "error"

        fake_api.error = None
        assert asyncio.run(service.check_for_updates(full=True)).success

    def test_second_check_rejected_while_running(self, service, fake_api, make_mod, events):
        self._setup(fake_api, make_mod)

        async def scenario():
            fake_api.gate = asyncio.Event()
            first = asyncio.create_task(service.check_for_updates(full=True))
            while not service.update_running():
                await asyncio.sleep(0)

            with pytest.raises(UpdateCheckInProgress):
                await service.check_for_updates(full=True)

            fake_api.gate.set()
            first_result = await first
            fake_api.gate = None
            return first_result, await service.check_for_updates(full=True)

        first, again = asyncio.run(scenario())
        assert first.success
        assert again.success
        assert len(events.of(CHECK_MODS_VERSION_COMPLETE)) == 2


class TestStartDownload:
    LINK = "nxm://skyrimse/mods/12604/files/35407?key=abc&expires=1700000000"

    def test_emits_start_download(self, service, fake_api, events):
        fake_api.file_info[(12604, 35407)] = FileInfo(35407, "SkyUI", version="5.2")
        fake_api.uris[(12604, 35407)] = ["https://cdn/skyui.7z"]

        result = asyncio.run(service.start_download(self.LINK))

        assert result.success
        assert ("get_download_uris", 12604, 35407, "skyrimspecialedition", "abc", 1700000000) in (
            fake_api.calls
        )
        [(uris, meta)] = events.of(START_DOWNLOAD)
        assert uris == ["https://cdn/skyui.7z"]
        assert meta["game"] == "skyrimse"
        assert meta["nexus"]["ids"] == {
            "gameId": "skyrimspecialedition",
            "modId": 12604,
            "fileId": 35407,
        }
        assert meta["nexus"]["fileInfo"]["name"] == "SkyUI"
        assert events.notifications[0].title == "Downloading from Nexus"

    def test_no_download_locations(self, service, fake_api, events):
        fake_api.file_info[(12604, 35407)] = FileInfo(35407, "SkyUI")

        result = asyncio.run(service.start_download(self.LINK))

        assert not result.success
        assert result.error == "No download locations (yet)"
        assert events.of(START_DOWNLOAD) == []
        assert events.notifications[-1].title == "Download failed"

    def test_api_failure(self, service, fake_api, events):
        fake_api.error = NetworkError("offline")
        result = asyncio.run(service.start_download(self.LINK))
        assert not result.success
        assert [n.title for n in events.notifications] == ["Download failed"]

    def test_malformed_link(self, service, fake_api):
        with pytest.raises(MalformedLinkError):
            asyncio.run(service.start_download("nxm://skyrimse/mods/x"))
        assert fake_api.calls == []


class TestSettings:
    def test_game_and_key_reach_api_context(self, service, fake_api):
        service.set_game("fallout4")
        service.set_api_key("new-key")
        assert fake_api.context.game_id == "fallout4"
        assert fake_api.context.api_key == "new-key"
