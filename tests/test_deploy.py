import asyncio
from pathlib import Path

import pytest

from nexus_mod_manager.deploy import DeploymentError, LinkDeployer, should_skip
from nexus_mod_manager.selectors import install_path_for_game, need_to_deploy


@pytest.fixture
def game_dir(store, game, tmp_path):
    path = tmp_path / "Skyrim Special Edition"
    path.mkdir()
    store.set(["settings", "gameMode", "discovered", game, "path"], str(path))
    return path


def test_should_skip():
    assert should_skip(Path("readme.txt"))
    assert should_skip(Path("fomod/ModuleConfig.xml"))
    assert should_skip(Path("Data/.hidden"))
    assert not should_skip(Path("Data/SkyUI.esp"))


class TestLinkDeployer:
    def test_links_enabled_mods(self, store, game, game_dir, make_mod):
        make_mod("a", enabled=True)
        make_mod("b", enabled=False)

        result = LinkDeployer(store).deploy(game)

        assert result.errors == []
        deployed = game_dir / "Data" / "a.esp"
        assert deployed.is_symlink()
        assert deployed.read_text() == "a"
        assert not (game_dir / "Data" / "b.esp").exists()
        assert not need_to_deploy(store, game)

    def test_redeploy_removes_disabled(self, store, game, game_dir, make_mod):
        make_mod("a", enabled=True)
        deployer = LinkDeployer(store)
        deployer.deploy(game)

        store.set(["persistent", "profiles", "default", "modState", "a", "enabled"], False)
        result = deployer.deploy(game)

        assert result.removed == 1
        assert not (game_dir / "Data" / "a.esp").exists()
        assert store.get(["persistent", "deployment", "files", game]) == []

    def test_later_mod_wins_conflict(self, store, game, game_dir, make_mod):
        make_mod("a", enabled=True)
        make_mod("b", enabled=True)
        install_dir = install_path_for_game(store, game)
        for mod_id in ("a", "b"):
            (install_dir / mod_id / "Data" / "shared.esp").write_text(mod_id)

        result = LinkDeployer(store).deploy(game)

        assert len(result.conflicts) == 1
        assert (game_dir / "Data" / "shared.esp").read_text() == "b"

    def test_copy_activator(self, store, game, game_dir, make_mod):
        store.set(["settings", "mods", "activator", game], "copy")
        make_mod("a", enabled=True)
        LinkDeployer(store).deploy(game)
        deployed = game_dir / "Data" / "a.esp"
        assert deployed.is_file() and not deployed.is_symlink()

    def test_activate_raises_without_game_dir(self, store, game, make_mod):
        make_mod("a", enabled=True)
        with pytest.raises(DeploymentError):
            asyncio.run(LinkDeployer(store).activate(game))

    def test_activate_raises_for_missing_install(self, store, game, game_dir, make_mod):
        make_mod("a", enabled=True, with_files=False)
        with pytest.raises(DeploymentError) as excinfo:
            asyncio.run(LinkDeployer(store).activate(game))
        assert "a: installation directory missing" in excinfo.value.errors[0]
