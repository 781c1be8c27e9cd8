"""Deploy enabled mods from the install directory into the game directory."""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .selectors import (
    activator_for_game,
    active_profile_id,
    game_path,
    install_path_for_game,
    mod_state_for_profile,
    mods_for_game,
)
from .state import StateStore, now_iso

logger = logging.getLogger(__name__)

# Files/dirs never linked into the game
SKIP_PATTERNS = {
    "fomod",
    "__folder_managed_by_vortex",
}

SKIP_EXTENSIONS = {".txt", ".md", ".jpg", ".jpeg", ".png", ".gif", ".pdf", ".log"}


class DeploymentError(Exception):
    """Raised when the game directory could not be brought in line with the enabled mods."""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message)


class DeploymentEngine(Protocol):
    async def activate(self, game_id: str) -> None:
        """Make the game directory reflect the enabled mods. Raises DeploymentError."""
        ...


@dataclass
class DeployedFile:
    """Record of a single deployed file."""

    src: str
    dest: str
    method: str  # "symlink" or "copy"
    mod_id: str = ""

    def to_dict(self) -> dict:
        return {"src": self.src, "dest": self.dest, "method": self.method, "modId": self.mod_id}

    @classmethod
    def from_dict(cls, data: dict) -> "DeployedFile":
        return cls(
            src=data["src"], dest=data["dest"], method=data["method"], mod_id=data.get("modId", "")
        )


@dataclass
class DeployResult:
    """Result of a deployment operation."""

    deployed: list[DeployedFile] = field(default_factory=list)
    removed: int = 0
    conflicts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def should_skip(rel_path: Path) -> bool:
    name_lower = rel_path.name.lower()
    if name_lower.startswith("readme") or rel_path.suffix.lower() in SKIP_EXTENSIONS:
        return True
    return any(part.lower() in SKIP_PATTERNS or part.startswith(".") for part in rel_path.parts)


def _deploy_file(src: Path, dest: Path, method: str) -> None:
    """Deploy a single file via symlink or copy."""
    dest.parent.mkdir(parents=True, exist_ok=True)

    if dest.is_symlink() or dest.is_file():
        dest.unlink()

    if method == "symlink":
        dest.symlink_to(src.resolve())
    else:
        shutil.copy2(src, dest)


def undeploy(deployed_files: list[dict], game_dir: Path | None = None) -> tuple[int, list[str]]:
    """Remove previously deployed files. Returns (removed count, errors)."""
    removed = 0
    errors = []
    for entry in deployed_files:
        dest = Path(entry["dest"])
        if not (dest.is_symlink() or dest.exists()):
            continue
        try:
            dest.unlink()
            removed += 1
        except OSError as e:
            errors.append(f"{dest}: {e}")
            continue
        _cleanup_empty_parents(dest.parent, game_dir)
    return removed, errors


def _cleanup_empty_parents(directory: Path, stop_at: Path | None) -> None:
    """Remove empty parent directories, stopping at the game root."""
    try:
        while directory.name and directory != stop_at:
            if any(directory.iterdir()):
                break
            directory.rmdir()
            directory = directory.parent
    except OSError as e:
        logger.debug("Stopped cleaning up %s: %s", directory, e)


class LinkDeployer:
    """
    Deployment engine that links (or copies) every file of the enabled
    mods of the active profile into the game directory.

    The previous deployment is removed first. When two mods provide the
    same file the one installed later wins.
    """

    def __init__(self, store: StateStore):
        self.store = store

    async def activate(self, game_id: str) -> None:
        result = await asyncio.to_thread(self.deploy, game_id)
        if result.errors:
            raise DeploymentError(
                f"Deployment of {game_id} failed with {len(result.errors)} error(s)", result.errors
            )

    def deploy(self, game_id: str) -> DeployResult:
        result = DeployResult()
        game_dir = game_path(self.store, game_id)
        if game_dir is None:
            result.errors.append(f"Game directory of {game_id} is not configured")
            return result
        if not game_dir.is_dir():
            result.errors.append(f"Game directory does not exist: {game_dir}")
            return result

        files_path = ["persistent", "deployment", "files", game_id]
        previous = self.store.get(files_path, []) or []
        result.removed, undeploy_errors = undeploy(previous, game_dir)
        result.errors.extend(undeploy_errors)

        install_dir = install_path_for_game(self.store, game_id)
        method = activator_for_game(self.store, game_id)
        mod_state = mod_state_for_profile(self.store, active_profile_id(self.store))

        targets: dict[Path, tuple[Path, str]] = {}
        for mod_id, record in mods_for_game(self.store, game_id).items():
            if not mod_state.get(mod_id) or not mod_state[mod_id].enabled:
                continue
            mod_dir = install_dir / record.installation_path
            if not record.installation_path or not mod_dir.is_dir():
                result.errors.append(f"{mod_id}: installation directory missing ({mod_dir})")
                continue
            for src in sorted(mod_dir.rglob("*")):
                if not src.is_file():
                    continue
                rel = src.relative_to(mod_dir)
                if should_skip(rel):
                    continue
                dest = game_dir / rel
                if dest in targets:
                    result.conflicts.append(
                        f"{rel}: overwritten by {mod_id} (was {targets[dest][1]})"
                    )
                targets[dest] = (src, mod_id)

        for dest, (src, mod_id) in targets.items():
            try:
                _deploy_file(src, dest, method)
                result.deployed.append(DeployedFile(str(src), str(dest), method, mod_id))
            except OSError as e:
                result.errors.append(f"{dest.relative_to(game_dir)}: {e}")

        self.store.set(files_path, [f.to_dict() for f in result.deployed])
        self.store.set(["persistent", "deployment", "deployedAt", game_id], now_iso())
        if not result.errors:
            self.store.set(["persistent", "deployment", "needToDeploy", game_id], False)

        for conflict in result.conflicts:
            logger.info("Conflict: %s", conflict)
        for error in result.errors:
            logger.warning("Deployment error: %s", error)
        return result
