"""Install downloaded archives as mods."""

import logging
import re
import shutil
import subprocess
import zipfile
from pathlib import Path
from typing import Any

import py7zr
import rarfile

from .selectors import active_profile_id, install_path_for_game
from .state import ModRecord, StateStore, now_iso

logger = logging.getLogger(__name__)

_UNSAFE_CHARS_RE = re.compile(r"[^\w.\- ()\[\]]+")


class ExtractionError(Exception):
    """Raised when archive extraction fails."""

    pass


def detect_archive_type(filepath: Path) -> str | None:
    """
    Detect archive type by magic bytes, then fall back to extension.

    Returns: 'zip', '7z', 'rar', or None if not an archive.
    """
    try:
        with open(filepath, "rb") as f:
            header = f.read(8)
        if header[:2] == b"PK":
            return "zip"
        if header[:6] == b"7z\xbc\xaf'\x1c":
            return "7z"
        if header[:4] == b"Rar!":
            return "rar"
    except OSError:
        pass

    return {".zip": "zip", ".7z": "7z", ".rar": "rar"}.get(filepath.suffix.lower())


def extract_archive(archive_path: Path, target_dir: Path) -> None:
    archive_type = detect_archive_type(archive_path)
    if archive_type is None:
        raise ExtractionError(f"Unknown archive type: {archive_path}")

    target_dir.mkdir(parents=True, exist_ok=True)
    try:
        if archive_type == "zip":
            with zipfile.ZipFile(archive_path, "r") as zf:
                zf.extractall(target_dir)
        elif archive_type == "7z":
            _extract_7z(archive_path, target_dir)
        else:
            with rarfile.RarFile(archive_path, "r") as rf:
                rf.extractall(target_dir)
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(f"Failed to extract {archive_path}: {e}")


def _extract_7z(archive_path: Path, target_dir: Path) -> None:
    """Extract with py7zr, falling back to a system 7z for codecs it lacks (e.g. BCJ2)."""
    try:
        with py7zr.SevenZipFile(archive_path, "r") as szf:
            szf.extractall(target_dir)
        return
    except (py7zr.UnsupportedCompressionMethodError, py7zr.Bad7zFile) as e:
        logger.info("py7zr can't extract %s (%s), trying system 7z", archive_path.name, e)

    sz_bin = shutil.which("7z") or shutil.which("7zz")
    if not sz_bin:
        raise ExtractionError(
            f"py7zr cannot extract {archive_path.name} (unsupported compression). "
            "Install p7zip for broader 7z support."
        )
    result = subprocess.run(
        [sz_bin, "x", str(archive_path), f"-o{target_dir}", "-y"],
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        raise ExtractionError(
            f"7z extraction failed for {archive_path.name}: {result.stderr.strip()}"
        )


def is_archive(filepath: Path) -> bool:
    """Check if a file is a supported archive."""
    return detect_archive_type(filepath) is not None


def mod_id_for_archive(archive_path: Path, existing: set[str]) -> str:
    """Derive a unique mod id from the archive name."""
    base = _UNSAFE_CHARS_RE.sub("_", archive_path.stem).strip() or "mod"
    candidate = base
    counter = 1
    while candidate in existing:
        candidate = f"{base}.{counter}"
        counter += 1
    return candidate


def install_archive(
    store: StateStore,
    game_id: str,
    archive_path: Path,
    archive_id: str | None = None,
    nexus: dict[str, Any] | None = None,
) -> ModRecord:
    """
    Extract an archive into the game's install path and record the mod.

    nexus is the download metadata ({"ids": ..., "fileInfo": ...}) used to
    fill in the Nexus attributes. The new mod starts out disabled in the
    active profile.
    """
    existing = set(store.get(["persistent", "mods", game_id], {}) or {})
    mod_id = mod_id_for_archive(archive_path, existing)
    dest = install_path_for_game(store, game_id) / mod_id

    try:
        if is_archive(archive_path):
            extract_archive(archive_path, dest)
        else:
            dest.mkdir(parents=True, exist_ok=True)
            shutil.copy2(archive_path, dest / archive_path.name)
    except (ExtractionError, OSError):
        shutil.rmtree(dest, ignore_errors=True)
        raise

    ids = (nexus or {}).get("ids") or {}
    file_info = (nexus or {}).get("fileInfo") or {}
    record = ModRecord(
        id=mod_id,
        installation_path=mod_id,
        archive_id=archive_id,
        mod_id=ids.get("modId"),
        file_id=ids.get("fileId"),
        version=file_info.get("version") or None,
        file_category=file_info.get("category_name"),
        is_primary=bool(file_info.get("is_primary", False)),
        logical_file_name=file_info.get("name") or None,
        name=file_info.get("name") or archive_path.stem,
        install_time=now_iso(),
    )
    store.set(["persistent", "mods", game_id, mod_id], record.to_dict())
    store.set(
        ["persistent", "profiles", active_profile_id(store), "modState", mod_id],
        {"enabled": False},
    )
    logger.info("Installed %s as %s", archive_path.name, mod_id)
    return record
