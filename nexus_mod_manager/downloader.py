"""Archive downloads with progress tracking."""

import logging
from pathlib import Path
from typing import Any, Callable
from urllib.parse import unquote, urlparse

import requests
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from .state import StateStore, now_iso

logger = logging.getLogger(__name__)


class DownloadError(Exception):
    """Raised when a download fails."""

    pass


def filename_from_uri(uri: str) -> str:
    return unquote(Path(urlparse(uri).path).name)


def archive_id_for(filename: str) -> str:
    return Path(filename).stem


class Downloader:
    """Downloads a file from the first of several mirrors that works."""

    def __init__(self, session: requests.Session | None = None, timeout: float | None = 60.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def download(
        self,
        uris: list[str],
        target_dir: Path,
        filename: str | None = None,
        progress: Progress | None = None,
        task_id: TaskID | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> Path:
        """
        Download to target_dir/filename, trying uris in order.

        Returns path to the downloaded file.
        """
        if not uris:
            raise DownloadError("No download locations")

        filename = filename or filename_from_uri(uris[0])
        if not filename:
            raise DownloadError(f"Cannot determine a file name for {uris[0]}")

        target_dir.mkdir(parents=True, exist_ok=True)
        errors = []
        for uri in uris:
            try:
                return self._download_one(uri, target_dir, filename, progress, task_id, on_progress)
            except (requests.RequestException, OSError) as e:
                logger.warning("Download of %s from %s failed: %s", filename, uri, e)
                errors.append(f"{uri}: {e}")
        raise DownloadError(f"Failed to download {filename}: " + "; ".join(errors))

    def _download_one(
        self,
        uri: str,
        target_dir: Path,
        filename: str,
        progress: Progress | None,
        task_id: TaskID | None,
        on_progress: Callable[[int, int], None] | None,
    ) -> Path:
        temp_path = target_dir / f".downloading_{filename}"
        try:
            response = self.session.get(uri, stream=True, timeout=self.timeout)
            response.raise_for_status()

            total_size = int(response.headers.get("content-length", 0))

            if progress and task_id is not None:
                progress.update(task_id, total=total_size, completed=0)

            bytes_downloaded = 0
            with open(temp_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=8192):
                    if chunk:
                        f.write(chunk)
                        bytes_downloaded += len(chunk)
                        if progress and task_id is not None:
                            progress.update(task_id, advance=len(chunk))
                        if on_progress:
                            on_progress(bytes_downloaded, total_size)

            # Rename to final filename
            final_path = target_dir / filename
            temp_path.replace(final_path)
            return final_path
        finally:
            if temp_path.exists():
                temp_path.unlink()


class DownloadManager:
    """Keeps track of downloaded archives in the store."""

    def __init__(self, store: StateStore, downloader: Downloader | None = None):
        self.store = store
        self.downloader = downloader or Downloader()

    def download(
        self,
        uris: list[str],
        target_dir: Path,
        game_id: str,
        mod_info: dict[str, Any] | None = None,
    ) -> tuple[str, Path]:
        """Download with a progress bar and register the archive. Returns (archive id, path)."""
        file_info = (mod_info or {}).get("nexus", {}).get("fileInfo") or {}
        filename = file_info.get("file_name") or filename_from_uri(uris[0] if uris else "")

        with create_download_progress() as progress:
            task_id = progress.add_task("download", filename=filename[:40], total=None)
            path = self.downloader.download(
                uris, target_dir, filename, progress=progress, task_id=task_id
            )

        archive_id = archive_id_for(path.name)
        self.store.set(
            ["persistent", "downloads", "files", archive_id],
            {
                "localPath": str(path),
                "game": game_id,
                "urls": list(uris),
                "modInfo": mod_info or {},
                "finishedAt": now_iso(),
            },
        )
        return archive_id, path

    def remove_archive(self, archive_id: str | None) -> bool:
        """Delete a downloaded archive and forget about it."""
        if not archive_id:
            return False
        entry = self.store.get(["persistent", "downloads", "files", archive_id])
        if entry is None:
            logger.info("Archive %s is not known, nothing to remove", archive_id)
            return False
        local_path = entry.get("localPath")
        if local_path:
            try:
                Path(local_path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove archive %s: %s", local_path, e)
                return False
        self.store.delete(["persistent", "downloads", "files", archive_id])
        return True


def create_download_progress() -> Progress:
    """Create a progress bar for downloads."""
    return Progress(
        TextColumn("[bold blue]{task.fields[filename]}", justify="right"),
        BarColumn(bar_width=30),
        "[progress.percentage]{task.percentage:>3.0f}%",
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
    )
