"""Nexus Mods REST API client."""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any

import requests

from .nxm import normalize_game_id
from .state import Category

logger = logging.getLogger(__name__)

REST_BASE_URL = "https://api.nexusmods.com/v1"
USER_AGENT = "nexus-mod-manager/0.1.0"
DEFAULT_TIMEOUT = 30.0


class NexusAPIError(Exception):
    """Base exception for Nexus API errors."""

    pass


class NetworkError(NexusAPIError):
    """Raised when the API can't be reached or returns an unusable response."""

    pass


class NotFoundError(NexusAPIError):
    """Raised when the requested resource does not exist (yet)."""

    pass


class AuthError(NexusAPIError):
    """Raised when the API key is missing, invalid or lacks permission."""

    pass


class PremiumRequired(AuthError):
    """Raised when Premium membership is required for an operation."""

    pass


class RateLimitError(NexusAPIError):
    """Raised when rate limited by the API."""

    def __init__(self, retry_after: int = 60):
        self.retry_after = retry_after
        super().__init__(f"Rate limited. Retry after {retry_after} seconds.")


@dataclass(frozen=True)
class NexusContext:
    """Credentials and game a request is made for. Replaced, never mutated."""

    api_key: str = ""
    game_id: str = ""
    timeout: float | None = DEFAULT_TIMEOUT
    user_agent: str = USER_AGENT


@dataclass
class FileInfo:
    file_id: int
    name: str
    version: str = ""
    file_name: str = ""
    category_name: str | None = None
    is_primary: bool = False
    size_kb: int = 0
    mod_version: str = ""
    uploaded_timestamp: int | None = None
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileInfo":
        return cls(
            file_id=data.get("file_id", 0),
            name=data.get("name", "") or "",
            version=data.get("version", "") or "",
            file_name=data.get("file_name", "") or "",
            category_name=data.get("category_name"),
            is_primary=bool(data.get("is_primary", False)),
            size_kb=data.get("size_kb") or 0,
            mod_version=data.get("mod_version", "") or "",
            uploaded_timestamp=data.get("uploaded_timestamp"),
            description=data.get("description", "") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_id": self.file_id,
            "name": self.name,
            "version": self.version,
            "file_name": self.file_name,
            "category_name": self.category_name,
            "is_primary": self.is_primary,
            "size_kb": self.size_kb,
            "mod_version": self.mod_version,
            "uploaded_timestamp": self.uploaded_timestamp,
            "description": self.description,
        }


@dataclass
class DownloadURI:
    uri: str
    name: str = ""
    short_name: str = ""


@dataclass
class FileUpdate:
    old_file_id: int
    new_file_id: int
    uploaded_timestamp: int | None = None


@dataclass
class ModFiles:
    """File list of a mod plus the chain of file replacements."""

    files: list[FileInfo] = field(default_factory=list)
    file_updates: list[FileUpdate] = field(default_factory=list)

    def get(self, file_id: int) -> FileInfo | None:
        for info in self.files:
            if info.file_id == file_id:
                return info
        return None


class NexusAPI:
    """
    Client for the Nexus Mods REST API.

    All public calls are coroutines; the blocking HTTP request runs in a
    worker thread. The context in effect when a call starts is used for
    the whole call.
    """

    def __init__(
        self,
        context: NexusContext,
        session: requests.Session | None = None,
        min_request_interval: float = 0.5,
    ):
        self._context = context
        self.session = session or requests.Session()
        self._last_request_time = 0.0
        self._min_request_interval = min_request_interval  # 2 requests per second max
        self._pace_lock = threading.Lock()

    @property
    def context(self) -> NexusContext:
        return self._context

    def update_context(self, **changes: Any) -> NexusContext:
        """Swap in a new context, e.g. after the user changed key or game."""
        self._context = replace(self._context, **changes)
        return self._context

    def _rate_limit_wait(self) -> None:
        """Ensure we don't exceed rate limits."""
        with self._pace_lock:
            elapsed = time.time() - self._last_request_time
            if elapsed < self._min_request_interval:
                time.sleep(self._min_request_interval - elapsed)
            self._last_request_time = time.time()

    def _handle_response(self, response: requests.Response) -> Any:
        """Handle API response and raise appropriate errors."""
        status = response.status_code
        if status == 429:
            try:
                retry_after = int(response.headers.get("Retry-After", 60))
            except (TypeError, ValueError):
                retry_after = 60
            raise RateLimitError(retry_after)
        if status in (401, 403):
            text = response.text or ""
            if status == 403 and "premium" in text.lower():
                raise PremiumRequired("Premium membership required for direct download links.")
            raise AuthError(f"Access forbidden ({status}): {text[:200]}")
        if status == 404:
            raise NotFoundError(f"Resource not found: {response.url}")
        if status >= 400:
            raise NetworkError(f"Unexpected response {status} from {response.url}")
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from {response.url}: {e}")

    def _get(self, ctx: NexusContext, path: str, params: dict[str, Any] | None = None) -> Any:
        if not ctx.api_key:
            raise AuthError("No API key configured. Set NEXUS_API_KEY or run 'nexus-mm set-key'.")
        self._rate_limit_wait()
        url = f"{REST_BASE_URL}/{path}"
        logger.debug("GET %s %s", url, params or "")
        try:
            response = self.session.get(
                url,
                params=params,
                headers={"apikey": ctx.api_key, "User-Agent": ctx.user_agent},
                timeout=ctx.timeout,
            )
        except requests.RequestException as e:
            raise NetworkError(f"Request to {url} failed: {e}")
        return self._handle_response(response)

    def _game(self, ctx: NexusContext, game_id: str | None) -> str:
        game = game_id or ctx.game_id
        if not game:
            raise NexusAPIError("No game selected")
        return normalize_game_id(game)

    async def get_file_info(self, mod_id: int, file_id: int, game_id: str | None = None) -> FileInfo:
        """Get metadata of one mod file."""
        ctx = self._context
        game = self._game(ctx, game_id)
        data = await asyncio.to_thread(
            self._get, ctx, f"games/{game}/mods/{mod_id}/files/{file_id}.json"
        )
        return FileInfo.from_dict(data)

    async def get_download_uris(
        self,
        mod_id: int,
        file_id: int,
        game_id: str | None = None,
        key: str | None = None,
        expires: int | None = None,
    ) -> list[DownloadURI]:
        """
        Get CDN locations for a mod file.

        An empty list means the file has no download location yet. key and
        expires come from an nxm:// link and are required for accounts
        without Premium.
        """
        ctx = self._context
        game = self._game(ctx, game_id)
        params = None
        if key is not None:
            params = {"key": key}
            if expires is not None:
                params["expires"] = expires
        data = await asyncio.to_thread(
            self._get, ctx, f"games/{game}/mods/{mod_id}/files/{file_id}/download_link.json", params
        )
        if not data:
            return []
        if not isinstance(data, list):
            raise NetworkError(f"Unexpected download link response: {data}")
        return [
            DownloadURI(
                uri=entry.get("URI", ""),
                name=entry.get("name", ""),
                short_name=entry.get("short_name", ""),
            )
            for entry in data
            if entry.get("URI")
        ]

    async def get_category_list(self, game_id: str | None = None) -> dict[str, Category]:
        """Get the category taxonomy of a game."""
        ctx = self._context
        game = self._game(ctx, game_id)
        data = await asyncio.to_thread(self._get, ctx, f"games/{game}.json")
        categories: dict[str, Category] = {}
        for order, entry in enumerate(data.get("categories", [])):
            parent = entry.get("parent_category")
            category_id = str(entry["category_id"])
            categories[category_id] = Category(
                id=category_id,
                name=entry.get("name", ""),
                parent_id=str(parent) if parent not in (None, False) else None,
                order=order,
            )
        return categories

    async def get_mod_files(self, mod_id: int, game_id: str | None = None) -> ModFiles:
        """Get all files of a mod together with the file update chain."""
        ctx = self._context
        game = self._game(ctx, game_id)
        data = await asyncio.to_thread(self._get, ctx, f"games/{game}/mods/{mod_id}/files.json")
        return ModFiles(
            files=[FileInfo.from_dict(f) for f in data.get("files", [])],
            file_updates=[
                FileUpdate(
                    old_file_id=u.get("old_file_id", 0),
                    new_file_id=u.get("new_file_id", 0),
                    uploaded_timestamp=u.get("uploaded_timestamp"),
                )
                for u in data.get("file_updates", [])
            ],
        )

    async def get_updated_mods(self, period: str = "1m", game_id: str | None = None) -> set[int]:
        """Ids of mods updated within period (1d, 1w or 1m)."""
        ctx = self._context
        game = self._game(ctx, game_id)
        data = await asyncio.to_thread(
            self._get, ctx, f"games/{game}/mods/updated.json", {"period": period}
        )
        return {entry["mod_id"] for entry in data or [] if "mod_id" in entry}

    async def validate_key(self) -> dict[str, Any]:
        """Validate API key and return user info."""
        ctx = self._context
        return await asyncio.to_thread(self._get, ctx, "users/validate.json")
