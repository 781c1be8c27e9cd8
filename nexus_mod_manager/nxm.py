"""nxm:// deep link parsing and game id normalization."""

import re
from dataclasses import dataclass
from urllib.parse import unquote, urlparse

NXM_SCHEME = "nxm"

# Game ids used locally that differ from the Nexus domain name
GAME_ID_ALIASES = {
    "skyrimse": "skyrimspecialedition",
    "falloutnv": "newvegas",
    "teso": "elderscrollsonline",
}

_PATH_RE = re.compile(r"^/mods/([0-9]+)/files/([0-9]+)/?$", re.IGNORECASE)


class MalformedLinkError(Exception):
    """Raised when an nxm:// link cannot be parsed."""

    pass


@dataclass(frozen=True)
class DeepLink:
    """Parsed nxm:// link."""

    game_id: str
    mod_id: int
    file_id: int
    key: str | None = None
    expires: int | None = None
    raw: str = ""

    @property
    def nexus_game_id(self) -> str:
        return normalize_game_id(self.game_id)


def normalize_game_id(game_id: str) -> str:
    """Map a local game id to the domain name the Nexus API expects."""
    lowered = game_id.lower()
    return GAME_ID_ALIASES.get(lowered, lowered)


def parse_nxm_url(raw: str) -> DeepLink:
    """
    Parse an nxm:// download link.

    Format:
        nxm://{game}/mods/{mod_id}/files/{file_id}[?key=...&expires=...]

    key and expires authorize time-limited downloads for non-premium
    accounts and are passed through unchanged apart from percent-escapes;
    a "+" stays a "+".
    """
    if not isinstance(raw, str):
        raise MalformedLinkError(f"Expected a string, got {type(raw).__name__}")

    try:
        parsed = urlparse(raw.strip())
        game_id = parsed.netloc
    except ValueError as e:
        raise MalformedLinkError(f"Cannot decode link {raw!r}: {e}")

    if parsed.scheme.lower() != NXM_SCHEME:
        raise MalformedLinkError(f"Not an nxm:// link: {raw!r}")
    if not game_id:
        raise MalformedLinkError(f"Missing game in link: {raw!r}")
    if "@" in game_id or ":" in game_id:
        raise MalformedLinkError(f"Invalid game in link: {game_id!r}")

    path_match = _PATH_RE.match(parsed.path)
    if not path_match:
        raise MalformedLinkError(
            f"Invalid link path: {parsed.path!r}\n"
            "Expected: nxm://{game}/mods/{mod_id}/files/{file_id}"
        )

    mod_id = int(path_match.group(1))
    file_id = int(path_match.group(2))
    if mod_id <= 0 or file_id <= 0:
        raise MalformedLinkError(f"Mod and file ids must be positive: {raw!r}")

    query: dict[str, str] = {}
    for pair in parsed.query.split("&"):
        if not pair:
            continue
        name, _, value = pair.partition("=")
        query.setdefault(unquote(name), unquote(value))

    expires = None
    if "expires" in query:
        try:
            expires = int(query["expires"])
        except ValueError:
            raise MalformedLinkError(f"Invalid expires value: {query['expires']!r}")

    return DeepLink(
        game_id=game_id,
        mod_id=mod_id,
        file_id=file_id,
        key=query.get("key"),
        expires=expires,
        raw=raw,
    )
