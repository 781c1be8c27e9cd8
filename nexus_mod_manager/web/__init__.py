"""Web API for nexus-mod-manager."""

import argparse
import logging
import os
from pathlib import Path


def create_and_run(
    home: Path,
    api_key: str | None = None,
    timeout: float | None = None,
    port: int = 5000,
):
    """Create and run the Flask app."""
    from .app import create_app

    app = create_app(home=home, api_key=api_key, timeout=timeout)
    app.run(host="127.0.0.1", port=port, debug=False, threaded=True)


def main():
    """Standalone entry point for nexus-mm-web."""
    from ..cli import DEFAULT_HOME

    parser = argparse.ArgumentParser(description="nexus-mm web API")
    parser.add_argument(
        "--home",
        type=Path,
        default=Path(os.environ.get("NEXUS_MM_HOME", DEFAULT_HOME)),
        help="Directory holding the state file, mods and downloads",
    )
    parser.add_argument("--port", type=int, default=5000, help="Port (default 5000)")
    parser.add_argument("--api-key", default=os.environ.get("NEXUS_API_KEY"), help="Nexus API key")
    parser.add_argument(
        "--timeout",
        type=float,
        default=float(os.environ.get("NEXUS_TIMEOUT", 30)),
        help="Network timeout in seconds (default 30)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    create_and_run(home=args.home, api_key=args.api_key, timeout=args.timeout, port=args.port)
