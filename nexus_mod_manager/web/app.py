"""Flask application - JSON API for nexus-mm-web."""

import asyncio
import logging
from dataclasses import asdict
from pathlib import Path

from flask import Flask, Response, jsonify, request

from ..api import NexusAPI, NexusContext
from ..categories import CategorySync, SyncMode
from ..deploy import DeploymentEngine, LinkDeployer
from ..dialogs import PresetConfirmer
from ..downloader import DownloadManager
from ..events import NOTIFICATION, REMOVE_DOWNLOAD, EventBus, Notification
from ..installer import install_archive
from ..nxm import MalformedLinkError, parse_nxm_url
from ..selectors import active_game_id, download_path
from ..service import ModManagerService, NoActiveGame
from ..state import StateStore
from .tasks import TaskManager

logger = logging.getLogger(__name__)


def create_app(
    home: Path,
    api_key: str | None = None,
    timeout: float | None = None,
    api: NexusAPI | None = None,
    deployer: DeploymentEngine | None = None,
) -> Flask:
    app = Flask(__name__)
    app.config["HOME"] = Path(home)

    store = StateStore(app.config["HOME"])
    store.load()
    if api is None:
        api = NexusAPI(
            NexusContext(
                api_key=api_key or store.get(["account", "nexus", "APIKey"], "") or "",
                game_id=active_game_id(store),
                timeout=timeout,
            )
        )
    deployer = deployer or LinkDeployer(store)
    downloads = DownloadManager(store)

    events = EventBus()
    events.on(REMOVE_DOWNLOAD, downloads.remove_archive)
    notifications: list[dict] = []

    def _record_notification(notification: Notification) -> None:
        notifications.append(asdict(notification))
        del notifications[:-50]

    events.on(NOTIFICATION, _record_notification)

    tasks = TaskManager()
    app.extensions["nexus_mm"] = {"store": store, "api": api, "tasks": tasks, "events": events}

    def get_service(confirmer: PresetConfirmer | None = None) -> ModManagerService:
        """Service bound to the active game; raises NoActiveGame if there is none."""
        svc = ModManagerService(
            store, api, deployer, confirmer or PresetConfirmer(False), events
        )
        try:
            svc.game_id
        except NoActiveGame:
            svc.close()
            raise
        return svc

    def start_task(operation: str, svc: ModManagerService, fn) -> tuple[Response, int]:
        task_id = tasks.create(operation)
        tasks.run_in_background(task_id, fn, on_done=svc.close)
        return jsonify({"task_id": task_id}), 202

    def mod_ids_from(data: dict) -> list[str] | None:
        mod_ids = data.get("mod_ids")
        if not isinstance(mod_ids, list) or not mod_ids:
            return None
        return [str(mod_id) for mod_id in mod_ids]

    @app.errorhandler(NoActiveGame)
    def handle_no_game(e: NoActiveGame):
        return jsonify({"error": str(e)}), 400

    # -- API routes --

    @app.route("/api/mods")
    def api_mods():
        svc = get_service()
        try:
            game_id = svc.game_id
            rows = [asdict(row) for row in svc.mod_overview()]
            return jsonify(
                {"game": game_id, "update_running": svc.update_running(game_id), "mods": rows}
            )
        finally:
            svc.close()

    @app.route("/api/mods/enable", methods=["POST"])
    @app.route("/api/mods/disable", methods=["POST"])
    def api_set_enabled():
        data = request.get_json(silent=True) or {}
        mod_ids = mod_ids_from(data)
        if mod_ids is None:
            return jsonify({"error": "mod_ids is required"}), 400

        enabled = request.path.endswith("/enable")
        svc = get_service()
        try:
            return jsonify(asdict(svc.set_enabled(mod_ids, enabled)))
        finally:
            svc.close()

    @app.route("/api/mods/select-version", methods=["POST"])
    def api_select_version():
        data = request.get_json(silent=True) or {}
        old_id = data.get("old_id")
        new_id = data.get("new_id")
        if not old_id or not new_id:
            return jsonify({"error": "old_id and new_id are required"}), 400

        svc = get_service()
        try:
            return jsonify(asdict(svc.select_version(str(old_id), str(new_id))))
        finally:
            svc.close()

    @app.route("/api/mods/remove", methods=["POST"])
    def api_remove():
        data = request.get_json(silent=True) or {}
        mod_ids = mod_ids_from(data)
        if mod_ids is None:
            return jsonify({"error": "mod_ids is required"}), 400

        confirmer = PresetConfirmer(
            bool(data.get("confirm", False)),
            {
                "mod": bool(data.get("remove_files", True)),
                "archive": bool(data.get("remove_archive", False)),
                "dependents": bool(data.get("disable_dependents", False)),
            },
        )
        svc = get_service(confirmer)
        return start_task("remove", svc, lambda: svc.remove(mod_ids))

    @app.route("/api/deploy", methods=["POST"])
    def api_deploy():
        svc = get_service()
        return start_task("deploy", svc, svc.deploy)

    @app.route("/api/check-updates", methods=["POST"])
    def api_check_updates():
        data = request.get_json(silent=True) or {}
        full = bool(data.get("full", False))

        svc = get_service()
        game_id = svc.game_id
        if svc.update_running(game_id):
            svc.close()
            return jsonify({"error": f"An update check for {game_id} is already running"}), 409
        return start_task("check_updates", svc, lambda: svc.check_for_updates(full=full))

    @app.route("/api/categories", methods=["POST"])
    def api_categories():
        data = request.get_json(silent=True) or {}
        mode = SyncMode.FULL if data.get("full") else SyncMode.INCREMENTAL
        confirmer = PresetConfirmer(bool(data.get("confirm", False)))

        svc = get_service(confirmer)
        game_id = svc.game_id
        sync = CategorySync(store, api, confirmer, events)
        return start_task("categories", svc, lambda: sync.sync(game_id, mode))

    @app.route("/api/download", methods=["POST"])
    def api_download():
        data = request.get_json(silent=True) or {}
        nxm_url = data.get("nxm_url", "")
        install = data.get("install", True)

        if not nxm_url:
            return jsonify({"error": "nxm_url is required"}), 400
        try:
            parse_nxm_url(nxm_url)
        except MalformedLinkError as e:
            return jsonify({"error": str(e)}), 400

        svc = get_service()
        task_id = tasks.create("download")

        async def run():
            started = await svc.start_download(nxm_url)
            if not started.success:
                return {"success": False, "error": started.error}

            tasks.update_progress(task_id, 0.1, "Downloading")
            game_id = started.meta["game"]
            archive_id, path = await asyncio.to_thread(
                downloads.download, started.uris, download_path(store), game_id, started.meta
            )
            result = {"success": True, "archive_id": archive_id, "path": str(path)}
            if install:
                tasks.update_progress(task_id, 0.8, "Installing")
                record = await asyncio.to_thread(
                    install_archive, store, game_id, path, archive_id, started.meta["nexus"]
                )
                result["mod_id"] = record.id
            return result

        tasks.run_in_background(task_id, run, on_done=svc.close)
        return jsonify({"task_id": task_id}), 202

    @app.route("/api/notifications")
    def api_notifications():
        return jsonify({"notifications": list(notifications)})

    @app.route("/api/tasks/<task_id>")
    def api_task_status(task_id: str):
        task = tasks.get(task_id)
        if not task:
            return jsonify({"error": "Task not found"}), 404

        return jsonify({
            "id": task.id,
            "operation": task.operation,
            "status": task.status,
            "progress": task.progress,
            "message": task.message,
            "result": task.result,
            "error": task.error,
        })

    @app.route("/api/tasks/<task_id>/stream")
    def api_task_stream(task_id: str):
        return Response(
            tasks.stream_events(task_id),
            mimetype="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app
