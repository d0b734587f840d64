"""Flask application - JSON API for planning and installing modlists."""

from pathlib import Path

import requests
from flask import Flask, Response, jsonify, request

from ..config import SyncConfig
from ..events import DownloadProgressEvent, EventBus, ItemEvent, ProgressSnapshot
from ..manifest import ManifestError
from ..service import LoadedManifest, ModListService
from .tasks import TaskManager


def create_app(
    config: SyncConfig | None = None,
    mods_dir: Path | None = None,
    session: requests.Session | None = None,
) -> Flask:
    app = Flask(__name__)
    app.config["SYNC_CONFIG"] = config or SyncConfig()
    app.config["MODS_DIR"] = mods_dir
    app.config["HTTP_SESSION"] = session

    tasks = TaskManager()
    app.extensions["modlist_tasks"] = tasks

    def get_service(events: EventBus | None = None) -> ModListService:
        return ModListService(
            config=app.config["SYNC_CONFIG"],
            session=app.config["HTTP_SESSION"],
            events=events,
        )

    def get_mods_dir(data: dict) -> Path | None:
        value = data.get("mods_dir") or app.config["MODS_DIR"]
        return Path(value) if value else None

    def load_manifest(data: dict, key: str = "manifest_path") -> LoadedManifest:
        path = data.get(key)
        if not path:
            raise ManifestError(f"{key} is required")
        return get_service().load(Path(path))

    @app.route("/api/validate", methods=["POST"])
    def api_validate():
        data = request.get_json(silent=True) or {}
        try:
            loaded = load_manifest(data)
        except ManifestError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({
            "valid": loaded.is_valid,
            "errors": [str(e) for e in loaded.errors],
        })

    @app.route("/api/plan", methods=["POST"])
    def api_plan():
        data = request.get_json(silent=True) or {}
        mods_path = get_mods_dir(data)
        if mods_path is None:
            return jsonify({"error": "mods_dir is required"}), 400
        try:
            loaded = load_manifest(data)
        except ManifestError as e:
            return jsonify({"error": str(e)}), 400
        if not loaded.is_valid:
            return jsonify({"error": "Manifest is invalid", "errors": [str(e) for e in loaded.errors]}), 400

        return jsonify(get_service().plan(loaded.manifest, mods_path).to_dict())

    @app.route("/api/install", methods=["POST"])
    def api_install():
        data = request.get_json(silent=True) or {}
        mods_path = get_mods_dir(data)
        if mods_path is None:
            return jsonify({"error": "mods_dir is required"}), 400
        try:
            loaded = load_manifest(data)
        except ManifestError as e:
            return jsonify({"error": str(e)}), 400
        if not loaded.is_valid:
            return jsonify({"error": "Manifest is invalid", "errors": [str(e) for e in loaded.errors]}), 400

        task_id = tasks.create("install")
        task = tasks.get(task_id)

        events = EventBus()

        def on_item(event_type: str):
            def handler(event: ItemEvent) -> None:
                tasks.push(task_id, event_type, {
                    "id": event.entry.id,
                    "name": event.entry.display_name,
                    "index": event.item_index,
                    "total": event.item_total,
                    "success": event.success,
                    "error": event.error,
                })
            return handler

        events.subscribe_item_started(on_item("item_started"))
        events.subscribe_item_completed(on_item("item_completed"))

        def on_download(event: DownloadProgressEvent) -> None:
            tasks.push(task_id, "download_progress", {
                "id": event.entry.id,
                "bytes_received": event.bytes_received,
                "bytes_total": event.bytes_total,
            })

        events.subscribe_download_progress(on_download)

        def progress_cb(snapshot: ProgressSnapshot) -> None:
            tasks.update_progress(
                task_id,
                snapshot.overall_percent / 100.0,
                snapshot.message,
                phase=snapshot.phase.value,
            )

        svc = get_service(events)

        def run():
            return svc.install(loaded.manifest, mods_path, on_progress=progress_cb, cancel=task.cancel)

        tasks.run_in_background(task_id, run)
        return jsonify({"task_id": task_id}), 202

    @app.route("/api/compare", methods=["POST"])
    def api_compare():
        data = request.get_json(silent=True) or {}
        try:
            old = load_manifest(data, "old_path")
            new = load_manifest(data, "new_path")
        except ManifestError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify(get_service().compare(old.manifest, new.manifest).to_dict())

    @app.route("/api/tasks/<task_id>")
    def api_task_status(task_id: str):
        task = tasks.get(task_id)
        if not task:
            return jsonify({"error": "Task not found"}), 404

        result_data = None
        if task.result is not None:
            result_data = task.result.to_dict() if hasattr(task.result, "to_dict") else task.result

        return jsonify({
            "id": task.id,
            "operation": task.operation,
            "status": task.status.value,
            "progress": task.progress,
            "message": task.message,
            "result": result_data,
            "error": task.error,
        })

    @app.route("/api/tasks/<task_id>/cancel", methods=["POST"])
    def api_task_cancel(task_id: str):
        if tasks.get(task_id) is None:
            return jsonify({"error": "Task not found"}), 404
        if not tasks.request_cancel(task_id):
            return jsonify({"error": "Task already finished"}), 409
        return jsonify({"status": "cancelling"}), 202

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
