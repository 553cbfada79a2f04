import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, jsonify, render_template, request

from controller import (
    DEFAULT_THRESHOLD,
    UPDATE_INTERVAL_SECONDS,
    ConfigError,
    MonitorConfig,
    MonitorController,
    validate_config_payload,
)
from devices import FETCH_TIMEOUT_SECONDS, DeviceError

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
CONFIG_DIR = BASE_DIR / "config"
DASHBOARD_CONFIG_PATH = Path(os.getenv("DASHBOARD_CONFIG", str(CONFIG_DIR / "dashboard.json")))

DEFAULT_CONFIG: Dict[str, Any] = {
    "flow_meter_url": "",
    "drain_camera_url": "",
    "bot_camera_url": "",
    "threshold": DEFAULT_THRESHOLD,
    "policy": "immediate",
    "update_interval_seconds": UPDATE_INTERVAL_SECONDS,
    "fetch_timeout_seconds": FETCH_TIMEOUT_SECONDS,
}
ENV_OVERRIDES = {
    "FLOW_METER_URL": "flow_meter_url",
    "DRAIN_CAMERA_URL": "drain_camera_url",
    "BOT_CAMERA_URL": "bot_camera_url",
    "THRESHOLD_POLICY": "policy",
}
ENV_FLOAT_OVERRIDES = {
    "FLOW_THRESHOLD": "threshold",
    "UPDATE_INTERVAL_SECONDS": "update_interval_seconds",
    "FETCH_TIMEOUT_SECONDS": "fetch_timeout_seconds",
}


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


DISABLE_BACKGROUND_LOOPS = os.getenv("DISABLE_BACKGROUND_LOOPS", "0") == "1"


def _load_json_or_none(path: Path) -> Optional[Any]:
    try:
        with path.open(encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except Exception as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return None


def load_dashboard_config(path: Path = DASHBOARD_CONFIG_PATH) -> Dict[str, Any]:
    cfg = dict(DEFAULT_CONFIG)
    data = _load_json_or_none(path)
    if isinstance(data, dict):
        cfg.update({k: v for k, v in data.items() if k in DEFAULT_CONFIG})
    for env_name, key in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is not None:
            cfg[key] = raw.strip()
    for env_name, key in ENV_FLOAT_OVERRIDES.items():
        value = _env_float(env_name, None)
        if value is not None:
            cfg[key] = value
    errors = validate_config_payload(cfg)
    if errors:
        logger.warning("Dashboard config invalid (%s); using defaults", "; ".join(errors))
        return dict(DEFAULT_CONFIG)
    return cfg


startup_config = load_dashboard_config()
controller = MonitorController(MonitorConfig.from_dict(startup_config))

app = Flask(__name__)


# Background loop

def monitor_loop() -> None:
    while True:
        try:
            controller.tick()
        except Exception as exc:
            controller.events.add("error", "monitor", f"Monitor loop error: {exc}", None)
        time.sleep(controller.config.update_interval_seconds)


if not DISABLE_BACKGROUND_LOOPS:
    threading.Thread(target=monitor_loop, daemon=True).start()


def _body() -> Dict[str, Any]:
    payload = request.get_json(force=True, silent=True)
    return payload if isinstance(payload, dict) else {}


# Routes
@app.route("/")
def index() -> Any:
    return render_template("index.html")


@app.route("/api/status")
def api_status() -> Any:
    return jsonify(controller.status())


@app.route("/api/logs")
def api_logs() -> Any:
    return jsonify({"readings": controller.log_view()})


@app.route("/api/config", methods=["GET", "POST"])
def api_config() -> Any:
    if request.method == "GET":
        return jsonify({
            "config": controller.config.as_dict(),
            "defaults": dict(startup_config),
            "devices": controller.registry.snapshot(),
        })
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "invalid json"}), 400
    try:
        result = controller.apply_config(payload)
    except ConfigError as exc:
        return jsonify({"error": "invalid config", "details": exc.errors}), 400
    return jsonify({"ok": True, **result})


@app.route("/api/threshold", methods=["POST"])
def api_threshold() -> Any:
    payload = _body()
    if "threshold" not in payload:
        return jsonify({"error": "threshold required"}), 400
    try:
        transition = controller.set_threshold(payload["threshold"])
    except ConfigError as exc:
        return jsonify({"error": "invalid threshold", "details": exc.errors}), 400
    return jsonify({
        "ok": True,
        "threshold": controller.config.threshold,
        "warning_active": controller.engine.warning_active,
        "transition": transition.as_dict() if transition else None,
    })


@app.route("/api/bot", methods=["GET", "POST"])
def api_bot() -> Any:
    if request.method == "GET":
        return jsonify(controller.bot.status())
    action = str(_body().get("action") or "").strip().lower()
    if action == "deploy":
        changed = controller.deploy_bot()
    elif action == "return":
        changed = controller.return_bot()
    elif action == "toggle":
        changed = controller.toggle_bot()
    else:
        return jsonify({"error": "invalid action"}), 400
    return jsonify({"ok": True, "changed": changed, "bot": controller.bot.status()})


@app.route("/api/devices/<channel>/event", methods=["POST"])
def api_device_event(channel: str) -> Any:
    payload = _body()
    event = str(payload.get("event") or "").strip().lower()
    detail = payload.get("detail")
    try:
        device = controller.embed_event(channel, event, str(detail) if detail is not None else None)
    except DeviceError as exc:
        return jsonify({"error": str(exc)}), 404
    except ConfigError as exc:
        return jsonify({"error": "invalid event", "details": exc.errors}), 400
    return jsonify({"ok": True, "device": device})


@app.route("/api/stats/reset", methods=["POST"])
def api_stats_reset() -> Any:
    controller.reset_stats()
    return jsonify({"ok": True, "stats": controller.status()["stats"]})


@app.route("/health")
def health() -> Any:
    return jsonify({"ok": True, "simulation": not controller.config.flow_meter_url})


def create_app() -> Flask:
    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.run(host="0.0.0.0", port=5000, debug=False)
