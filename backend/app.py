"""
=============================================================================
WATER METER TRACKER - MAIN FLASK APPLICATION
=============================================================================

REST API in front of the meter tracker core:
- Telemetry ingestion from field meters (SMS gateway / HTTP webhook)
- Device and user administration (every ownership change goes through the
  AssignmentManager)
- Reading history and the command audit log
- Maintenance: consistency check and reconciliation pass

Storage:
- DynamoDB when USE_DYNAMODB=true, otherwise an in-memory store
Operator alerts:
- SNS when USE_SNS=true, otherwise disabled

How to run:
    python -m backend.app

Then send a report:
    curl -X POST -H 'Content-Type: text/plain' \\
         --data 'MTRID:MTR001;VOL:120.5;BATT:3.7V' http://127.0.0.1:5000/api/meter-data/ingress
=============================================================================
"""

import json
import logging
from datetime import datetime

# Flask - the web framework
from flask import Flask, current_app, jsonify, request

# dotenv - load environment variables from a .env file
from dotenv import load_dotenv

from backend.lib.services import init_alerts, init_store
from backend.lib.settings import Settings
from backend.lib.water_meter_core.assignment import AssignmentManager
from backend.lib.water_meter_core.errors import (
    DuplicateEmail,
    DuplicateMeterId,
    ImmutableField,
    InvalidAssignee,
    MalformedInput,
    PersistenceFailure,
    UnknownDevice,
    UnknownUser,
)
from backend.lib.water_meter_core.ingestion import IngestionPipeline
from backend.lib.water_meter_core.processor import ConsumptionAnalyzer
from backend.lib.water_meter_core.store import MemoryStore

# Load environment variables before anything reads them
load_dotenv()

logger = logging.getLogger(__name__)


def create_app(settings: Settings = None, store=None, alerts=None) -> Flask:
    """
    Build the Flask application.

    Tests pass their own store (and a fake alerts object); production reads
    everything from the environment.
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    app.settings = settings
    app.store = store if store is not None else init_store(settings)
    app.alerts = alerts if alerts is not None else init_alerts(settings)
    app.assignments = AssignmentManager(app.store, alerts=app.alerts,
                                        max_attempts=settings.cas_max_attempts)
    app.pipeline = IngestionPipeline(app.store, alerts=app.alerts,
                                     max_attempts=settings.cas_max_attempts)

    _register_error_handlers(app)
    _register_routes(app)
    return app


# =============================================================================
# ERROR HANDLING
# =============================================================================
# Domain errors become JSON bodies {"error": "..."} with a status code.

def _register_error_handlers(app: Flask):
    def bad_request(e):
        return jsonify({"error": str(e)}), 400

    def not_found(e):
        return jsonify({"error": str(e)}), 404

    def unavailable(e):
        logger.error("Persistence failure: %s", e)
        return jsonify({"error": str(e)}), 503

    for exc in (InvalidAssignee, DuplicateMeterId, DuplicateEmail, ImmutableField,
                MalformedInput, ValueError):
        app.register_error_handler(exc, bad_request)
    for exc in (UnknownDevice, UnknownUser):
        app.register_error_handler(exc, not_found)
    app.register_error_handler(PersistenceFailure, unavailable)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise MalformedInput("JSON object body required")
    return data


def _extract_data_string() -> str:
    """
    Pull the report text out of the request.

    Accepts a plain text body, or JSON {"message": ...} / {"text": ...} as
    sent by SMS gateways. Any other JSON object is stringified.
    """
    if request.is_json:
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            for key in ("message", "text"):
                if isinstance(body.get(key), str):
                    return body[key]
        if body:
            data_string = json.dumps(body)
            logger.warning("Received complex object, using stringified body: %s", data_string)
            return data_string
        return ""
    return request.get_data(as_text=True)


# =============================================================================
# API ROUTES
# =============================================================================

def _register_routes(app: Flask):

    @app.route("/health", methods=["GET"])
    def health():
        return jsonify({"status": "healthy"}), 200

    # -------------------------------------------------------------------------
    # TELEMETRY INGESTION
    # -------------------------------------------------------------------------

    @app.route("/api/meter-data/ingress", methods=["POST"])
    def meter_data_ingress():
        """
        Receive one status report from a field meter.

        Body (text/plain):
            MTRID:MTR001;VOL:120.5;BATT:3.7V;SIG:-75dBm

        Returns:
            JSON with state (Updated / Acknowledged / Rejected), reason,
            meter_id, response text and the audit log id.

        HTTP Status Codes:
            200: Updated or Acknowledged
            400: Malformed report (no Meter ID) or empty body
            404: Unknown meter
            500: Store failure (the attempt is still in the audit log)
        """
        data_string = _extract_data_string()
        if not data_string:
            logger.warning("No usable data string found in request.")
            return jsonify({"error": "No data string received."}), 400

        result = current_app.pipeline.ingest(data_string)
        return jsonify(result.to_dict()), result.http_status

    # -------------------------------------------------------------------------
    # DEVICES
    # -------------------------------------------------------------------------

    @app.route("/api/devices", methods=["POST"])
    def create_device():
        """
        Create a device, optionally assigned to a customer.

        Request Body (JSON):
            {"meter_id": "MTR001", "owner_id": "USR-...", "status": "uninitialized"}
        """
        data = _json_body()
        device = current_app.assignments.create_device(
            meter_id=data.get("meter_id"),
            owner_id=data.get("owner_id") or None,
            status=data.get("status", "uninitialized"),
            notes=data.get("notes"),
            initialization_volume=data.get("initialization_volume", 0.0),
        )
        return jsonify(device.to_dict()), 201

    @app.route("/api/devices/<device_id>", methods=["GET"])
    def get_device(device_id):
        device = current_app.store.get_device(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        return jsonify(device.to_dict())

    @app.route("/api/devices/<device_id>", methods=["PUT"])
    def update_device(device_id):
        """
        Update a device. Send "owner_id": null (or "") to unassign it,
        a customer's user id to (re)assign it, or leave the key out to keep
        the current owner.
        """
        data = _json_body()
        kwargs = {k: v for k, v in data.items() if k != "owner_id"}
        if "owner_id" in data:
            kwargs["owner_id"] = data["owner_id"]
        device = current_app.assignments.update_device(device_id, **kwargs)
        return jsonify(device.to_dict())

    @app.route("/api/devices/<device_id>", methods=["DELETE"])
    def delete_device(device_id):
        current_app.assignments.delete_device(device_id)
        return jsonify({"message": "Device removed"})

    @app.route("/api/devices/<device_id>/readings", methods=["GET"])
    def device_readings(device_id):
        """
        Reading history of a device, oldest first.

        Each entry carries the consumption since the previous reading and a
        "negative_consumption" flag when the meter went backwards.
        """
        if current_app.store.get_device(device_id) is None:
            raise UnknownDevice(device_id)
        readings = current_app.store.readings_for_device(device_id)
        deltas = ConsumptionAnalyzer(readings).deltas()
        return jsonify({
            "device_id": device_id,
            "readings": [d.to_dict() for d in deltas],
        })

    @app.route("/api/devices/<device_id>/readings", methods=["POST"])
    def manual_reading(device_id):
        """
        Manual reading entry.

        Request Body (JSON):
            {"volume": 131.2, "timestamp": "2025-11-01T08:00:00Z"}
        """
        data = _json_body()
        if data.get("volume") is None:
            raise MalformedInput("volume required")
        timestamp = None
        if data.get("timestamp"):
            timestamp = datetime.fromisoformat(data["timestamp"].replace("Z", "+00:00"))
        reading = current_app.pipeline.record_manual_reading(device_id, data["volume"], timestamp)
        return jsonify(reading.to_dict()), 201

    # -------------------------------------------------------------------------
    # USERS
    # -------------------------------------------------------------------------

    @app.route("/api/users", methods=["POST"])
    def create_user():
        """
        Request Body (JSON):
            {"name": "Ana", "email": "ana@example.com", "role": "customer",
             "device_ids": ["DEV-..."]}
        """
        data = _json_body()
        if not data.get("name") or not data.get("email") or not data.get("role"):
            raise MalformedInput("name, email and role are required")
        user = current_app.assignments.create_user(
            name=data["name"],
            email=data["email"],
            role=data["role"],
            device_ids=data.get("device_ids"),
        )
        return jsonify(user.to_dict()), 201

    @app.route("/api/users/<user_id>", methods=["GET"])
    def get_user(user_id):
        user = current_app.store.get_user(user_id)
        if user is None:
            raise UnknownUser(user_id)
        return jsonify(user.to_dict())

    @app.route("/api/users/<user_id>", methods=["PUT"])
    def update_user(user_id):
        data = _json_body()
        user = current_app.assignments.update_user(
            user_id,
            name=data.get("name"),
            email=data.get("email"),
            role=data.get("role"),
            device_ids=data.get("device_ids"),
        )
        return jsonify(user.to_dict())

    @app.route("/api/users/<user_id>", methods=["DELETE"])
    def delete_user(user_id):
        current_app.assignments.delete_user(user_id)
        return jsonify({"message": "User removed"})

    # -------------------------------------------------------------------------
    # COMMAND LOG
    # -------------------------------------------------------------------------

    @app.route("/api/command-logs", methods=["GET"])
    def command_logs():
        logs = current_app.pipeline.audit.history()
        return jsonify({"logs": [l.to_dict() for l in logs]})

    @app.route("/api/command-logs/device/<meter_id>", methods=["GET"])
    def device_command_logs(meter_id):
        logs = current_app.pipeline.audit.history(meter_id)
        return jsonify({"meter_id": meter_id, "logs": [l.to_dict() for l in logs]})

    # -------------------------------------------------------------------------
    # MAINTENANCE
    # -------------------------------------------------------------------------

    @app.route("/api/maintenance/consistency", methods=["GET"])
    def consistency():
        """Report owner pointer / owned set divergences without writing."""
        issues = current_app.assignments.check_consistency()
        return jsonify({
            "consistent": not issues,
            "divergences": [i.to_dict() for i in issues],
        })

    @app.route("/api/maintenance/reconcile", methods=["POST"])
    def reconcile():
        """
        Rebuild every owned-device set from the device owner pointers.

        Run during a low-traffic window: it must not overlap a reassignment
        of the same device.
        """
        report = current_app.assignments.reconcile()
        return jsonify(report.to_dict())

    # -------------------------------------------------------------------------
    # AWS STATUS
    # -------------------------------------------------------------------------

    @app.route("/dynamodb/status", methods=["GET"])
    def dynamodb_status():
        store = current_app.store
        return jsonify({
            "dynamodb_enabled": not isinstance(store, MemoryStore),
            "table_prefix": getattr(store, "table_prefix", None),
        })

    @app.route("/sns/status", methods=["GET"])
    def sns_status():
        alerts = current_app.alerts
        return jsonify({
            "sns_enabled": alerts is not None,
            "topic_arn": getattr(alerts, "topic_arn", None),
        })

    @app.route("/sns/subscribe", methods=["POST"])
    def sns_subscribe():
        """
        Subscribe an operator e-mail address to the alert topic.

        Request Body (JSON):
            {"email": "ops@example.com"}
        """
        alerts = current_app.alerts
        if alerts is None:
            return jsonify({"error": "SNS not enabled"}), 400
        data = _json_body()
        if not data.get("email"):
            return jsonify({"error": "email required"}), 400
        subscription_arn = alerts.subscribe_email(data["email"])
        if not subscription_arn:
            return jsonify({"error": "Failed to subscribe"}), 500
        return jsonify({
            "message": f"Subscription pending. Check {data['email']} for confirmation link.",
            "subscription_arn": subscription_arn,
        })


app = create_app()


# =============================================================================
# RUN THE SERVER
# =============================================================================

if __name__ == "__main__":
    # debug=True is for local development only
    app.run(debug=True)
