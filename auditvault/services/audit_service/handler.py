"""Audit Service HTTP handler - read and manual-entry endpoints.

The request's X-Request-ID header becomes the correlation id of records
written by the request, X-Audit-Actor its actor label and the remote
address its origin address.
"""
import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from auditvault.shared.database import RepositoryError
from auditvault.shared.models import AuditRecord, EntityRef

from .audit_trail import AuditTrail
from .context import AuditContext

logger = logging.getLogger(__name__)

app = Flask(__name__)

_audit_trail: Optional[AuditTrail] = None


def get_audit_trail() -> AuditTrail:
    """Get or build the trail served by this app."""
    global _audit_trail

    if _audit_trail is None:
        _audit_trail = AuditTrail.from_config()

    return _audit_trail


def set_audit_trail(trail: Optional[AuditTrail]) -> None:
    """Replace the served trail (startup wiring, tests)."""
    global _audit_trail
    _audit_trail = trail


def _request_context() -> AuditContext:
    return AuditContext(
        actor=request.headers.get("X-Audit-Actor"),
        correlation_id=request.headers.get("X-Request-ID"),
        origin_address=request.remote_addr,
    )


def _optional_ref(type_name: Optional[str], entity_id: Any) -> Optional[EntityRef]:
    if not type_name:
        return None
    return EntityRef(type_name, int(entity_id) if entity_id is not None else None)


def _record_to_json(record: AuditRecord) -> Dict[str, Any]:
    document = record.to_json_dict()
    if record.id is not None:
        document["id"] = record.id
    return document


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint; 503 when the storage backend is unreachable."""
    store = get_audit_trail().store
    storage = store.health_check()
    healthy = storage.get("healthy", False)

    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "service": "audit-service",
        "store": type(store).__name__,
        "storage": storage,
    }), 200 if healthy else 503


@app.route("/audits/<subject_type>/<int:subject_id>", methods=["GET"])
def list_audits(subject_type: str, subject_id: int):
    """List a subject's audits.

    Query parameters:
        order: asc (default) or desc, by version
        action: Only records with this action
        associated_type / associated_id: Entity the subject files under
    """
    order = request.args.get("order", "asc")
    if order not in ("asc", "desc"):
        return jsonify({"error": f"Invalid order: {order}"}), 400

    try:
        associated_with = _optional_ref(
            request.args.get("associated_type"),
            request.args.get("associated_id"),
        )
        query = get_audit_trail().audits(EntityRef(subject_type, subject_id), associated_with)
        records = query.ascending() if order == "asc" else query.descending()

        action = request.args.get("action")
        if action:
            records = [r for r in records if r.action == action]

    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except RepositoryError as e:
        logger.error(
            "AUDIT_LIST_ERROR",
            extra={"subject_type": subject_type, "subject_id": subject_id, "error": str(e)}
        )
        return jsonify({"error": "Failed to read audits"}), 500

    return jsonify({
        "subject_type": subject_type,
        "subject_id": subject_id,
        "count": len(records),
        "audits": [_record_to_json(r) for r in records],
    }), 200


@app.route("/audits/<subject_type>/<int:subject_id>/all", methods=["GET"])
def list_own_and_associated_audits(subject_type: str, subject_id: int):
    """A subject's audits plus those filed under it, newest first."""
    try:
        query = get_audit_trail().audits(EntityRef(subject_type, subject_id))
        records = query.own_and_associated_audits()
    except RepositoryError as e:
        logger.error(
            "AUDIT_LIST_ERROR",
            extra={"subject_type": subject_type, "subject_id": subject_id, "error": str(e)}
        )
        return jsonify({"error": "Failed to read audits"}), 500

    return jsonify({
        "count": len(records),
        "audits": [_record_to_json(r) for r in records],
    }), 200


@app.route("/audits", methods=["POST"])
def create_audit():
    """Write a manual audit record.

    Request Body:
        {
            "subject_type": "Company",
            "subject_id": 1,
            "action": "update",
            "changes": {"name": ["Old", "New"]},
            "associated_type": "Holding",
            "associated_id": 7,
            "comment": "backfill",
            "actor": "ops@example.com"
        }
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400

    subject_type = data.get("subject_type")
    if not subject_type or "subject_id" not in data:
        return jsonify({"error": "Missing required fields"}), 400

    try:
        trail = get_audit_trail().with_context(_request_context())
        record = trail.create_audit(
            EntityRef(subject_type, data["subject_id"]),
            action=data.get("action"),
            changes=data.get("changes"),
            associated=_optional_ref(data.get("associated_type"), data.get("associated_id")),
            comment=data.get("comment"),
            actor=data.get("actor"),
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except RepositoryError as e:
        logger.error(
            "AUDIT_CREATE_ERROR",
            extra={"subject_type": subject_type, "error": str(e)}
        )
        return jsonify({"error": "Failed to write audit"}), 500

    return jsonify(_record_to_json(record)), 201
