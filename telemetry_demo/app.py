import logging
import threading
import time
from datetime import datetime, timezone

from flask import Flask, Response, g, jsonify, request
from opentelemetry import context, propagate, trace
from opentelemetry.trace import Status, StatusCode
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .recorder import RequestOutcome
from .telemetry import severity_for_status

logger = logging.getLogger(__name__)

# label for requests no URL rule matched; raw paths would be unbounded label values
UNMATCHED_ROUTE = "<unmatched>"

SEED_USERS = (
    {"id": 1, "name": "Alice", "email": "alice@example.com"},
    {"id": 2, "name": "Bob", "email": "bob@example.com"},
)

SEED_PROFILES = (
    {"id": 1, "name": "Alice Profile", "email": "alice@example.com"},
    {"id": 2, "name": "Bob Profile", "email": "bob@example.com"},
)

UNTRACKED_PATHS = ('/metrics',)


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


class UserStore:
    """In-memory users and profiles with lock"""

    def __init__(self, users=SEED_USERS, profiles=SEED_PROFILES):
        self._lock = threading.Lock()
        self._users = [dict(u) for u in users]
        self._profiles = [dict(p) for p in profiles]

    def list_users(self):
        with self._lock:
            return [dict(u) for u in self._users]

    def list_profiles(self):
        with self._lock:
            return [dict(p) for p in self._profiles]

    def get(self, user_id):
        with self._lock:
            for user in self._users:
                if user["id"] == user_id:
                    return dict(user)
        return None

    def create(self, name, email):
        with self._lock:
            new_id = max((u["id"] for u in self._users), default=0) + 1
            user = {"id": new_id, "name": name, "email": email, "createdAt": _now_iso()}
            self._users.append(user)
            return dict(user)

    def update(self, user_id, name=None, email=None):
        with self._lock:
            for user in self._users:
                if user["id"] == user_id:
                    if name:
                        user["name"] = name
                    if email:
                        user["email"] = email
                    user["updatedAt"] = _now_iso()
                    return dict(user)
        return None

    def delete(self, user_id):
        with self._lock:
            for index, user in enumerate(self._users):
                if user["id"] == user_id:
                    del self._users[index]
                    return True
        return False


def _route_label():
    return request.url_rule.rule if request.url_rule is not None else UNMATCHED_ROUTE


def _json_object():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        return None
    return data


def create_app(telemetry, store=None, service_version="1.0.0"):
    app = Flask(__name__)
    store = store or UserStore()
    started_at = time.monotonic()

    app.config["TELEMETRY"] = telemetry
    app.config["USER_STORE"] = store

    @app.before_request
    def before_request_timing():
        g.start_time = time.monotonic()
        if request.path in UNTRACKED_PATHS:
            return
        route = _route_label()
        parent = propagate.extract(request.headers)
        span = telemetry.tracer.start_span(
            f"{request.method} {route}",
            context=parent,
            kind=trace.SpanKind.SERVER,
            attributes={"http.method": request.method, "http.route": route, "http.target": request.path},
        )
        g.span = span
        g.span_token = context.attach(trace.set_span_in_context(span, parent))

    @app.after_request
    def after_request_metrics(response):
        if request.path in UNTRACKED_PATHS:
            return response
        start_time = g.get("start_time", time.monotonic())
        route = _route_label()
        span = g.get("span")
        if span is not None:
            span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 500:
                span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
        outcome = RequestOutcome(
            method=request.method,
            route=route,
            status=response.status_code,
            duration_ms=max(0, int(round((time.monotonic() - start_time) * 1000))),
        )
        telemetry.record_request(outcome)
        telemetry.emit_log(
            severity_for_status(outcome.status),
            f"{outcome.method} {request.path} => {outcome.status}",
            {
                "method": outcome.method,
                "route": outcome.route,
                "status": outcome.status,
                "duration": outcome.duration_ms,
            },
        )
        return response

    @app.teardown_request
    def end_request_span(exc):
        span = g.pop("span", None)
        token = g.pop("span_token", None)
        if span is not None:
            if exc is not None:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.end()
        if token is not None:
            context.detach(token)

    @app.route('/', methods=['GET'])
    def index():
        return jsonify({
            "message": "Hello from the instrumented demo app!",
            "version": service_version,
            "endpoints": {
                "health": "/health",
                "users": "/users",
                "profiles": "/profiles",
                "metrics": "/metrics",
            },
        })

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({
            "status": "ok",
            "timestamp": _now_iso(),
            "uptime": time.monotonic() - started_at,
        })

    @app.route('/users', methods=['GET'])
    def list_users():
        users = store.list_users()
        return jsonify({"success": True, "count": len(users), "data": users})

    @app.route('/profiles', methods=['GET'])
    def list_profiles():
        profiles = store.list_profiles()
        return jsonify({"success": True, "count": len(profiles), "data": profiles})

    @app.route('/users/<int:user_id>', methods=['GET'])
    def get_user(user_id):
        user = store.get(user_id)
        if user is None:
            return jsonify({"success": False, "message": f"User with id {user_id} not found"}), 404
        return jsonify({"success": True, "data": user})

    @app.route('/users', methods=['POST'])
    def create_user():
        data = _json_object()
        if data is None:
            logger.error("/users: Request body must be a JSON object")
            return jsonify({"success": False, "message": "Request body must be a JSON object"}), 400
        name = data.get("name")
        email = data.get("email")
        if not name or not email:
            logger.error("/users: Name and email are required")
            return jsonify({"success": False, "message": "Name and email are required"}), 400

        user = store.create(name, email)
        logger.info(f"/users: User created: {user}")
        return jsonify({"success": True, "message": "User created successfully", "data": user}), 201

    @app.route('/users/<int:user_id>', methods=['PUT'])
    def update_user(user_id):
        data = _json_object()
        if data is None:
            return jsonify({"success": False, "message": "Request body must be a JSON object"}), 400
        user = store.update(user_id, name=data.get("name"), email=data.get("email"))
        if user is None:
            return jsonify({"success": False, "message": f"User with id {user_id} not found"}), 404
        return jsonify({"success": True, "message": "User updated successfully", "data": user})

    @app.route('/users/<int:user_id>', methods=['DELETE'])
    def delete_user(user_id):
        if not store.delete(user_id):
            return jsonify({"success": False, "message": f"User with id {user_id} not found"}), 404
        return '', 204

    @app.route('/metrics', methods=['GET'])
    def metrics():
        registry = telemetry.registry
        if registry is None:
            return Response("", mimetype=CONTENT_TYPE_LATEST)
        return Response(generate_latest(registry), mimetype=CONTENT_TYPE_LATEST)

    return app
