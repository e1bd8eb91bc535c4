from __future__ import annotations

import json
import logging
import os
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Mapping

from flask import (
    Flask,
    Response,
    g,
    jsonify,
    request,
    session as flask_session,
)
from werkzeug.security import check_password_hash, generate_password_hash

from .. import storage
from ..config import get_config
from ..constants import (
    DEFAULT_GUEST_NAME,
    GUEST_EMAIL_DOMAIN,
    GUEST_ID_COOKIE,
    GUEST_NAME_COOKIE,
)
from ..env import get_env
from ..importer import parse_import_rows, reconcile_points
from ..models import LactateProtocol, LactateTest, StagePoint, ValidationError
from ..services import build_export_dataframe, build_point_from_inputs, summarise_points
from ..storage import UnknownTestError

LOGGER = logging.getLogger(__name__)

FAILED_LOGINS: dict[str, list[datetime]] = defaultdict(list)
MAX_FAILED_ATTEMPTS = 5
FAILED_WINDOW_MINUTES = 10
MIN_PASSWORD_LENGTH = 8


def create_app() -> Flask:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    app = Flask(__name__)
    env_secret = get_env("SECRET") or os.environ.get("SECRET_KEY")
    if not env_secret and os.environ.get("FLASK_ENV") == "production":
        raise RuntimeError("SECRET_KEY/LACTATE_TRACKER_SECRET must be set in production.")
    app.secret_key = env_secret or "dev-secret"
    config = get_config()
    app.config.update(
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=os.environ.get("SESSION_COOKIE_SECURE", "0") == "1",
        GUEST_MODE=config.guest_mode,
        GUEST_COOKIE_MAX_AGE=int(timedelta(days=config.guest_cookie_days).total_seconds()),
    )

    @app.before_request
    def load_user() -> None:
        g.user = None
        g.new_guest = None
        user_id = flask_session.get("user_id")
        if user_id:
            g.user = _get_user_by_id(user_id)
        if g.user is None:
            guest_id = request.cookies.get(GUEST_ID_COOKIE)
            if guest_id:
                candidate = _get_user_by_id(guest_id)
                g.user = candidate if candidate and candidate.get("guest") else None
        if g.user is None and app.config["GUEST_MODE"] and request.path.startswith("/api/"):
            name = request.cookies.get(GUEST_NAME_COOKIE) or DEFAULT_GUEST_NAME
            g.user = _create_guest_user(name)
            g.new_guest = g.user

    @app.after_request
    def persist_guest(response: Response) -> Response:
        guest = getattr(g, "new_guest", None)
        if guest:
            _set_guest_cookies(app, response, guest)
        return response

    @app.errorhandler(UnknownTestError)
    def handle_unknown_test(exc: UnknownTestError):
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError):
        return jsonify({"error": str(exc)}), 400

    register_routes(app)
    register_api(app)
    return app


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not getattr(g, "user", None):
            return jsonify({"error": "Not signed in"}), 401
        return view(*args, **kwargs)

    return wrapped


def _payload() -> Mapping[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, Mapping):
        return data
    return request.form


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload:
            return payload.get(key)
    return None


def register_routes(app: Flask) -> None:
    @app.post("/login")
    def login():
        payload = _payload()
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""
        remote_addr = request.remote_addr or "unknown"
        if _is_rate_limited(remote_addr):
            return jsonify({"error": "Too many attempts. Try again in a few minutes."}), 429
        user = _get_user_by_email(email)
        if not user or not user.get("password_hash") or not check_password_hash(user["password_hash"], password):
            _record_failed_login(remote_addr)
            return jsonify({"error": "Invalid email or password."}), 401
        _clear_failed_login(remote_addr)
        flask_session["user_id"] = user["id"]
        return jsonify({"user": _public_user(user)})

    @app.post("/register")
    def register():
        payload = _payload()
        name = (payload.get("name") or "").strip() or "Runner"
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""
        if not email or not password:
            return jsonify({"error": "Email and password are required."}), 400
        if len(password) < MIN_PASSWORD_LENGTH:
            return jsonify({"error": f"Use a password with at least {MIN_PASSWORD_LENGTH} characters."}), 400
        if _get_user_by_email(email):
            return jsonify({"error": "Account already exists for that email."}), 409
        user = _create_user(name=name, email=email, password=password)
        flask_session["user_id"] = user["id"]
        return jsonify({"user": _public_user(user)}), 201

    @app.post("/logout")
    def logout():
        flask_session.clear()
        response = jsonify({"status": "ok"})
        response.delete_cookie(GUEST_ID_COOKIE)
        response.delete_cookie(GUEST_NAME_COOKIE)
        return response

    @app.post("/guest")
    def start_guest_session():
        name = (_payload().get("name") or "").strip() or DEFAULT_GUEST_NAME
        existing = g.user if g.user and g.user.get("guest") else None
        if existing:
            _rename_user(existing["id"], name)
            user = {**existing, "name": name}
        else:
            user = _create_guest_user(name)
        response = jsonify({"user": _public_user(user)})
        _set_guest_cookies(app, response, user)
        return response

    @app.get("/me")
    @login_required
    def me():
        return jsonify({"user": _public_user(g.user)})

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"}), 200


def register_api(app: Flask) -> None:
    @app.get("/api/tests")
    @login_required
    def api_tests():
        user_id = g.user["id"]
        counts = storage.count_points_by_test(user_id)
        tests = [_test_payload(test, counts.get(test.id, 0)) for test in storage.list_tests(user_id)]
        return jsonify({"tests": tests})

    @app.post("/api/tests")
    @login_required
    def api_create_test():
        payload = _payload()
        protocol_raw = payload.get("protocol")
        protocol = LactateProtocol.from_dict(
            protocol_raw if isinstance(protocol_raw, Mapping) else None,
            default=get_config().protocol,
        )
        test = storage.create_test(
            g.user["id"],
            title=payload.get("title"),
            notes=payload.get("notes"),
            protocol=protocol,
        )
        return jsonify({"test": _test_payload(test, 0)}), 201

    @app.get("/api/tests/<test_id>")
    @login_required
    def api_test_detail(test_id: str):
        test = storage.get_test(test_id, g.user["id"])
        points = storage.list_points(test_id, g.user["id"])
        return jsonify(_detail_payload(test, points))

    @app.delete("/api/tests/<test_id>")
    @login_required
    def api_delete_test(test_id: str):
        storage.delete_test(test_id, g.user["id"])
        return jsonify({"status": "ok"})

    @app.post("/api/tests/<test_id>/complete")
    @login_required
    def api_complete_test(test_id: str):
        test = storage.complete_test(test_id, g.user["id"])
        return jsonify({"test": test.to_dict()})

    @app.post("/api/tests/<test_id>/notes")
    @login_required
    def api_update_notes(test_id: str):
        notes = _payload().get("notes")
        test = storage.update_test_notes(test_id, g.user["id"], notes)
        return jsonify({"test": test.to_dict(), "message": "Notes updated."})

    @app.post("/api/tests/<test_id>/points")
    @login_required
    def api_upsert_point(test_id: str):
        payload = _payload()
        test = storage.get_test(test_id, g.user["id"])
        point = build_point_from_inputs(
            stage_index=_first(payload, "stageIndex", "stage_index", "stage"),
            pace=payload.get("pace"),
            lactate=_first(payload, "lactate", "lactateMmol", "lactate_mmol"),
            hr=_first(payload, "hr", "hrBpm", "hr_bpm"),
            rpe=payload.get("rpe"),
            speed=_first(payload, "speed", "speedKmh", "speed_kmh"),
            cadence=payload.get("cadence"),
            comments=payload.get("comments"),
            metrics=payload.get("metrics"),
        )
        saved = storage.upsert_point(
            test_id,
            g.user["id"],
            point,
            measured_at=_first(payload, "measuredAt", "measured_at"),
        )
        points = storage.list_points(test_id, g.user["id"])
        summary = summarise_points(points, num_stages=test.protocol.num_stages)
        return jsonify(
            {
                "point": saved.to_dict(),
                "summary": summary.to_dict(),
                "message": f"Saved stage {saved.stage_index}.",
            }
        )

    @app.post("/api/tests/<test_id>/import")
    @login_required
    def api_import_points(test_id: str):
        data = request.get_json(silent=True)
        if isinstance(data, Mapping):
            raw = data.get("raw") or ""
        else:
            raw = request.form.get("raw") or request.get_data(as_text=True)
        test = storage.get_test(test_id, g.user["id"])
        existing = storage.list_points(test_id, g.user["id"])
        result = parse_import_rows(raw)
        if not result.rows:
            return jsonify({"error": "Nothing imported.", "errors": result.errors}), 400
        saved = storage.import_points(test_id, g.user["id"], result.rows)
        merged = reconcile_points(existing, saved)
        summary = summarise_points(merged, num_stages=test.protocol.num_stages)
        return jsonify(
            {
                "imported": len(saved),
                "errors": result.errors,
                "metricKeys": result.metric_keys,
                "points": [point.to_dict() for point in merged],
                "summary": summary.to_dict(),
                "message": f"Imported {len(result.rows)} rows.",
            }
        )

    @app.get("/api/tests/<test_id>/summary")
    @login_required
    def api_test_summary(test_id: str):
        test = storage.get_test(test_id, g.user["id"])
        points = storage.list_points(test_id, g.user["id"])
        return jsonify(summarise_points(points, num_stages=test.protocol.num_stages).to_dict())

    @app.get("/api/tests/<test_id>/export")
    @login_required
    def api_export_test(test_id: str):
        test = storage.get_test(test_id, g.user["id"])
        points = storage.list_points(test_id, g.user["id"])
        csv_text = build_export_dataframe(points).to_csv(index=False)
        filename = f"lactate_test_{test.id}.csv"
        return Response(
            csv_text,
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )


def _test_payload(test: LactateTest, recorded: int) -> dict[str, Any]:
    payload = test.to_dict()
    payload["recordedStages"] = recorded
    payload["status"] = "Completed" if test.is_completed else "In progress"
    return payload


def _metric_keys(points: list[StagePoint]) -> list[str]:
    return sorted({key for point in points for key in point.metrics if key})


def _detail_payload(test: LactateTest, points: list[StagePoint]) -> dict[str, Any]:
    summary = summarise_points(points, num_stages=test.protocol.num_stages)
    return {
        "test": _test_payload(test, len(points)),
        "points": [point.to_dict() for point in points],
        "metricKeys": _metric_keys(points),
        "summary": summary.to_dict(),
    }


def _users_file() -> Path:
    return storage.data_dir() / "webapp" / "users.json"


def _load_users() -> list[dict[str, Any]]:
    users_file = _users_file()
    if not users_file.exists():
        users_file.parent.mkdir(parents=True, exist_ok=True)
        users_file.write_text(json.dumps({"users": []}, indent=2))
    raw = users_file.read_text().strip() or '{"users": []}'
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.warning("Could not parse %s; starting with an empty user list", users_file)
        payload = {"users": []}
    return payload.get("users", [])


def _save_users(users: list[dict[str, Any]]) -> None:
    _users_file().write_text(json.dumps({"users": users}, indent=2))


def _public_user(user: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": user["id"],
        "name": user.get("name"),
        "email": user.get("email"),
        "guest": bool(user.get("guest")),
    }


def _get_user_by_email(email: str) -> dict[str, Any] | None:
    for user in _load_users():
        if user.get("email") == email:
            return user
    return None


def _get_user_by_id(user_id: str) -> dict[str, Any] | None:
    for user in _load_users():
        if user.get("id") == user_id:
            return user
    return None


def _create_user(*, name: str, email: str, password: str | None, guest: bool = False) -> dict[str, Any]:
    users = _load_users()
    new_user = {
        "id": uuid.uuid4().hex,
        "name": name,
        "email": email,
        "password_hash": generate_password_hash(password) if password else None,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "guest": guest,
    }
    users.append(new_user)
    _save_users(users)
    return new_user


def _create_guest_user(name: str) -> dict[str, Any]:
    email = f"guest+{uuid.uuid4()}@{GUEST_EMAIL_DOMAIN}"
    user = _create_user(name=name, email=email, password=None, guest=True)
    LOGGER.info("Started guest session %s", user["id"])
    return user


def _rename_user(user_id: str, name: str) -> None:
    users = _load_users()
    for user in users:
        if user.get("id") == user_id:
            user["name"] = name
    _save_users(users)


def _set_guest_cookies(app: Flask, response: Response, user: Mapping[str, Any]) -> None:
    max_age = app.config["GUEST_COOKIE_MAX_AGE"]
    response.set_cookie(GUEST_ID_COOKIE, user["id"], max_age=max_age, httponly=True, samesite="Lax", path="/")
    response.set_cookie(
        GUEST_NAME_COOKIE, user.get("name") or DEFAULT_GUEST_NAME, max_age=max_age, samesite="Lax", path="/"
    )


def _record_failed_login(ip: str) -> None:
    now = datetime.now(timezone.utc)
    FAILED_LOGINS[ip].append(now)
    cutoff = now - timedelta(minutes=FAILED_WINDOW_MINUTES)
    FAILED_LOGINS[ip] = [ts for ts in FAILED_LOGINS[ip] if ts >= cutoff]


def _clear_failed_login(ip: str) -> None:
    FAILED_LOGINS.pop(ip, None)


def _is_rate_limited(ip: str) -> bool:
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(minutes=FAILED_WINDOW_MINUTES)
    recent = [ts for ts in FAILED_LOGINS.get(ip, []) if ts >= cutoff]
    FAILED_LOGINS[ip] = recent
    return len(recent) >= MAX_FAILED_ATTEMPTS
