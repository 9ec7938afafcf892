"""Auth blueprint — /auth/*

Email + password session login for buyers and admins. Guest buyers have
no password and use magic links instead.
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash

from commerce.extensions import limiter
from commerce.models.user import User

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute")
def login():
    """Standard email + password login. Accepts JSON or form data."""
    if current_user.is_authenticated:
        return jsonify({"user_id": current_user.id}), 200

    data = request.get_json(silent=True) or request.form
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""
    remember = bool(data.get("remember"))

    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    user = User.query.filter_by(email=email).first()

    if (
        user is None
        or user.password_hash is None
        or not check_password_hash(user.password_hash, password)
    ):
        return jsonify({"error": "Invalid email or password."}), 401

    if not user.is_active:
        return jsonify({"error": "Your account has been deactivated."}), 403

    login_user(user, remember=remember)
    return jsonify({"user_id": user.id}), 200


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"status": "logged_out"}), 200
