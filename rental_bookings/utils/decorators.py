from functools import wraps

from flask import jsonify, session

from rental_bookings.models.user import Actor


def current_actor() -> Actor:
    """Identity placed in the session by the auth provider."""
    return Actor(user_id=str(session.get("uid")), role=session.get("role") or "")


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if "uid" not in session:
            return jsonify({"error": "authentication", "message": "Please login first"}), 401
        return fn(*args, **kwargs)

    return wrapper


def role_required(*roles):
    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            role = session.get("role")
            if role not in roles:
                return jsonify({"error": "authorization", "message": "Insufficient permission"}), 403
            return fn(*args, **kwargs)

        return wrapper

    return deco
