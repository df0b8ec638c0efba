"""
Authentication utilities for Flask-Login integration and password management.
"""

from functools import wraps

from flask import jsonify
from flask_login import UserMixin, current_user
from werkzeug.security import generate_password_hash, check_password_hash
from mailvault.models import User


def hash_password(password: str) -> str:
    """
    Hash a password using werkzeug's pbkdf2:sha256.

    Args:
        password: Plain text password

    Returns:
        Hashed password string
    """
    return generate_password_hash(password, method='pbkdf2:sha256')


def verify_password(password_hash: str, password: str) -> bool:
    """Verify a password against its hash."""
    return check_password_hash(password_hash, password)


def validate_password_strength(password: str) -> tuple[bool, str]:
    """
    Validate password meets security requirements.

    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit

    Returns:
        Tuple of (is_valid, error_message)
    """
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"

    if not any(c.isupper() for c in password):
        return False, "Password must contain at least one uppercase letter"

    if not any(c.islower() for c in password):
        return False, "Password must contain at least one lowercase letter"

    if not any(c.isdigit() for c in password):
        return False, "Password must contain at least one digit"

    return True, ""


def admin_required(view):
    """
    Restrict a view to authenticated administrators.

    Anonymous callers get 401, authenticated non-admins get 403.
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify({'error': 'Authentication required'}), 401
        if not current_user.is_admin:
            return jsonify({'error': 'Administrator privileges required'}), 403
        return view(*args, **kwargs)

    return wrapper


class UserModel(UserMixin):
    """
    Flask-Login user wrapper for the User database model.
    """

    def __init__(self, user: User):
        self.user = user

    def get_id(self):
        return str(self.user.id)

    @property
    def id(self):
        return self.user.id

    @property
    def username(self):
        return self.user.username

    @property
    def is_admin(self):
        return bool(self.user.is_admin)
