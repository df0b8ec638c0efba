"""
Authentication routes: first-run setup, login, logout and session info.
"""

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user

from mailvault import db
from mailvault.models import User
from mailvault.auth import hash_password, verify_password, validate_password_strength, UserModel


bp = Blueprint('auth', __name__, url_prefix='/api/auth')


@bp.route('/setup', methods=['POST'])
def setup():
    """
    Create the first administrator account.

    Only allowed while no user exists.

    Request body:
        - username: Admin username (required)
        - password: Admin password (required, must pass strength check)
    """
    if User.query.count() > 0:
        return jsonify({'error': 'Setup already completed'}), 400

    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    if not username or not password:
        return jsonify({'error': 'Username and password are required'}), 400

    is_valid, error = validate_password_strength(password)
    if not is_valid:
        return jsonify({'error': error}), 400

    user = User(username=username, password_hash=hash_password(password), is_admin=True)
    db.session.add(user)
    db.session.commit()

    login_user(UserModel(user), remember=True)
    current_app.logger.info(f"Administrator account created: {username}")

    return jsonify({'id': user.id, 'username': user.username, 'message': 'Setup completed'}), 201


@bp.route('/login', methods=['POST'])
def login():
    """Log in with username and password."""
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    if not username or not password:
        return jsonify({'error': 'Username and password are required'}), 400

    user = User.query.filter_by(username=username).first()
    if not user or not verify_password(user.password_hash, password):
        current_app.logger.warning(f"Failed login attempt for user: {username}")
        return jsonify({'error': 'Invalid username or password'}), 401

    login_user(UserModel(user), remember=True)
    return jsonify({'id': user.id, 'username': user.username, 'is_admin': user.is_admin})


@bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out'})


@bp.route('/me', methods=['GET'])
@login_required
def me():
    return jsonify({
        'id': current_user.id,
        'username': current_user.username,
        'is_admin': current_user.is_admin
    })
