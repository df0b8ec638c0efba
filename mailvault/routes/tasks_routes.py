"""
Backup task routes - CRUD operations, execution and connection tests.
"""

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from mailvault import db
from mailvault.auth import admin_required
from mailvault.models import BackupRecord, BackupScope, BackupStatus, BackupTask, BackupType, StorageType
from mailvault.backup.executor import execute_backup_task
from mailvault.backup.storage import StorageAdapter
from mailvault.scheduler import (
    is_scheduler_initialized, sync_backup_tasks, trigger_backup_now, validate_cron_expression
)
from mailvault.utils.master_key import get_master_key_manager


bp = Blueprint('tasks', __name__, url_prefix='/api/tasks')

ENUM_FIELDS = {
    'backup_type': BackupType,
    'backup_scope': BackupScope,
    'storage_type': StorageType,
}

BOOLEAN_FIELDS = (
    'compression_enabled', 'encryption_enabled', 'include_attachments', 'include_logs', 'is_active'
)

TEXT_FIELDS = ('description', 'storage_path', 'source_path', 'exclude_patterns')


def _sync_scheduler():
    if is_scheduler_initialized():
        sync_backup_tasks()


def _paginate(query):
    page = max(request.args.get('page', 1, type=int), 1)
    per_page = min(max(request.args.get('per_page', 20, type=int), 1), 100)
    pagination = query.paginate(page=page, per_page=per_page, error_out=False)
    return {
        'items': [item.to_dict() for item in pagination.items],
        'total': pagination.total,
        'page': pagination.page,
        'per_page': pagination.per_page,
        'pages': pagination.pages
    }


def _apply_task_fields(task: BackupTask, data: dict, creating: bool):
    """
    Validate request data and copy it onto a task.

    Returns:
        Error message, or None when the data was applied
    """
    if creating:
        for field in ('name', 'backup_type', 'backup_scope', 'storage_type', 'storage_path'):
            if not data.get(field):
                return f"{field} is required"

    if 'name' in data:
        name = (data['name'] or '').strip()
        if not name:
            return 'name is required'
        existing = BackupTask.query.filter_by(name=name).first()
        if existing and existing.id != task.id:
            return 'Task name already exists'
        task.name = name

    for field, enum_cls in ENUM_FIELDS.items():
        if field in data:
            try:
                setattr(task, field, enum_cls(data[field]))
            except ValueError:
                return f"Invalid {field}. Valid options: {[item.value for item in enum_cls]}"

    for field in TEXT_FIELDS:
        if field in data:
            setattr(task, field, data[field] or None)

    for field in BOOLEAN_FIELDS:
        if field in data:
            setattr(task, field, bool(data[field]))

    if 'schedule_expression' in data:
        expression = (data['schedule_expression'] or '').strip() or None
        if expression:
            try:
                validate_cron_expression(expression)
            except ValueError as e:
                return f"Invalid schedule expression: {e}"
        task.schedule_expression = expression

    if 'retention_days' in data:
        retention_days = data['retention_days']
        if not isinstance(retention_days, int) or retention_days < 1:
            return 'retention_days must be a positive integer'
        task.retention_days = retention_days

    if 'max_backup_size' in data:
        max_size = data['max_backup_size']
        if max_size is not None and (not isinstance(max_size, int) or max_size < 1):
            return 'max_backup_size must be a positive integer'
        task.max_backup_size = max_size

    if data.get('encryption_key'):
        task.encryption_key_encrypted = get_master_key_manager(current_app).encrypt_secret(data['encryption_key'])

    if not task.storage_path:
        return 'storage_path is required'

    if task.encryption_enabled and not task.encryption_key_encrypted:
        return 'encryption_key is required when encryption is enabled'

    return None


@bp.route('/', methods=['GET'])
@admin_required
def list_tasks():
    """
    Get a page of backup tasks.

    Query params:
        - page: Page number (default: 1)
        - per_page: Page size (default: 20, max: 100)
    """
    return jsonify(_paginate(BackupTask.query.order_by(BackupTask.created_at.desc())))


@bp.route('/active', methods=['GET'])
@admin_required
def list_active_tasks():
    tasks = BackupTask.query.filter_by(is_active=True).order_by(BackupTask.name).all()
    return jsonify([task.to_dict() for task in tasks])


@bp.route('/failed', methods=['GET'])
@admin_required
def list_failed_tasks():
    """Tasks whose most recent run failed, newest failure first."""
    tasks = BackupTask.query.filter_by(last_backup_status=BackupStatus.FAILED).order_by(
        BackupTask.last_backup_time.desc()
    ).all()
    return jsonify([task.to_dict() for task in tasks])


@bp.route('/<int:task_id>', methods=['GET'])
@admin_required
def get_task(task_id):
    return jsonify(db.get_or_404(BackupTask, task_id).to_dict())


@bp.route('/', methods=['POST'])
@admin_required
def create_task():
    """
    Create a new backup task.

    Request body:
        - name, backup_type, backup_scope, storage_type, storage_path (required)
        - source_path, schedule_expression, retention_days, max_backup_size,
          exclude_patterns, encryption_key (optional)
        - compression_enabled, encryption_enabled, include_attachments,
          include_logs, is_active (optional booleans)
    """
    data = request.get_json(silent=True) or {}

    task = BackupTask(created_by=current_user.username)
    error = _apply_task_fields(task, data, creating=True)
    if error:
        return jsonify({'error': error}), 400

    db.session.add(task)
    db.session.commit()
    _sync_scheduler()

    current_app.logger.info(f"Backup task created: {task.name}")
    return jsonify({'id': task.id, 'message': 'Backup task created successfully'}), 201


@bp.route('/<int:task_id>', methods=['PUT'])
@admin_required
def update_task(task_id):
    task = db.get_or_404(BackupTask, task_id)
    data = request.get_json(silent=True) or {}

    error = _apply_task_fields(task, data, creating=False)
    if error:
        db.session.rollback()
        return jsonify({'error': error}), 400

    db.session.commit()
    _sync_scheduler()

    return jsonify({'message': 'Backup task updated successfully'})


@bp.route('/<int:task_id>', methods=['DELETE'])
@admin_required
def delete_task(task_id):
    """Delete a task and its records. Stored artifacts are left in place."""
    task = db.get_or_404(BackupTask, task_id)
    name = task.name

    db.session.delete(task)
    db.session.commit()
    _sync_scheduler()

    current_app.logger.info(f"Backup task deleted: {name}")
    return jsonify({'message': f"Backup task '{name}' deleted successfully"})


@bp.route('/<int:task_id>/toggle', methods=['POST'])
@admin_required
def toggle_task(task_id):
    task = db.get_or_404(BackupTask, task_id)

    task.is_active = not task.is_active
    db.session.commit()
    _sync_scheduler()

    return jsonify({
        'is_active': task.is_active,
        'message': f"Task {'activated' if task.is_active else 'deactivated'} successfully"
    })


@bp.route('/<int:task_id>/execute', methods=['POST'])
@admin_required
def execute_task(task_id):
    """
    Run a backup task now.

    Queued on the scheduler when this process owns one; otherwise the run
    happens within the request and its record is returned.
    """
    task = db.get_or_404(BackupTask, task_id)

    if is_scheduler_initialized():
        try:
            trigger_backup_now(task_id)
        except (RuntimeError, ValueError) as e:
            return jsonify({'error': str(e)}), 500
        return jsonify({'message': f"Backup task '{task.name}' has been queued for immediate execution"}), 202

    record = execute_backup_task(task_id, allow_inactive=True)
    return jsonify(record.to_dict(include_logs=True))


@bp.route('/<int:task_id>/test-connection', methods=['POST'])
@admin_required
def test_connection(task_id):
    task = db.get_or_404(BackupTask, task_id)

    connected = StorageAdapter(current_app.config).test_connection(task.storage_type, task.storage_path)
    return jsonify({
        'storage_type': task.storage_type.value,
        'storage_path': task.storage_path,
        'connected': connected
    })


@bp.route('/<int:task_id>/records', methods=['GET'])
@admin_required
def get_task_records(task_id):
    """Paged backup records of one task, newest first."""
    db.get_or_404(BackupTask, task_id)
    query = BackupRecord.query.filter_by(task_id=task_id).order_by(BackupRecord.created_at.desc())
    return jsonify(_paginate(query))
