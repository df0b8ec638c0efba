"""
Backup record routes - history, verification, restore and deletion.
"""

from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify, request

from mailvault import db
from mailvault.auth import admin_required
from mailvault.models import BackupRecord, BackupStatus, VerificationStatus
from mailvault.backup.compression import CompressionError
from mailvault.backup.executor import BackupError, BackupExecutor
from mailvault.backup.database import DatabaseBackupError
from mailvault.backup.files import FileBackupError
from mailvault.backup.storage import StorageError
from mailvault.utils.crypto import EncryptionError
from .tasks_routes import _paginate


bp = Blueprint('records', __name__, url_prefix='/api/records')

RESTORE_ERRORS = (BackupError, CompressionError, DatabaseBackupError, FileBackupError, EncryptionError)


@bp.route('/', methods=['GET'])
@admin_required
def list_records():
    """
    Get backup records with filtering and pagination.

    Query params:
        - status: Filter by status (SUCCESS/FAILED/RUNNING/CANCELLED/PARTIAL)
        - task_id: Filter by task ID
        - days: Only show backups from last N days
        - page, per_page: Pagination
    """
    query = BackupRecord.query

    status_filter = request.args.get('status')
    if status_filter:
        try:
            query = query.filter(BackupRecord.backup_status == BackupStatus(status_filter.upper()))
        except ValueError:
            return jsonify({'error': 'Invalid status filter'}), 400

    task_id_filter = request.args.get('task_id', type=int)
    if task_id_filter:
        query = query.filter(BackupRecord.task_id == task_id_filter)

    days_filter = request.args.get('days', type=int)
    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupRecord.created_at >= cutoff_date)

    return jsonify(_paginate(query.order_by(BackupRecord.created_at.desc())))


@bp.route('/restorable', methods=['GET'])
@admin_required
def list_restorable_records():
    """Successful, restorable backups that have not been found corrupted."""
    records = BackupRecord.query.filter(
        BackupRecord.backup_status == BackupStatus.SUCCESS,
        BackupRecord.is_restorable.is_(True),
        BackupRecord.verification_status != VerificationStatus.CORRUPTED
    ).order_by(BackupRecord.created_at.desc()).all()
    return jsonify([record.to_dict() for record in records])


@bp.route('/<int:record_id>', methods=['GET'])
@admin_required
def get_record(record_id):
    record = db.get_or_404(BackupRecord, record_id)
    return jsonify(record.to_dict(include_logs=True))


@bp.route('/<int:record_id>/verify', methods=['POST'])
@admin_required
def verify_record(record_id):
    record = db.get_or_404(BackupRecord, record_id)

    status = BackupExecutor(record.task).verify(record)
    return jsonify({
        'id': record.id,
        'verification_status': status.value,
        'is_restorable': record.is_restorable,
        'last_verified_at': record.last_verified_at.isoformat()
    })


@bp.route('/<int:record_id>/restore', methods=['POST'])
@admin_required
def restore_record(record_id):
    """
    Restore a backup.

    Request body:
        - target_directory: Where restored files go (optional)
    """
    record = db.get_or_404(BackupRecord, record_id)
    data = request.get_json(silent=True) or {}

    try:
        result = BackupExecutor(record.task).restore(record, data.get('target_directory'))
    except RESTORE_ERRORS as e:
        current_app.logger.error(f"Restore of {record.backup_name} failed: {e}")
        return jsonify({'error': str(e)}), 400

    result['restored_count'] = record.restored_count
    return jsonify(result)


@bp.route('/<int:record_id>', methods=['DELETE'])
@admin_required
def delete_record(record_id):
    """Delete a backup: stored copy, local artifact and record."""
    record = db.get_or_404(BackupRecord, record_id)
    name = record.backup_name

    try:
        BackupExecutor(record.task).delete_backup(record)
    except StorageError as e:
        return jsonify({'error': str(e)}), 500

    return jsonify({'message': f"Backup '{name}' deleted successfully"})
