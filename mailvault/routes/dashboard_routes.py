"""
Dashboard routes - Overview and statistics endpoints.
"""

import os
from datetime import datetime, timedelta

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func

from mailvault import db
from mailvault.auth import admin_required
from mailvault.models import BackupRecord, BackupStatus, BackupTask, format_size
from mailvault.backup.files import get_directory_size, get_file_count
from mailvault.scheduler import get_scheduler_diagnostics, is_scheduler_running


bp = Blueprint('dashboard', __name__, url_prefix='/api/dashboard')


@bp.route('/statistics', methods=['GET'])
@admin_required
def get_statistics():
    """
    Get backup statistics.

    Returns:
        JSON with task counts, record counts by status, stored volume,
        the last 24 hours of activity and scheduler status
    """
    status_counts = dict(
        db.session.query(BackupRecord.backup_status, func.count(BackupRecord.id))
        .group_by(BackupRecord.backup_status).all()
    )

    total_size = db.session.query(func.coalesce(func.sum(BackupRecord.backup_size), 0)).filter(
        BackupRecord.backup_status == BackupStatus.SUCCESS
    ).scalar()

    since = datetime.utcnow() - timedelta(hours=24)
    recent = BackupRecord.query.filter(BackupRecord.created_at >= since)

    last_backup = BackupRecord.query.filter(BackupRecord.end_time.isnot(None)).order_by(
        BackupRecord.end_time.desc()
    ).first()

    successful = status_counts.get(BackupStatus.SUCCESS, 0)
    failed = status_counts.get(BackupStatus.FAILED, 0)
    finished = successful + failed

    return jsonify({
        'total_tasks': BackupTask.query.count(),
        'active_tasks': BackupTask.query.filter_by(is_active=True).count(),
        'failed_tasks': BackupTask.query.filter_by(last_backup_status=BackupStatus.FAILED).count(),
        'records_by_status': {status.value: count for status, count in status_counts.items()},
        'success_rate': round(successful * 100.0 / finished, 2) if finished else 0.0,
        'total_backup_size': total_size,
        'formatted_total_size': format_size(total_size),
        'last_24h': {
            'total': recent.count(),
            'failed': recent.filter(BackupRecord.backup_status == BackupStatus.FAILED).count()
        },
        'last_backup': last_backup.to_dict() if last_backup else None,
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped'
    })


@bp.route('/scheduler-diagnostics', methods=['GET'])
@admin_required
def scheduler_diagnostics():
    return jsonify(get_scheduler_diagnostics())


@bp.route('/sources', methods=['GET'])
@admin_required
def get_sources():
    """Size and file count of each mail data directory."""
    sources = []
    for label, key in (
        ('attachments', 'MAIL_ATTACHMENTS_DIR'),
        ('logs', 'MAIL_LOGS_DIR'),
        ('certificates', 'MAIL_CERTIFICATES_DIR'),
    ):
        path = current_app.config[key]
        size = get_directory_size(path)
        sources.append({
            'name': label,
            'path': path,
            'exists': bool(path) and os.path.isdir(path),
            'size_bytes': size,
            'formatted_size': format_size(size),
            'file_count': get_file_count(path)
        })

    return jsonify(sources)
