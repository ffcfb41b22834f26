"""
Order import API.

Start, cancel and poll historical order imports. Imports run in the
background; the start endpoint returns the job immediately.
"""
from datetime import date

from flask import Blueprint, request, jsonify, g

from ..middleware.shop_auth import require_shop_auth
from ..models import JobKind
from ..services.order_import import OrderImportService, MODE_NEW
from ..services.migration_jobs import JobTracker
from ..utils.errors import bad_request, ErrorCode

imports_bp = Blueprint('imports', __name__)


def _parse_date(value):
    try:
        return date.fromisoformat(str(value)[:10])
    except (TypeError, ValueError):
        return None


@imports_bp.route('', methods=['POST'])
@require_shop_auth
def start_import():
    """
    Start an order import.

    Request body:
    {
        "start_date": "2024-01-01",
        "end_date": "2024-12-31",
        "mode": "new",          // 'new' skips orders already imported, 'all' recalculates them
        "update_tiers": true
    }
    """
    data = request.get_json(silent=True) or {}

    for field in ('start_date', 'end_date'):
        if not data.get(field):
            return bad_request(f'Missing required field: {field}', ErrorCode.MISSING_FIELD)

    start_date = _parse_date(data['start_date'])
    end_date = _parse_date(data['end_date'])
    if start_date is None or end_date is None:
        return bad_request('Dates must be YYYY-MM-DD', ErrorCode.INVALID_FIELD)

    service = OrderImportService(g.tenant_id)
    job = service.start_import(
        start_date,
        end_date,
        mode=data.get('mode', MODE_NEW),
        update_tiers=bool(data.get('update_tiers', True)),
        started_by=request.headers.get('X-Staff-Email', g.shop),
    )

    return jsonify({'success': True, 'job': job.to_dict()}), 202


@imports_bp.route('', methods=['GET'])
@require_shop_auth
def list_imports():
    """
    List recent jobs.

    Query params:
    - limit: Max jobs (default 20, max 100)
    - type: order_import or reconciliation
    """
    limit = min(request.args.get('limit', 20, type=int), 100)
    kind = request.args.get('type')
    if kind and kind not in {k.value for k in JobKind}:
        return bad_request(f'Unknown job type {kind}', ErrorCode.INVALID_FIELD)

    jobs = JobTracker(g.tenant_id).list_jobs(limit=limit, kind=kind)
    return jsonify({'jobs': [job.to_dict() for job in jobs], 'total': len(jobs)})


@imports_bp.route('/<int:job_id>', methods=['GET'])
@require_shop_auth
def get_import(job_id: int):
    """Job status with counters, progress and errors."""
    job = JobTracker(g.tenant_id).get_job(job_id, refresh=True)
    return jsonify({'job': job.to_dict()})


@imports_bp.route('/<int:job_id>/cancel', methods=['POST'])
@require_shop_auth
def cancel_import(job_id: int):
    """Cancel a pending or running job. Running imports stop after the current page."""
    job = JobTracker(g.tenant_id).cancel(job_id)
    return jsonify({'success': True, 'job': job.to_dict()})
