import csv
import io
import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Dict, List, Optional

from flask import Blueprint, Response, jsonify, request

from api.common import dump, today, visible_households
from api.container import get_services
from api.services.auth import current_user, login_required, require_feature
from api.services.storage import BaseStore
from lib.error_handler import AppError, ValidationError
from lib.models import Alert, AlertStatus

logger = logging.getLogger(__name__)

reports_bp = Blueprint('reports', __name__, url_prefix='/api/reports')

EXPORT_TYPES = ('alerts', 'households', 'analytics')

ALERT_COLUMNS = ['id', 'date', 'household_id', 'household_name', 'status', 'level', 'wbgt',
                 'attempts', 'first_trigger_at', 'closed_at']
HOUSEHOLD_COLUMNS = ['id', 'name', 'phone', 'address_grid', 'risk_flag', 'is_active', 'contacts', 'created_at']
ANALYTICS_COLUMNS = ['date', 'total'] + [s.value for s in AlertStatus] + ['response_rate']


def _parse_date(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{name} must be YYYY-MM-DD")


def answered_ok(alert: Alert) -> bool:
    return alert.status == AlertStatus.OK or alert.metadata.last_response_code == '1'


def response_rate(alerts: List[Alert]) -> float:
    if not alerts:
        return 0.0
    return round(sum(1 for a in alerts if answered_ok(a)) / len(alerts) * 100, 1)


def average_response_minutes(alerts: List[Alert]) -> Optional[float]:
    durations = [
        (a.closed_at - a.first_trigger_at).total_seconds() / 60
        for a in alerts if a.closed_at is not None
    ]
    return round(sum(durations) / len(durations), 1) if durations else None


def _alerts_in_range(start: date, end: date) -> List[Alert]:
    households = visible_households(current_user())
    return get_services().store.list_alerts(household_ids=[h.id for h in households], start=start, end=end)


@reports_bp.route('/summary', methods=['GET'])
@login_required
def summary():
    end = _parse_date(request.args.get('end_date'), 'end_date') or today()
    start = _parse_date(request.args.get('start_date'), 'start_date') or end - timedelta(days=30)
    if start > end:
        raise ValidationError("start_date must not be after end_date")

    alerts = _alerts_in_range(start, end)
    return jsonify({'data': {
        'total_alerts': len(alerts),
        'breakdown': BaseStore.summarize(alerts),
        'response_rate': response_rate(alerts),
        'period': {'start': start.isoformat(), 'end': end.isoformat()},
    }})


@reports_bp.route('/monthly', methods=['GET'])
@login_required
def monthly():
    current = today()
    try:
        year = int(request.args.get('year', current.year))
        month = int(request.args.get('month', current.month))
        start = date(year, month, 1)
    except ValueError:
        raise ValidationError("year and month must form a valid month")
    end = (date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)) - timedelta(days=1)

    alerts = _alerts_in_range(start, end)
    return jsonify({'data': {
        'year': year,
        'month': month,
        'total_alerts': len(alerts),
        'response_rate': response_rate(alerts),
        'average_response_minutes': average_response_minutes(alerts),
        'breakdown': BaseStore.summarize(alerts),
    }})


def analytics_rows(alerts: List[Alert]) -> List[Dict]:
    by_date = defaultdict(list)
    for alert in alerts:
        by_date[alert.date.isoformat()].append(alert)
    rows = []
    for day in sorted(by_date):
        counts = BaseStore.summarize(by_date[day])
        rows.append({'date': day, **counts, 'response_rate': response_rate(by_date[day])})
    return rows


def export_rows(export_type: str) -> List[Dict]:
    households = visible_households(current_user())
    if export_type == 'households':
        return [{
            **{k: v for k, v in dump(h).items() if k in HOUSEHOLD_COLUMNS},
            'contacts': len(h.contacts),
        } for h in households]

    names = {h.id: h.name for h in households}
    alerts = get_services().store.list_alerts(household_ids=names.keys())
    if export_type == 'analytics':
        return analytics_rows(alerts)
    return [{
        **{k: v for k, v in dump(a).items() if k in ALERT_COLUMNS},
        'household_name': names.get(a.household_id),
        'attempts': a.metadata.attempts,
    } for a in alerts]


def to_csv(rows: List[Dict], columns: List[str]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction='ignore')
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()


@reports_bp.route('/export', methods=['GET'])
@login_required
@require_feature('export')
def export():
    export_type = request.args.get('type', 'alerts')
    export_format = request.args.get('format', 'csv')
    if export_type not in EXPORT_TYPES:
        raise ValidationError(f"type must be one of {', '.join(EXPORT_TYPES)}")
    if export_format == 'pdf':
        raise AppError("PDF export is not implemented", status_code=501,
                       user_message='PDF export is not supported yet')
    if export_format not in ('csv', 'json'):
        raise ValidationError("format must be csv or json")

    rows = export_rows(export_type)
    stamp = today().isoformat()
    logger.info(f"User {current_user().id} exported {len(rows)} {export_type} rows as {export_format}")

    if export_format == 'json':
        return jsonify({
            'export_info': {'type': export_type, 'exported_at': stamp, 'count': len(rows)},
            'data': rows,
        })

    columns = {'alerts': ALERT_COLUMNS, 'households': HOUSEHOLD_COLUMNS, 'analytics': ANALYTICS_COLUMNS}[export_type]
    return Response(
        to_csv(rows, columns),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{export_type}_export_{stamp}.csv"'},
    )
