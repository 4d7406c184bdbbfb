from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
import logging
from typing import Optional

from api.admin import admin_bp
from api.alerts import alerts_bp
from api.billing import billing_bp
from api.container import Services, build_services, get_services
from api.households import households_bp
from api.jobs.escalation import EscalationJob
from api.jobs.heat_alert import HeatAlertJob
from api.jobs.scheduler import JobScheduler
from api.reports import reports_bp
from api.webhooks import webhooks_bp
from lib.config import Settings, get_settings
from lib.error_handler import AppError
from lib.models import utcnow
from lib.monitoring import configure_logging, init_request_context

# Create logger for this file
logger = logging.getLogger(__name__)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AppError)
    def handle_app_error(e: AppError):
        log = logger.error if e.status_code >= 500 else logger.warning
        log(f"{type(e).__name__} ({e.status_code}): {e.message}")
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({'error': e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        logger.error(f"Unhandled error: {str(e)}", exc_info=True)
        return jsonify({'error': 'Internal server error'}), 500


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> Flask:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    # Initialize Flask
    app = Flask(__name__)
    app.json.ensure_ascii = False

    services = services or build_services(settings)
    heat_job = HeatAlertJob(settings, services.store, services.weather, services.engine, services.notifier)
    escalation_job = EscalationJob(settings, services.store, services.engine)
    services.scheduler = JobScheduler(settings, heat_job, escalation_job)
    app.extensions['heatwatch'] = services

    init_request_context(app)
    register_error_handlers(app)
    for blueprint in (households_bp, alerts_bp, billing_bp, reports_bp, admin_bp, webhooks_bp):
        app.register_blueprint(blueprint)

    @app.route('/health', methods=['GET'])
    def health():
        """Basic health check"""
        services = get_services()
        return jsonify({
            'status': 'healthy',
            'timestamp': utcnow().isoformat(),
            'storage': services.store.backend,
            'stub_mode': {
                'twilio': services.telephony.is_stub,
                'line': not services.line.is_configured,
                'stripe': not services.billing.is_configured,
                'auth': services.auth.supabase is None,
            },
        })

    @app.route('/status', methods=['GET'])
    def status():
        """Scheduler, job and weather cache status"""
        services = get_services()
        return jsonify({
            'scheduler': services.scheduler.status(),
            'weather_cache': services.weather.cache_stats(),
        })

    if settings.scheduler_enabled:
        services.scheduler.start()

    logger.info(f"Application initialized (storage={services.store.backend}, "
                f"scheduler={'on' if settings.scheduler_enabled else 'off'})")
    return app
