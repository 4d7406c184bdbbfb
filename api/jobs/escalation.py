import logging
import threading
from collections import Counter
from datetime import datetime
from typing import Optional

from api.services.escalation import EscalationEngine
from api.services.storage import BaseStore
from lib.config import Settings
from lib.models import to_local, utcnow

logger = logging.getLogger(__name__)


class EscalationJob:
    name = 'escalation'

    def __init__(self, settings: Settings, store: BaseStore, engine: EscalationEngine):
        self.settings = settings
        self.store = store
        self.engine = engine
        self._running = threading.Lock()
        self.last_run: Optional[datetime] = None
        self.last_result: Optional[dict] = None

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    async def execute(self, now: Optional[datetime] = None) -> dict:
        if not self._running.acquire(blocking=False):
            logger.warning("Escalation job already running, skipping")
            return {'skipped': 'already_running'}
        try:
            now = now or utcnow()
            today = to_local(now, self.settings.timezone).date()
            alerts = [a for a in self.store.todays_alerts(today) if not a.is_closed]
            actions = Counter()
            for alert in alerts:
                try:
                    decision = await self.engine.step(alert, now)
                    actions[decision.action.value] += 1
                except Exception as e:
                    logger.error(f"Escalation failed for alert {alert.id}: {str(e)}", exc_info=True)
                    actions['error'] += 1
            result = {'checked': len(alerts), 'actions': dict(actions)}
            if alerts:
                logger.info(f"Escalation run finished: {result}")
            self.last_result = result
            return result
        finally:
            self.last_run = utcnow()
            self._running.release()
