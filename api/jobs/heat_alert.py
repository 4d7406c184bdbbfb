import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from api.services.escalation import EscalationEngine
from api.services.notifier import FALLBACK_SMS, Notifier
from api.services.storage import BaseStore
from api.services.weather import WeatherService
from lib.config import Settings
from lib.escalation import in_quiet_hours, judge_alert
from lib.models import Alert, AlertMetadata, Household, to_local, utcnow

logger = logging.getLogger(__name__)

DEFAULT_GRID = 'default'


def group_by_grid(households: List[Household]) -> Dict[str, List[Household]]:
    groups = defaultdict(list)
    for household in households:
        groups[household.address_grid or DEFAULT_GRID].append(household)
    return dict(groups)


class HeatAlertJob:
    """Opens an alert and places the first call for every household in a hot grid"""

    name = 'heat_alert'

    def __init__(self, settings: Settings, store: BaseStore, weather: WeatherService,
                 engine: EscalationEngine, notifier: Notifier):
        self.settings = settings
        self.store = store
        self.weather = weather
        self.engine = engine
        self.notifier = notifier
        self._running = threading.Lock()
        self.last_run: Optional[datetime] = None
        self.last_result: Optional[dict] = None

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    async def execute(self, now: Optional[datetime] = None, force: bool = False) -> dict:
        if not self._running.acquire(blocking=False):
            logger.warning("Heat alert job already running, skipping")
            return {'skipped': 'already_running'}
        try:
            result = await self._execute(now or utcnow(), force)
            self.last_result = result
            return result
        finally:
            self.last_run = utcnow()
            self._running.release()

    async def _execute(self, now: datetime, force: bool) -> dict:
        local = to_local(now, self.settings.timezone)
        if not force and local.hour not in self.settings.notification_windows:
            logger.info(f"Hour {local.hour} is outside notification windows, skipping")
            return {'skipped': 'outside_window'}
        if in_quiet_hours(local.hour, self.settings.quiet_hours_start, self.settings.quiet_hours_end):
            logger.info(f"Hour {local.hour} is within quiet hours, skipping")
            return {'skipped': 'quiet_hours'}

        result = {'grids': 0, 'households': 0, 'alerts_created': 0, 'calls_failed': 0, 'skipped_existing': 0}
        groups = group_by_grid(self.store.list_households(active_only=True))
        logger.info(f"Heat alert run at {local.isoformat()} over {len(groups)} grids")

        for grid, households in groups.items():
            result['grids'] += 1
            result['households'] += len(households)
            try:
                reading = await self.weather.get_weather_by_grid(None if grid == DEFAULT_GRID else grid)
            except Exception as e:
                logger.error(f"Weather lookup failed for grid {grid}: {str(e)}")
                continue

            decision = judge_alert(reading.level.value, local.hour,
                                   self.settings.quiet_hours_start, self.settings.quiet_hours_end)
            logger.info(f"Grid {grid}: wbgt={reading.wbgt} level={reading.level.value} "
                        f"issue={decision.should_issue} ({decision.reason})")
            if not decision.should_issue:
                continue

            for household in households:
                try:
                    created = await self.issue_alert(household, reading, grid, now, local)
                except Exception as e:
                    logger.error(f"Failed to issue alert for household {household.id}: {str(e)}", exc_info=True)
                    continue
                if created is None:
                    result['skipped_existing'] += 1
                elif created is False:
                    result['alerts_created'] += 1
                    result['calls_failed'] += 1
                else:
                    result['alerts_created'] += 1

        logger.info(f"Heat alert run finished: {result}")
        return result

    async def issue_alert(self, household: Household, reading, grid: str, now: datetime, local: datetime):
        """Returns None when an alert already exists today, else whether the call went out"""
        if self.store.list_alerts(on_date=local.date(), household_ids=[household.id]):
            return None

        alert = Alert(
            household_id=household.id,
            date=local.date(),
            wbgt=reading.wbgt,
            level=reading.level,
            first_trigger_at=now,
            metadata=AlertMetadata(
                grid=None if grid == DEFAULT_GRID else grid,
                temperature=reading.temperature,
                humidity=reading.humidity,
            ),
        )
        alert = self.store.create_alert(alert)
        logger.info(f"Alert {alert.id} issued for {household.name} (wbgt={reading.wbgt})")

        alert, call = await self.engine.call_household(alert, household, now)
        if not call.success:
            logger.error(f"Failed to call {household.name}: {call.error}")
            await self.notifier.send_household_sms(household, alert, FALLBACK_SMS, 'fallback')
        return call.success
