"""Runtime primitives backing the Warfront HTTP API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterator
from datetime import datetime

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from warfront.config import Settings, get_settings
from warfront.database import create_db_engine, create_session_factory, init_db
from warfront.domain.events import MaintenanceReport, SweepReport
from warfront.domain.rules_config import DEFAULT_RULES, RulesConfig
from warfront.factory import Services, create_services
from warfront.models import utc_now

logger = logging.getLogger(__name__)


class SweepManager:
    """Background scheduler running the battle and maintenance sweeps."""

    MIN_INTERVAL_SECONDS = 0.1

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        rules: RulesConfig = DEFAULT_RULES,
        clock: Callable[[], datetime] = utc_now,
        battle_interval_seconds: float,
        maintenance_interval_seconds: float,
    ) -> None:
        self._session_factory = session_factory
        self._rules = rules
        self._clock = clock
        self._battle_interval = max(battle_interval_seconds, self.MIN_INTERVAL_SECONDS)
        self._maintenance_interval = max(maintenance_interval_seconds, self.MIN_INTERVAL_SECONDS)
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._sweep_lock = asyncio.Lock()

    @property
    def battle_interval_seconds(self) -> float:
        return self._battle_interval

    @property
    def maintenance_interval_seconds(self) -> float:
        return self._maintenance_interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run_loop(), name="warfront-sweep-loop")
        logger.info(
            "sweeps scheduled every %.1fs (maintenance every %.1fs)",
            self._battle_interval,
            self._maintenance_interval,
        )

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._stop_event.set()
        await task
        self._task = None

    async def run_battle_sweep(self) -> SweepReport:
        async with self._sweep_lock:
            return await asyncio.to_thread(self._battle_sweep_sync)

    async def run_maintenance_sweep(self) -> MaintenanceReport:
        async with self._sweep_lock:
            return await asyncio.to_thread(self._maintenance_sweep_sync)

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        next_maintenance = loop.time() + self._maintenance_interval
        try:
            while not self._stop_event.is_set():
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._battle_interval)
                    break
                except TimeoutError:
                    pass
                try:
                    await self.run_battle_sweep()
                    if loop.time() >= next_maintenance:
                        await self.run_maintenance_sweep()
                        next_maintenance = loop.time() + self._maintenance_interval
                except Exception:
                    logger.exception("scheduled sweep failed")
        finally:
            self._task = None

    def _services(self, session: Session) -> Services:
        return create_services(session, rules=self._rules, clock=self._clock)

    def _battle_sweep_sync(self) -> SweepReport:
        with self._session_factory() as session:
            return self._services(session).sweeps.run_battle_sweep(self._clock())

    def _maintenance_sweep_sync(self) -> MaintenanceReport:
        with self._session_factory() as session:
            return self._services(session).sweeps.run_maintenance_sweep(self._clock())


class ApiState:
    """Aggregated resources shared by the FastAPI layer."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        engine: Engine | None = None,
        rules: RulesConfig = DEFAULT_RULES,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings or get_settings()
        self._owns_engine = engine is None
        self.engine = engine or create_db_engine(self.settings.database_url)
        self.session_factory = create_session_factory(self.engine)
        self.rules = rules
        self.clock = clock
        self.sweeps = SweepManager(
            self.session_factory,
            rules=rules,
            clock=clock,
            battle_interval_seconds=self.settings.battle_sweep_interval_seconds,
            maintenance_interval_seconds=self.settings.maintenance_interval_seconds,
        )

    def startup(self) -> None:
        init_db(self.engine)
        if self.settings.sweep_enabled:
            self.sweeps.start()

    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    def services(self, session: Session) -> Services:
        return create_services(session, rules=self.rules, clock=self.clock)

    async def shutdown(self) -> None:
        await self.sweeps.stop()
        if self._owns_engine:
            self.engine.dispose()


def build_state() -> ApiState:
    """Factory used by the API to initialise state."""

    return ApiState()
