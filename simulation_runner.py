"""
Asyncio scheduler for charging sessions.

Each session is ticked by its own task, so ticks for one session never
overlap while different sessions run side by side. Step results go to an
on_step callback; coroutine callbacks are scheduled, not awaited, so a slow
transport cannot hold back the simulation clock. stop() only prevents future
ticks and never interrupts a tick in progress.
"""

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from charging_physics import ChargingPhysicsEngine, ChargingStep
from config import TICK_INTERVAL_SEC
from metrics import record_session_started, record_session_stopped
from session_state import SessionState, SessionStateMachine, TransitionResult

logger = logging.getLogger("simulation_runner")

StepCallback = Callable[[object, ChargingStep], object]


class SimulationRunner:
    """
    Args:
        engine: Physics engine (carries the resolver used for limits)
        state_machine: Used for the CHARGING -> SUSPENDED_EV move at target SoC
            and for the transaction helpers
        interval_seconds: Wall-clock delay between ticks
        simulated_seconds: Simulated time per tick (defaults to interval_seconds;
            larger values fast-forward the charge)
        on_step: Called as on_step(session, step) after each tick
    """

    def __init__(
        self,
        engine: ChargingPhysicsEngine,
        state_machine: SessionStateMachine,
        interval_seconds: float = TICK_INTERVAL_SEC,
        simulated_seconds: Optional[float] = None,
        on_step: Optional[StepCallback] = None,
    ):
        self.engine = engine
        self.state_machine = state_machine
        self.interval_seconds = interval_seconds
        self.simulated_seconds = simulated_seconds or interval_seconds
        self.on_step = on_step

        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_flags: Dict[str, asyncio.Event] = {}
        self._pending_callbacks = set()

    @property
    def resolver(self):
        return self.engine.resolver

    def is_running(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    def start(self, session) -> asyncio.Task:
        """Start ticking a session; returns the existing task if it is already running.

        A task that has been told to stop but has not exited yet is left to
        finish on its own and a fresh task takes its place.
        """
        flag = self._stop_flags.get(session.id)
        if self.is_running(session.id) and flag is not None and not flag.is_set():
            return self._tasks[session.id]

        stop_flag = asyncio.Event()
        self._stop_flags[session.id] = stop_flag
        task = asyncio.create_task(self._run(session, stop_flag), name=f"session-{session.id}")
        self._tasks[session.id] = task
        return task

    def stop(self, session_id: str) -> None:
        flag = self._stop_flags.get(session_id)
        if flag is not None:
            flag.set()

    async def stop_and_wait(self, session_id: str) -> None:
        self.stop(session_id)
        task = self._tasks.get(session_id)
        if task is not None:
            await task

    async def shutdown(self) -> None:
        for session_id in list(self._tasks):
            self.stop(session_id)
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, session, stop_flag: asyncio.Event) -> None:
        record_session_started()
        logger.info(f"Session {session.id}: ticking every {self.interval_seconds}s")
        try:
            while not stop_flag.is_set():
                try:
                    await asyncio.wait_for(stop_flag.wait(), timeout=self.interval_seconds)
                    break
                except asyncio.TimeoutError:
                    pass

                if session.state != SessionState.CHARGING:
                    continue

                step = self.engine.tick(session, self.simulated_seconds)
                self._deliver(session, step)

                if step.charging_complete:
                    logger.info(f"Session {session.id}: target SoC {session.target_soc}% reached")
                    self.state_machine.transition(session, SessionState.SUSPENDED_EV)
                    break
        finally:
            record_session_stopped()
            if self._tasks.get(session.id) is asyncio.current_task():
                self._tasks.pop(session.id, None)
                self._stop_flags.pop(session.id, None)
            logger.info(f"Session {session.id}: ticking stopped")

    def _deliver(self, session, step: ChargingStep) -> None:
        if self.on_step is None:
            return
        try:
            result = self.on_step(session, step)
        except Exception:
            logger.exception(f"Session {session.id}: on_step callback failed")
            return
        if inspect.isawaitable(result):
            future = asyncio.ensure_future(result)
            self._pending_callbacks.add(future)
            future.add_done_callback(self._callback_done)

    def _callback_done(self, future: asyncio.Future) -> None:
        self._pending_callbacks.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"on_step callback raised: {future.exception()!r}")

    # ------------------------------------------------------------------
    # transaction helpers
    # ------------------------------------------------------------------

    def start_transaction(
        self,
        session,
        transaction_id: int,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """AUTHORIZED -> STARTING -> CHARGING, then start ticking."""
        result = self.state_machine.transition(session, SessionState.STARTING, now)
        if not result:
            return result

        session.transaction_id = transaction_id
        session.transaction_start = now or self.engine.now()
        result = self.state_machine.transition(session, SessionState.CHARGING, now)
        if not result:
            return result

        if self.resolver is not None:
            self.resolver.apply_limit_to_session(session, now)
        self.start(session)
        logger.info(f"Session {session.id}: transaction {transaction_id} started")
        return result

    async def stop_transaction(self, session, now: Optional[datetime] = None) -> TransitionResult:
        """Stop ticking, move through STOPPING -> FINISHING and drop the session's TxProfiles."""
        await self.stop_and_wait(session.id)

        result = self.state_machine.transition(session, SessionState.STOPPING, now)
        if not result:
            return result
        result = self.state_machine.transition(session, SessionState.FINISHING, now)

        if self.resolver is not None:
            self.resolver.clear_session_profiles(session.id)
        logger.info(
            f"Session {session.id}: transaction {session.transaction_id} stopped "
            f"at {session.meter_value} Wh"
        )
        session.transaction_id = None
        session.current_power_kw = 0.0
        session.current_a = 0.0
        return result


# -------------------- MANUAL RUN --------------------

async def _demo() -> None:
    from charging_profile_manager import SmartChargingResolver, parse_charging_profile
    from session import ChargerType, Session

    resolver = SmartChargingResolver()
    machine = SessionStateMachine()
    engine = ChargingPhysicsEngine(resolver=resolver)

    def print_step(session, step: ChargingStep) -> None:
        logger.info(
            f"{session.id}: {step.power_kw:>6} kW  {step.voltage:>5} V  {step.current_a:>6} A  "
            f"soc={step.new_soc:6.2f}%  meter={step.new_meter_value_wh} Wh  "
            f"eta={step.eta_to_target}  limited_by={step.limited_by.value}"
        )

    runner = SimulationRunner(engine, machine, interval_seconds=0.2, simulated_seconds=60, on_step=print_step)

    session = Session.for_charger(
        "demo-1", "PYTHON-SIM-001", ChargerType.DC_150,
        vehicle_id="TESLA_MODEL_3_LR", soc=20.0, target_soc=80.0,
    )
    for state in (
        SessionState.CONNECTING, SessionState.CONNECTED, SessionState.BOOT_ACCEPTED,
        SessionState.PLUGGED, SessionState.AUTHORIZING, SessionState.AUTHORIZED,
    ):
        machine.transition(session, state)

    resolver.set_charging_profile(0, None, parse_charging_profile({
        "chargingProfileId": 1,
        "stackLevel": 0,
        "chargingProfilePurpose": "TxDefaultProfile",
        "chargingProfileKind": "Relative",
        "chargingSchedule": {
            "chargingRateUnit": "W",
            "chargingSchedulePeriod": [
                {"startPeriod": 0, "limit": 120000},
                {"startPeriod": 600, "limit": 50000},
            ],
        },
    }))

    estimate = engine.estimate_full_charge(session, engine.vehicle_lookup(session.vehicle_id))
    logger.info(f"Estimated full charge: {estimate}")

    runner.start_transaction(session, transaction_id=1)
    while runner.is_running(session.id):
        await asyncio.sleep(0.5)
    await runner.stop_transaction(session)
    logger.info(f"Final: {session.to_dict()}")


if __name__ == "__main__":
    from config import LOG_LEVEL, METRICS_PORT
    from metrics import start_metrics_server

    logging.basicConfig(level=LOG_LEVEL)
    start_metrics_server(METRICS_PORT)
    asyncio.run(_demo())
