import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Dict, Optional

import websockets
from ocpp.routing import on
from ocpp.v16 import ChargePoint as CP
from ocpp.v16 import call, call_result
from ocpp.v16.enums import (
    AuthorizationStatus,
    ChargePointErrorCode,
    ChargingProfileStatus,
    ClearChargingProfileStatus,
    GetCompositeScheduleStatus,
    RegistrationStatus,
)

from charging_physics import ChargingPhysicsEngine, ChargingStep
from charging_profile_manager import (
    ChargingProfilePurpose,
    ChargingRateUnit,
    SmartChargingResolver,
    parse_charging_profile,
)
from config import DEFAULT_VEHICLE, TICK_INTERVAL_SEC
from session import ChargerType, Session
from session_state import (
    SessionState,
    SessionStateMachine,
    ocpp_status_for,
    should_send_status_notification,
)
from simulation_runner import SimulationRunner

logger = logging.getLogger("station")


class SimulatedChargePoint(CP):
    """
    OCPP 1.6 charge point backed by the simulation core.

    Smart Charging requests are mapped 1:1 onto the SmartChargingResolver;
    state-machine transitions that change the connector status are reported
    with StatusNotification.
    """

    def __init__(
        self,
        id,
        connection,
        resolver: Optional[SmartChargingResolver] = None,
        state_machine: Optional[SessionStateMachine] = None,
        charger_type: ChargerType = ChargerType.AC_TRI,
        clock=None,
    ):
        super().__init__(id, connection)
        self.id = id
        self.charger_type = charger_type
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.resolver = resolver or SmartChargingResolver(clock=self._clock)
        self.state_machine = state_machine or SessionStateMachine(clock=self._clock)

        # connector_id -> session
        self.sessions: Dict[int, Session] = {}
        self._background = set()

        self.resolver.add_listener(self._on_profiles_changed)
        self.state_machine.add_listener(self._on_state_change)

        self.log_buffer = deque(maxlen=50)
        self.log("Station initialized")

    def log(self, message: str) -> None:
        """Add a timestamped entry to the station's log buffer."""
        timestamp = self._clock().strftime("%H:%M:%S")
        self.log_buffer.append(f"[{timestamp}] {message}")

    def get_logs(self) -> list:
        return list(self.log_buffer)

    # -------------------- SESSIONS --------------------

    def attach_session(self, session: Session) -> None:
        self.sessions[session.connector_id] = session
        self.resolver.apply_limit_to_session(session)

    def detach_session(self, connector_id: int) -> Optional[Session]:
        return self.sessions.pop(connector_id, None)

    def _on_profiles_changed(self, connector_id: Optional[int], session_id: Optional[str]) -> None:
        for session in self.sessions.values():
            if (connector_id in (None, 0)
                    or session.connector_id == connector_id
                    or session.id == session_id):
                limit = self.resolver.apply_limit_to_session(session)
                logger.debug(
                    f"{self.id}: session {session.id} limit refreshed "
                    f"({limit.limit_kw if limit.has_limit else 'none'})"
                )

    def _on_state_change(self, session: Session, old: SessionState, new: SessionState) -> None:
        if not should_send_status_notification(old, new):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"{self.id}: no event loop, StatusNotification for {new.name} skipped")
            return
        task = loop.create_task(
            self.send_status_notification(session.connector_id, new)
        )
        self._background.add(task)
        task.add_done_callback(self._status_notification_done)

    def _status_notification_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{self.id}: StatusNotification failed: {error!r}")
            self.log(f"StatusNotification failed: {error}")

    async def send_status_notification(self, connector_id: int, state: SessionState):
        status = ocpp_status_for(state)
        error_code = (
            ChargePointErrorCode.other_error if state == SessionState.FAULTED
            else ChargePointErrorCode.no_error
        )
        req = call.StatusNotification(
            connector_id=connector_id,
            error_code=error_code,
            status=status,
            timestamp=self._clock().isoformat(),
        )
        response = await self.call(req)
        logger.info(f"{self.id}: StatusNotification({connector_id}, {status}) -> {response}")
        self.log(f"Connector {connector_id} {status}")
        return response

    def _electrical(self, connector_id: int):
        session = self.sessions.get(connector_id)
        if session is not None:
            return session, session.voltage, session.phases, session.max_power_kw, session.max_current_a
        spec = self.charger_type.spec
        return None, spec.voltage, spec.phases, spec.max_power_kw, spec.max_current_a

    # -------------------- OCPP HANDLERS --------------------

    @on("SetChargingProfile")
    async def on_set_charging_profile(self, connector_id, cs_charging_profiles, **kwargs):
        try:
            profile = parse_charging_profile(cs_charging_profiles)
        except (ValueError, TypeError) as e:
            logger.warning(f"{self.id}: SetChargingProfile rejected, invalid payload: {e}")
            self.log(f"SetChargingProfile rejected: {e}")
            return call_result.SetChargingProfile(status=ChargingProfileStatus.rejected)

        session = self.sessions.get(connector_id) if connector_id else None
        active = session is not None and session.transaction_id is not None
        result = self.resolver.set_charging_profile(
            connector_id,
            session.id if active else None,
            profile,
            transaction_id=session.transaction_id if active else None,
            effective_start_time=session.transaction_start if active else None,
        )

        logger.info(
            f"{self.id}: SetChargingProfile #{profile.charging_profile_id} "
            f"({profile.charging_profile_purpose.value}) on connector {connector_id} "
            f"-> {result.status.value}"
        )
        self.log(
            f"SetChargingProfile #{profile.charging_profile_id} -> {result.status.value}"
            + (f" ({result.reason})" if result.reason else "")
        )
        return call_result.SetChargingProfile(status=result.status)

    @on("ClearChargingProfile")
    async def on_clear_charging_profile(
        self,
        id=None,
        connector_id=None,
        charging_profile_purpose=None,
        stack_level=None,
        **kwargs,
    ):
        purpose = None
        if charging_profile_purpose is not None:
            try:
                purpose = ChargingProfilePurpose(charging_profile_purpose)
            except ValueError:
                logger.warning(f"{self.id}: unknown chargingProfilePurpose {charging_profile_purpose}")
                return call_result.ClearChargingProfile(status=ClearChargingProfileStatus.unknown)

        status = self.resolver.clear_charging_profile(
            connector_id=connector_id,
            profile_id=id,
            stack_level=stack_level,
            purpose=purpose,
        )
        logger.info(
            f"{self.id}: ClearChargingProfile(id={id}, connector={connector_id}, "
            f"purpose={charging_profile_purpose}, stackLevel={stack_level}) -> {status.value}"
        )
        self.log(f"ClearChargingProfile -> {status.value}")
        return call_result.ClearChargingProfile(status=status)

    @on("GetCompositeSchedule")
    async def on_get_composite_schedule(
        self,
        connector_id,
        duration,
        charging_rate_unit=None,
        **kwargs,
    ):
        try:
            unit = ChargingRateUnit(charging_rate_unit) if charging_rate_unit else ChargingRateUnit.WATTS
        except ValueError:
            unit = None
        if unit is None or connector_id < 0 or duration <= 0:
            logger.warning(
                f"{self.id}: GetCompositeSchedule rejected "
                f"(connector={connector_id}, duration={duration}, unit={charging_rate_unit})"
            )
            return call_result.GetCompositeSchedule(status=GetCompositeScheduleStatus.rejected)

        session, voltage, phases, max_kw, max_a = self._electrical(connector_id)
        schedule = self.resolver.get_composite_schedule(
            session.id if session else None,
            connector_id,
            duration,
            unit,
            voltage=voltage,
            phases=phases,
            max_power_kw=max_kw,
            max_current_a=max_a,
        )
        self.log(f"GetCompositeSchedule({connector_id}, {duration}s): {len(schedule.periods)} periods")
        return call_result.GetCompositeSchedule(
            status=GetCompositeScheduleStatus.accepted,
            connector_id=connector_id,
            schedule_start=schedule.start_time.isoformat(),
            charging_schedule=schedule.to_dict(),
        )


# =========================================================
# MAIN STATION SIMULATOR
# =========================================================

async def simulate_station(
    station_id: str,
    csms_url: str,
    charger_type: ChargerType = ChargerType.AC_TRI,
    vehicle_id: str = DEFAULT_VEHICLE,
    soc: float = 20.0,
    target_soc: float = 80.0,
    id_tag: str = "ABC123",
    simulated_seconds: float = 60.0,
):
    """
    Run one simulated charge point against a CSMS: boot, plug a vehicle,
    charge it to target_soc with MeterValues on every tick, then stop.

    Args:
        station_id: Charge point identity
        csms_url: WebSocket URL of the CSMS (station_id is appended)
        charger_type: EVSE hardware to simulate
        vehicle_id: Vehicle catalogue id
        simulated_seconds: Simulated time per tick
    """
    ws = await websockets.connect(
        f"{csms_url}/{station_id}",
        subprotocols=["ocpp1.6"],
    )
    cp = SimulatedChargePoint(station_id, ws, charger_type=charger_type)
    engine = ChargingPhysicsEngine(resolver=cp.resolver)

    async def send_meter_values(session: Session, step: ChargingStep):
        req = call.MeterValues(
            connector_id=session.connector_id,
            transaction_id=session.transaction_id,
            meter_value=[
                {
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "sampled_value": [
                        {"value": str(step.new_meter_value_wh),
                         "measurand": "Energy.Active.Import.Register", "unit": "Wh"},
                        {"value": f"{step.power_kw:.2f}",
                         "measurand": "Power.Active.Import", "unit": "kW"},
                        {"value": f"{step.current_a:.1f}",
                         "measurand": "Current.Import", "unit": "A"},
                        {"value": f"{step.voltage:.1f}",
                         "measurand": "Voltage", "unit": "V"},
                        {"value": f"{step.new_soc:.1f}",
                         "measurand": "SoC", "unit": "Percent"},
                    ],
                }
            ],
        )
        await cp.call(req)

    runner = SimulationRunner(
        engine,
        cp.state_machine,
        interval_seconds=TICK_INTERVAL_SEC,
        simulated_seconds=simulated_seconds,
        on_step=send_meter_values,
    )
    session = Session.for_charger(
        f"{station_id}-1", station_id, charger_type,
        vehicle_id=vehicle_id, soc=soc, target_soc=target_soc,
    )
    cp.attach_session(session)
    machine = cp.state_machine

    async def heartbeat_loop(interval: int):
        while True:
            await asyncio.sleep(interval)
            response = await cp.call(call.Heartbeat())
            logger.info(f"{station_id}: Heartbeat -> {response}")

    async def charge_once():
        machine.transition(session, SessionState.CONNECTING)
        machine.transition(session, SessionState.CONNECTED)

        boot = await cp.call(call.BootNotification(
            charge_point_model="PythonSim-Model",
            charge_point_vendor="PythonSim-Vendor",
        ))
        logger.info(f"{station_id}: BootNotification -> {boot}")
        if boot.status != RegistrationStatus.accepted:
            cp.log(f"BootNotification rejected: {boot.status}")
            return
        machine.transition(session, SessionState.BOOT_ACCEPTED)
        hb_task = asyncio.create_task(heartbeat_loop(boot.interval or 60))

        try:
            machine.transition(session, SessionState.PLUGGED)
            machine.transition(session, SessionState.AUTHORIZING)
            auth = await cp.call(call.Authorize(id_tag=id_tag))
            if auth.id_tag_info.get("status") != AuthorizationStatus.accepted:
                cp.log(f"Authorization failed - {id_tag}")
                machine.transition(session, SessionState.PLUGGED)
                return
            machine.transition(session, SessionState.AUTHORIZED)

            start = await cp.call(call.StartTransaction(
                connector_id=session.connector_id,
                id_tag=id_tag,
                meter_start=session.meter_value,
                timestamp=datetime.now(timezone.utc).isoformat(),
            ))
            runner.start_transaction(session, start.transaction_id)
            cp.log(f"Charging started (transaction {start.transaction_id})")

            while runner.is_running(session.id):
                await asyncio.sleep(TICK_INTERVAL_SEC)

            transaction_id = session.transaction_id
            await runner.stop_transaction(session)
            await cp.call(call.StopTransaction(
                transaction_id=transaction_id,
                meter_stop=session.meter_value,
                timestamp=datetime.now(timezone.utc).isoformat(),
                id_tag=id_tag,
            ))
            cp.log(f"Charging stopped ({session.meter_value / 1000:.2f} kWh)")
            machine.transition(session, SessionState.AVAILABLE)
        finally:
            hb_task.cancel()

    recv_task = asyncio.create_task(cp.start())
    try:
        await charge_once()
    except asyncio.CancelledError:
        logger.info(f"{station_id}: cancellation requested, shutting down.")
        raise
    except Exception as e:
        logger.exception(f"{station_id}: unexpected error: {e}")
        raise
    finally:
        await runner.shutdown()
        recv_task.cancel()
        await ws.close()


# -------------------- MANUAL TEST --------------------

if __name__ == "__main__":
    from config import LOG_LEVEL

    logging.basicConfig(level=LOG_LEVEL)
    asyncio.run(
        simulate_station(
            "PYTHON-SIM-001",
            "ws://localhost:9000/ocpp",
            ChargerType.DC_50,
            vehicle_id="RENAULT_ZOE_R135",
        )
    )
