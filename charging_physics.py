"""
Charging physics for simulated sessions.

ChargingPhysicsEngine.simulate() turns a session, a vehicle profile and the
current Smart Charging limit into one ChargingStep: delivered power, energy,
new SoC and meter value, electrical readings and an ETA to the target SoC.
simulate() is pure; tick() wires it to the resolver and the vehicle catalogue
and writes the result back onto the session.
"""

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from config import SCP_FAIL_CLOSED
from ev_model import VehicleProfile
from metrics import record_tick
from profiles import get_vehicle_profile

logger = logging.getLogger("charging_physics")

ETA_SAMPLES = 10


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going up (round() goes to even)."""
    return int(math.floor(value + 0.5))


class LimitedBy(Enum):
    NONE = "none"
    VEHICLE = "vehicle"
    EVSE = "evse"
    SCP = "scp"


@dataclass(frozen=True)
class ChargingStep:
    """
    Result of one simulation step.

    Attributes:
        power_kw: Power delivered to the battery (after efficiency)
        voltage / current_a: Electrical readings for MeterValues
        energy_wh: Energy added during this step
        new_soc / new_meter_value_wh: Session values after the step
        eta_to_target: Estimated time left to reach target_soc
        limited_by: Which bound set the power
        scp_limit_kw: Smart Charging limit in force, if any
        charging_complete: target_soc reached
        scp_lookup_failed: The limit lookup failed and the step fell back
    """
    power_kw: float
    voltage: float
    current_a: float
    energy_wh: float
    new_soc: float
    new_meter_value_wh: int
    eta_to_target: timedelta
    limited_by: LimitedBy
    scp_limit_kw: Optional[float] = None
    charging_complete: bool = False
    scp_lookup_failed: bool = False

    def to_dict(self) -> dict:
        return {
            "powerKw": self.power_kw,
            "voltage": self.voltage,
            "currentA": self.current_a,
            "energyWh": round(self.energy_wh, 1),
            "soc": round(self.new_soc, 2),
            "meterValueWh": self.new_meter_value_wh,
            "etaMinutes": int(self.eta_to_target.total_seconds() // 60),
            "limitedBy": self.limited_by.value,
            "scpLimitKw": self.scp_limit_kw,
            "chargingComplete": self.charging_complete,
        }


def calculate_current(power_kw: float, voltage: float, phases: int) -> float:
    """
    Current drawn for a given power.

    DC and single-phase: I = P / V. Poly-phase below 300 V is treated as a
    phase-neutral voltage, I = P / (V * phases); otherwise as line-line,
    I = P / (V * sqrt(3)).
    """
    if voltage <= 0:
        return 0.0
    watts = power_kw * 1000.0
    if phases <= 1:
        return watts / voltage
    if voltage < 300:
        return watts / (voltage * phases)
    return watts / (voltage * math.sqrt(3))


class ChargingPhysicsEngine:
    """
    Args:
        resolver: SmartChargingResolver consulted by tick()
        vehicle_lookup: Vehicle id -> VehicleProfile
        fail_closed: On a failed limit lookup, charge at 0 kW instead of unrestricted
        clock: Time source for tick()
    """

    def __init__(
        self,
        resolver=None,
        vehicle_lookup: Callable[[Optional[str]], VehicleProfile] = get_vehicle_profile,
        fail_closed: bool = SCP_FAIL_CLOSED,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.resolver = resolver
        self.vehicle_lookup = vehicle_lookup
        self.fail_closed = fail_closed
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # power
    # ------------------------------------------------------------------

    def vehicle_power_kw(self, session, vehicle: VehicleProfile, soc: float) -> float:
        if session.is_dc:
            return vehicle.dc_power_at_soc(soc)
        return vehicle.effective_ac_power(session.phases, session.max_current_a, session.voltage)

    def _reading_voltage(self, session, vehicle: VehicleProfile, soc: float) -> float:
        if session.is_dc:
            return vehicle.voltage_at_soc(soc)
        return 230.0 if session.phases == 1 else 400.0

    def _average_power(self, session, vehicle: VehicleProfile, from_soc: float, to_soc: float) -> float:
        soc_range = to_soc - from_soc
        if soc_range <= 0:
            return 0.0
        step = soc_range / ETA_SAMPLES
        total = 0.0
        for i in range(ETA_SAMPLES):
            power = self.vehicle_power_kw(session, vehicle, from_soc + i * step)
            total += min(power, session.max_power_kw)
        return total / ETA_SAMPLES

    def _eta(self, session, vehicle: VehicleProfile, from_soc: float) -> timedelta:
        remaining_kwh = vehicle.battery_capacity_kwh * (session.target_soc - from_soc) / 100.0
        if remaining_kwh <= 0:
            return timedelta(0)
        avg_power = self._average_power(session, vehicle, from_soc, session.target_soc)
        if avg_power <= 0:
            return timedelta(0)
        return timedelta(minutes=round_half_up(remaining_kwh / avg_power * 60))

    # ------------------------------------------------------------------
    # simulation
    # ------------------------------------------------------------------

    def simulate(
        self,
        session,
        vehicle: VehicleProfile,
        current_limit_kw: Optional[float],
        interval_seconds: float,
    ) -> ChargingStep:
        """
        Compute one step without touching the session.

        current_limit_kw is the Smart Charging limit in kW, or None when no
        profile constrains the session.
        """
        soc = session.soc
        target = session.target_soc

        if soc >= target:
            return ChargingStep(
                power_kw=0.0,
                voltage=round(self._reading_voltage(session, vehicle, soc), 1),
                current_a=0.0,
                energy_wh=0.0,
                new_soc=soc,
                new_meter_value_wh=session.meter_value,
                eta_to_target=timedelta(0),
                limited_by=LimitedBy.NONE,
                scp_limit_kw=current_limit_kw,
                charging_complete=True,
            )

        vehicle_kw = max(0.0, self.vehicle_power_kw(session, vehicle, soc))
        evse_kw = max(0.0, session.max_power_kw)
        if vehicle_kw <= evse_kw:
            power_kw, limited_by = vehicle_kw, LimitedBy.VEHICLE
        else:
            power_kw, limited_by = evse_kw, LimitedBy.EVSE

        if current_limit_kw is not None and current_limit_kw < power_kw:
            power_kw, limited_by = max(0.0, current_limit_kw), LimitedBy.SCP

        power_kw *= vehicle.efficiency(session.is_dc)

        interval = max(0.0, float(interval_seconds))
        energy_wh = power_kw * interval / 3.6
        soc_increase = (energy_wh / 1000.0) / vehicle.battery_capacity_kwh * 100.0

        new_soc = soc + soc_increase
        if new_soc >= target:
            new_soc = target
            energy_wh = (target - soc) / 100.0 * vehicle.battery_capacity_kwh * 1000.0

        complete = new_soc >= target
        new_meter = session.meter_value + round_half_up(energy_wh)

        if complete or power_kw <= 0:
            eta = timedelta(0)
        else:
            eta = self._eta(session, vehicle, new_soc)

        voltage = self._reading_voltage(session, vehicle, new_soc)
        current = calculate_current(power_kw, voltage, 0 if session.is_dc else session.phases)

        return ChargingStep(
            power_kw=round(power_kw, 2),
            voltage=round(voltage, 1),
            current_a=round(current, 1),
            energy_wh=energy_wh,
            new_soc=new_soc,
            new_meter_value_wh=new_meter,
            eta_to_target=eta,
            limited_by=limited_by,
            scp_limit_kw=current_limit_kw,
            charging_complete=complete,
        )

    def estimate_full_charge(self, session, vehicle: VehicleProfile) -> timedelta:
        """Time to go from the session's SoC to its target at the sampled average power."""
        return self._eta(session, vehicle, session.soc)

    def tick(self, session, interval_seconds: float, now: Optional[datetime] = None) -> ChargingStep:
        """
        Run one step for a live session and write the result back to it.

        The Smart Charging limit comes from the resolver. A failed lookup never
        propagates: the step proceeds without an SCP limit (or at 0 kW when
        fail_closed is set) and is flagged scp_lookup_failed.
        """
        now = now or self._clock()
        vehicle = self.vehicle_lookup(session.vehicle_id)

        limit_kw = None
        limit = None
        lookup_failed = False
        if self.resolver is not None:
            lookup = self.resolver.lookup_limit(
                session.id,
                session.connector_id,
                session.voltage,
                session.phases,
                now,
                session.max_power_kw,
            )
            if lookup.failed:
                lookup_failed = True
                if self.fail_closed:
                    limit_kw = 0.0
                logger.warning(
                    f"Session {session.id}: SCP lookup failed ({lookup.error}), "
                    f"{'stopping power' if self.fail_closed else 'charging without limit'}"
                )
            elif lookup.limit.has_limit:
                limit = lookup.limit
                limit_kw = limit.limit_kw

        step = self.simulate(session, vehicle, limit_kw, interval_seconds)
        if lookup_failed:
            step = replace(step, scp_lookup_failed=True)

        session.soc = step.new_soc
        session.meter_value = step.new_meter_value_wh
        session.current_power_kw = step.power_kw
        session.current_a = step.current_a
        session.scp_limit_kw = step.scp_limit_kw
        session.scp_purpose = limit.source_purpose.value if limit else None
        session.scp_stack_level = limit.stack_level if limit else None
        session.scp_profile_id = limit.profile_id if limit else None
        session.active_charging_profile = limit.profile if limit else None

        record_tick(step.energy_wh)
        logger.debug(
            f"Session {session.id}: {step.power_kw} kW ({step.limited_by.value}), "
            f"soc={step.new_soc:.2f}%, meter={step.new_meter_value_wh} Wh"
        )
        return step
