from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from typing import Dict, Optional


def interpolate_curve(curve: Dict[int, float], soc: float) -> float:
    """Linear interpolation on an integer-SoC keyed curve, clamped to its ends."""
    if not curve:
        raise ValueError("Cannot interpolate an empty curve")

    points = sorted(curve)
    if soc <= points[0]:
        return float(curve[points[0]])
    if soc >= points[-1]:
        return float(curve[points[-1]])

    # floor: largest key <= soc, ceiling: smallest key >= soc
    floor_key = points[bisect_right(points, soc) - 1]
    ceil_key = points[bisect_left(points, soc)]
    if floor_key == ceil_key:
        return float(curve[floor_key])

    ratio = (soc - floor_key) / (ceil_key - floor_key)
    return curve[floor_key] + ratio * (curve[ceil_key] - curve[floor_key])


def default_dc_power_at_soc(max_dc_power_kw: float, soc: float) -> float:
    soc = max(0.0, min(float(soc), 100.0))
    if soc < 20:
        return max_dc_power_kw * (0.5 + 0.5 * soc / 20.0)
    if soc < 50:
        return max_dc_power_kw
    if soc < 80:
        return max_dc_power_kw * (1.0 - (soc - 50) / 60.0)
    return max_dc_power_kw * 0.5 * (1.0 - (soc - 80) / 22.0)


DEFAULT_VOLTAGE_CURVE: Dict[int, float] = {
    0: 330.0,
    20: 355.0,
    50: 375.0,
    80: 392.0,
    100: 400.0,
}


@dataclass(frozen=True)
class VehicleProfile:
    id: str
    name: str
    battery_capacity_kwh: float = 60.0

    max_ac_power_kw: float = 11.0
    max_ac_phases: int = 3
    max_ac_current_a: float = 16.0

    max_dc_power_kw: float = 100.0
    dc_power_curve: Optional[Dict[int, float]] = None
    voltage_curve: Optional[Dict[int, float]] = None

    efficiency_ac: float = 0.90
    efficiency_dc: float = 0.92

    def __post_init__(self) -> None:
        if self.battery_capacity_kwh <= 0:
            raise ValueError(
                f"battery_capacity_kwh must be positive, got {self.battery_capacity_kwh}"
            )

    def dc_power_at_soc(self, soc: float) -> float:
        if not self.dc_power_curve:
            return default_dc_power_at_soc(self.max_dc_power_kw, soc)
        return max(0.0, interpolate_curve(self.dc_power_curve, soc))

    def voltage_at_soc(self, soc: float) -> float:
        return interpolate_curve(self.voltage_curve or DEFAULT_VOLTAGE_CURVE, soc)

    def dc_current_at_soc(self, soc: float) -> float:
        voltage = self.voltage_at_soc(soc)
        if voltage <= 0:
            return 0.0
        return self.dc_power_at_soc(soc) * 1000.0 / voltage

    def effective_ac_power(
        self,
        evse_phases: int,
        evse_current_a: float,
        evse_voltage: float,
    ) -> float:
        """
        AC power the onboard charger can draw from the EVSE, in kW.

        Phases and current are limited by both sides; the result is capped at
        the onboard charger rating.
        """
        phases = max(1, min(int(evse_phases or 1), self.max_ac_phases))
        current = max(0.0, min(float(evse_current_a), self.max_ac_current_a))
        power_kw = max(0.0, float(evse_voltage)) * current * phases / 1000.0
        return min(power_kw, self.max_ac_power_kw)

    def efficiency(self, is_dc: bool) -> float:
        return self.efficiency_dc if is_dc else self.efficiency_ac

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "batteryCapacityKwh": self.battery_capacity_kwh,
            "maxAcPowerKw": self.max_ac_power_kw,
            "maxAcPhases": self.max_ac_phases,
            "maxAcCurrentA": self.max_ac_current_a,
            "maxDcPowerKw": self.max_dc_power_kw,
            "efficiencyAc": self.efficiency_ac,
            "efficiencyDc": self.efficiency_dc,
        }
