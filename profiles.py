from typing import Dict, List, Optional

from ev_model import VehicleProfile


VEHICLE_PROFILES: Dict[str, VehicleProfile] = {
    "TESLA_MODEL_3_LR": VehicleProfile(
        id="TESLA_MODEL_3_LR",
        name="Tesla Model 3 Long Range",
        battery_capacity_kwh=78.0,
        max_ac_power_kw=11.0,
        max_ac_phases=3,
        max_ac_current_a=16.0,
        max_dc_power_kw=250.0,
        dc_power_curve={
            0: 70, 5: 170, 10: 240, 15: 250, 20: 250, 25: 245, 30: 235,
            35: 220, 40: 200, 45: 175, 50: 155, 55: 135, 60: 115, 65: 100,
            70: 85, 75: 72, 80: 60, 85: 45, 90: 32, 95: 18, 100: 5,
        },
        voltage_curve={0: 320, 20: 350, 40: 370, 60: 385, 80: 400, 100: 410},
        efficiency_ac=0.90,
        efficiency_dc=0.93,
    ),

    "RENAULT_ZOE_R135": VehicleProfile(
        id="RENAULT_ZOE_R135",
        name="Renault Zoé R135",
        battery_capacity_kwh=52.0,
        max_ac_power_kw=22.0,
        max_ac_phases=3,
        max_ac_current_a=32.0,
        max_dc_power_kw=50.0,
        dc_power_curve={
            0: 25, 5: 42, 10: 48, 15: 50, 20: 50, 30: 49, 40: 47,
            50: 44, 60: 38, 70: 32, 80: 24, 90: 15, 100: 3,
        },
        voltage_curve={0: 290, 20: 330, 40: 355, 60: 375, 80: 390, 100: 400},
        efficiency_ac=0.88,
        efficiency_dc=0.90,
    ),

    "PEUGEOT_E208": VehicleProfile(
        id="PEUGEOT_E208",
        name="Peugeot e-208",
        battery_capacity_kwh=48.0,
        max_ac_power_kw=11.0,
        max_ac_phases=3,
        max_ac_current_a=16.0,
        max_dc_power_kw=100.0,
        dc_power_curve={
            0: 35, 5: 70, 10: 92, 15: 100, 20: 100, 25: 98, 30: 95,
            35: 88, 40: 80, 45: 72, 50: 65, 55: 58, 60: 50, 65: 42,
            70: 35, 75: 28, 80: 22, 85: 16, 90: 10, 95: 5, 100: 2,
        },
        voltage_curve={0: 300, 20: 340, 40: 360, 60: 378, 80: 390, 100: 395},
        efficiency_ac=0.89,
        efficiency_dc=0.91,
    ),

    "HYUNDAI_IONIQ_5_LR": VehicleProfile(
        id="HYUNDAI_IONIQ_5_LR",
        name="Hyundai Ioniq 5 Long Range",
        battery_capacity_kwh=74.0,
        max_ac_power_kw=11.0,
        max_ac_phases=3,
        max_ac_current_a=16.0,
        max_dc_power_kw=233.0,
        dc_power_curve={
            0: 65, 5: 160, 10: 210, 15: 230, 20: 233, 25: 230, 30: 225,
            35: 215, 40: 200, 45: 180, 50: 160, 55: 140, 60: 120, 65: 100,
            70: 82, 75: 65, 80: 50, 85: 38, 90: 25, 95: 14, 100: 4,
        },
        # 800 V architecture
        voltage_curve={0: 600, 20: 680, 40: 720, 60: 750, 80: 775, 100: 790},
        efficiency_ac=0.90,
        efficiency_dc=0.94,
    ),

    "NISSAN_LEAF_62": VehicleProfile(
        id="NISSAN_LEAF_62",
        name="Nissan Leaf e+ 62 kWh",
        battery_capacity_kwh=59.0,
        max_ac_power_kw=6.6,
        max_ac_phases=1,
        max_ac_current_a=32.0,
        max_dc_power_kw=100.0,
        dc_power_curve={
            0: 40, 5: 75, 10: 92, 15: 100, 20: 100, 25: 95, 30: 88,
            35: 78, 40: 68, 45: 58, 50: 50, 55: 42, 60: 36, 65: 30,
            70: 25, 75: 20, 80: 16, 85: 12, 90: 8, 95: 4, 100: 2,
        },
        voltage_curve={0: 300, 20: 335, 40: 355, 60: 375, 80: 388, 100: 395},
        efficiency_ac=0.88,
        efficiency_dc=0.89,
    ),

    "VW_ID4_PRO": VehicleProfile(
        id="VW_ID4_PRO",
        name="Volkswagen ID.4 Pro",
        battery_capacity_kwh=77.0,
        max_ac_power_kw=11.0,
        max_ac_phases=3,
        max_ac_current_a=16.0,
        max_dc_power_kw=175.0,
        dc_power_curve={
            0: 50, 5: 115, 10: 155, 15: 172, 20: 175, 25: 175, 30: 170,
            35: 158, 40: 142, 45: 125, 50: 108, 55: 92, 60: 78, 65: 65,
            70: 54, 75: 44, 80: 35, 85: 26, 90: 18, 95: 10, 100: 4,
        },
        voltage_curve={0: 300, 20: 345, 40: 370, 60: 390, 80: 402, 100: 408},
        efficiency_ac=0.89,
        efficiency_dc=0.92,
    ),

    # No measured curves: falls back to the synthetic DC and voltage curves
    "GENERIC": VehicleProfile(
        id="GENERIC",
        name="Generic EV",
        battery_capacity_kwh=60.0,
        max_ac_power_kw=11.0,
        max_ac_phases=3,
        max_ac_current_a=16.0,
        max_dc_power_kw=100.0,
        efficiency_ac=0.90,
        efficiency_dc=0.92,
    ),
}


def _normalize_id(vehicle_id: str) -> str:
    return vehicle_id.strip().upper().replace(" ", "_").replace("-", "_")


def get_vehicle_profile(vehicle_id: Optional[str]) -> VehicleProfile:
    """
    Look up a vehicle by id.

    Tries an exact match, then a case-insensitive match, then a partial match
    on the normalized id ("model 3" finds TESLA_MODEL_3_LR). Unknown or blank
    ids resolve to GENERIC.
    """
    if vehicle_id is None or not vehicle_id.strip():
        return VEHICLE_PROFILES["GENERIC"]

    if vehicle_id in VEHICLE_PROFILES:
        return VEHICLE_PROFILES[vehicle_id]

    wanted = _normalize_id(vehicle_id)
    if wanted in VEHICLE_PROFILES:
        return VEHICLE_PROFILES[wanted]

    for key, profile in VEHICLE_PROFILES.items():
        if wanted in key or key in wanted:
            return profile

    return VEHICLE_PROFILES["GENERIC"]


def list_vehicle_ids() -> List[str]:
    return list(VEHICLE_PROFILES.keys())


def mono_phase_vehicles() -> List[VehicleProfile]:
    """Vehicles whose onboard charger only uses one phase."""
    return [p for p in VEHICLE_PROFILES.values() if p.max_ac_phases == 1]
