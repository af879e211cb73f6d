import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


TICK_INTERVAL_SEC = float(os.getenv("SIM_TICK_INTERVAL_SEC", "1"))
DEFAULT_VEHICLE = os.getenv("SIM_DEFAULT_VEHICLE", "GENERIC")

# Smart Charging lookup failure: False = keep charging unrestricted, True = 0 kW
SCP_FAIL_CLOSED = _env_bool("SIM_SCP_FAIL_CLOSED", False)

# OCPP 1.6 keys ChargingScheduleAllowedChargingRateUnit / ChargingScheduleMaxPeriods
ALLOWED_RATE_UNITS = [
    unit.strip().upper()
    for unit in os.getenv("SIM_ALLOWED_RATE_UNITS", "A,W").split(",")
    if unit.strip()
]
MAX_SCHEDULE_PERIODS = int(os.getenv("SIM_MAX_SCHEDULE_PERIODS", "24"))

METRICS_PORT = int(os.getenv("SIM_METRICS_PORT", "0"))  # 0 = exporter disabled
LOG_LEVEL = os.getenv("SIM_LOG_LEVEL", "INFO").upper()
