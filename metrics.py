"""
Prometheus metrics for the charging simulation core.

Tracks:
- simulation_ticks_total: Physics steps computed (Counter)
- energy_delivered_kwh: Energy delivered across all sessions (Counter)
- charging_sessions_active: Sessions currently being ticked (Gauge)
- session_transitions_total: State-machine transitions by result (Counter)
- scp_limit_lookups_total: Smart Charging limit lookups by status (Counter)
- charging_profile_operations_total: Set/clear profile operations by status (Counter)
"""

from prometheus_client import Counter, Gauge, generate_latest, start_http_server, REGISTRY

# Define metrics
simulation_ticks_total = Counter(
    "simulation_ticks_total",
    "Total physics simulation steps computed",
)

energy_delivered_kwh = Counter(
    "energy_delivered_kwh",
    "Total energy delivered across all sessions in kWh",
)

charging_sessions_active = Gauge(
    "charging_sessions_active",
    "Sessions currently being ticked by the simulation runner",
)

session_transitions_total = Counter(
    "session_transitions_total",
    "Session state transitions",
    ["result"],
)

scp_limit_lookups_total = Counter(
    "scp_limit_lookups_total",
    "Smart Charging effective-limit lookups",
    ["status"],
)

charging_profile_operations_total = Counter(
    "charging_profile_operations_total",
    "SetChargingProfile / ClearChargingProfile operations",
    ["operation", "status"],
)


def get_metrics_text():
    """Return metrics in Prometheus text format."""
    return generate_latest(REGISTRY).decode("utf-8")


def start_metrics_server(port: int):
    """Expose /metrics on the given port (no-op when port is 0)."""
    if port:
        start_http_server(port)


def record_tick(energy_wh: float):
    """Record one physics step and the energy it delivered."""
    simulation_ticks_total.inc()
    if energy_wh > 0:
        energy_delivered_kwh.inc(energy_wh / 1000.0)


def record_session_started():
    charging_sessions_active.inc()


def record_session_stopped():
    charging_sessions_active.dec()


def record_session_transition(result: str):
    """Record a transition outcome: accepted, rejected or forced."""
    session_transitions_total.labels(result=result).inc()


def record_limit_lookup(status: str):
    """Record a Smart Charging lookup: limited, no_limit or failed."""
    scp_limit_lookups_total.labels(status=status).inc()


def record_profile_operation(operation: str, status: str):
    """Record a profile operation (set/clear) with its OCPP status."""
    charging_profile_operations_total.labels(operation=operation, status=status).inc()
