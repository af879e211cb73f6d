"""
Charging session aggregate and charger catalogue.

A Session is owned by the caller (the session-management layer) and passed by
reference into the state machine, the physics engine and the Smart Charging
resolver, which read and update it in place.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from charging_profile_manager import ChargingProfile
from config import DEFAULT_VEHICLE
from session_state import SessionState


# ============================================================================
# CHARGER TYPES
# ============================================================================

@dataclass(frozen=True)
class ChargerSpec:
    phases: int  # 0 for DC
    voltage: float
    max_current_a: float
    max_power_kw: float


class ChargerType(Enum):
    AC_MONO = "AC_MONO"
    AC_BI = "AC_BI"
    AC_TRI = "AC_TRI"
    AC_TRI_43 = "AC_TRI_43"
    DC_50 = "DC_50"
    DC_150 = "DC_150"
    DC_350 = "DC_350"
    DC = "DC"

    @property
    def spec(self) -> ChargerSpec:
        return CHARGER_SPECS[self]

    @property
    def phases(self) -> int:
        return self.spec.phases

    @property
    def is_dc(self) -> bool:
        return self.spec.phases == 0

    @classmethod
    def from_value(cls, value: Optional[str]) -> "ChargerType":
        """Parse a charger type, defaulting to DC for DC-ish names and AC_TRI otherwise."""
        if value is None:
            return cls.AC_TRI
        normalized = value.strip().upper()
        for member in cls:
            if member.value == normalized:
                return member
        if "DC" in normalized:
            return cls.DC
        return cls.AC_TRI


CHARGER_SPECS: Dict[ChargerType, ChargerSpec] = {
    ChargerType.AC_MONO: ChargerSpec(1, 230.0, 32.0, 7.4),
    ChargerType.AC_BI: ChargerSpec(2, 400.0, 32.0, 14.5),
    ChargerType.AC_TRI: ChargerSpec(3, 400.0, 32.0, 22.0),
    ChargerType.AC_TRI_43: ChargerSpec(3, 400.0, 63.0, 43.0),
    ChargerType.DC_50: ChargerSpec(0, 500.0, 125.0, 50.0),
    ChargerType.DC_150: ChargerSpec(0, 500.0, 350.0, 150.0),
    ChargerType.DC_350: ChargerSpec(0, 920.0, 500.0, 350.0),
    ChargerType.DC: ChargerSpec(0, 500.0, 125.0, 50.0),
}


# ============================================================================
# SESSION
# ============================================================================

@dataclass
class Session:
    """
    Mutable charging session.

    Attributes:
        id: Session identifier (also the TxProfile scope key)
        cp_id: Charge point identity
        connector_id: Connector the vehicle is plugged into (>= 1)
        state: Current connector-lifecycle state
        soc / target_soc: State of charge and stopping bound, in percent
        max_power_kw / max_current_a / voltage: EVSE electrical limits
        meter_value: Energy register in Wh, never decreases
        scp_*: Smart Charging limit currently applied to this session
    """
    id: str
    cp_id: str
    connector_id: int = 1
    state: SessionState = SessionState.DISCONNECTED

    vehicle_id: str = DEFAULT_VEHICLE
    soc: float = 20.0
    target_soc: float = 80.0

    charger_type: ChargerType = ChargerType.AC_TRI
    max_power_kw: float = 22.0
    max_current_a: float = 32.0
    voltage: float = 400.0

    meter_value: int = 0
    transaction_id: Optional[int] = None
    transaction_start: Optional[datetime] = None

    active_charging_profile: Optional[ChargingProfile] = None
    scp_limit_kw: Optional[float] = None
    scp_purpose: Optional[str] = None
    scp_stack_level: Optional[int] = None
    scp_profile_id: Optional[int] = None

    current_power_kw: float = 0.0
    current_a: float = 0.0
    last_state_change: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if not 0 <= self.soc <= 100:
            raise ValueError(f"soc must be within 0..100, got {self.soc}")
        if not 0 <= self.target_soc <= 100:
            raise ValueError(f"target_soc must be within 0..100, got {self.target_soc}")

    @classmethod
    def for_charger(
        cls,
        session_id: str,
        cp_id: str,
        charger_type: ChargerType,
        **kwargs,
    ) -> "Session":
        """Create a session whose electrical limits come from the charger type."""
        spec = charger_type.spec
        kwargs.setdefault("max_power_kw", spec.max_power_kw)
        kwargs.setdefault("max_current_a", spec.max_current_a)
        kwargs.setdefault("voltage", spec.voltage)
        return cls(id=session_id, cp_id=cp_id, charger_type=charger_type, **kwargs)

    @property
    def is_dc(self) -> bool:
        return self.charger_type.is_dc

    @property
    def phases(self) -> int:
        return self.charger_type.phases

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cpId": self.cp_id,
            "connectorId": self.connector_id,
            "state": self.state.value,
            "vehicleId": self.vehicle_id,
            "soc": round(self.soc, 2),
            "targetSoc": self.target_soc,
            "chargerType": self.charger_type.value,
            "maxPowerKw": self.max_power_kw,
            "maxCurrentA": self.max_current_a,
            "voltage": self.voltage,
            "meterValue": self.meter_value,
            "transactionId": self.transaction_id,
            "currentPowerKw": self.current_power_kw,
            "scpLimitKw": self.scp_limit_kw,
            "scpPurpose": self.scp_purpose,
            "scpStackLevel": self.scp_stack_level,
            "scpProfileId": self.scp_profile_id,
        }
