"""
OCPP 1.6 Smart Charging profile resolver

This module implements the ChargingProfile data structures and the profile
hierarchy defined in OCPP 1.6 Specification Part 2, Section 3.13.

It provides:
- Dataclasses for ChargingProfile, ChargingSchedule, and ChargingSchedulePeriod
- Enums for ChargingProfilePurpose, ChargingProfileKind, RecurrencyKind, ChargingRateUnit
- Helper functions for parsing and validating OCPP profile dictionaries
- SmartChargingResolver, which stores profiles in three independent scopes and
  computes effective limits and composite schedules from them

Profile scopes:
- ChargePointMaxProfile: keyed by stackLevel, applies to the whole charge point
- TxDefaultProfile: keyed by (connectorId, stackLevel); connectorId 0 = all connectors
- TxProfile: keyed by (sessionId, stackLevel), dropped when the transaction ends

Within a scope the highest stackLevel that is valid and active wins; across
scopes the lowest limit wins.
"""

import logging
import math
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from ocpp.v16.enums import ChargingProfileStatus, ClearChargingProfileStatus

from config import ALLOWED_RATE_UNITS, MAX_SCHEDULE_PERIODS
from metrics import record_limit_lookup, record_profile_operation

logger = logging.getLogger("charging_profile_manager")

SQRT3 = math.sqrt(3)


# ============================================================================
# ENUMS
# ============================================================================

class ChargingProfilePurpose(Enum):
    """
    Purpose of the charging profile as defined in OCPP 1.6.

    - CHARGE_POINT_MAX_PROFILE: Caps the whole charge point (connector 0 only)
    - TX_DEFAULT_PROFILE: Default for transactions on a connector (0 = every connector)
    - TX_PROFILE: Applies to one running transaction
    """
    CHARGE_POINT_MAX_PROFILE = "ChargePointMaxProfile"
    TX_DEFAULT_PROFILE = "TxDefaultProfile"
    TX_PROFILE = "TxProfile"


class ChargingProfileKind(Enum):
    ABSOLUTE = "Absolute"
    RECURRING = "Recurring"
    RELATIVE = "Relative"


class RecurrencyKind(Enum):
    DAILY = "Daily"
    WEEKLY = "Weekly"

    @property
    def period(self) -> timedelta:
        return timedelta(days=1) if self == RecurrencyKind.DAILY else timedelta(days=7)


class ChargingRateUnit(Enum):
    WATTS = "W"
    AMPS = "A"


class LimitLookupStatus(Enum):
    LIMITED = "limited"
    NO_LIMIT = "no_limit"
    FAILED = "failed"


# ============================================================================
# DATACLASSES
# ============================================================================

@dataclass
class ChargingSchedulePeriod:
    """
    A single period within a charging schedule.

    Attributes:
        start_period: Offset in seconds from the schedule start
        limit: Limit in W or A, depending on the schedule's rate unit
        number_phases: Optional phase count used for A <-> kW conversion
    """
    start_period: int
    limit: float
    number_phases: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to OCPP dictionary format."""
        result = {
            "startPeriod": self.start_period,
            "limit": self.limit
        }
        if self.number_phases is not None:
            result["numberPhases"] = self.number_phases
        return result


@dataclass
class ChargingSchedule:
    charging_rate_unit: ChargingRateUnit
    charging_schedule_period: List[ChargingSchedulePeriod]
    duration: Optional[int] = None
    start_schedule: Optional[datetime] = None
    min_charging_rate: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to OCPP dictionary format."""
        result = {
            "chargingRateUnit": self.charging_rate_unit.value,
            "chargingSchedulePeriod": [p.to_dict() for p in self.charging_schedule_period]
        }
        if self.duration is not None:
            result["duration"] = self.duration
        if self.start_schedule is not None:
            result["startSchedule"] = self.start_schedule.isoformat()
        if self.min_charging_rate is not None:
            result["minChargingRate"] = self.min_charging_rate
        return result


@dataclass
class ChargingProfile:
    """
    Charging profile as received in SetChargingProfile.

    The wire fields mirror the OCPP payload. applied_at, effective_start_time,
    connector_id and session_id are bookkeeping stamped by the resolver when
    the profile is stored; they are not part of to_dict().
    """
    charging_profile_id: int
    stack_level: int
    charging_profile_purpose: ChargingProfilePurpose
    charging_profile_kind: ChargingProfileKind
    charging_schedule: ChargingSchedule
    transaction_id: Optional[int] = None
    recurrency_kind: Optional[RecurrencyKind] = None
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None

    applied_at: Optional[datetime] = field(default=None, compare=False)
    effective_start_time: Optional[datetime] = field(default=None, compare=False)
    connector_id: Optional[int] = field(default=None, compare=False)
    session_id: Optional[str] = field(default=None, compare=False)

    def to_dict(self) -> dict:
        """Convert to OCPP dictionary format."""
        result = {
            "chargingProfileId": self.charging_profile_id,
            "stackLevel": self.stack_level,
            "chargingProfilePurpose": self.charging_profile_purpose.value,
            "chargingProfileKind": self.charging_profile_kind.value,
            "chargingSchedule": self.charging_schedule.to_dict()
        }
        if self.transaction_id is not None:
            result["transactionId"] = self.transaction_id
        if self.recurrency_kind is not None:
            result["recurrencyKind"] = self.recurrency_kind.value
        if self.valid_from is not None:
            result["validFrom"] = self.valid_from.isoformat()
        if self.valid_to is not None:
            result["validTo"] = self.valid_to.isoformat()
        return result


@dataclass(frozen=True)
class NextPeriodInfo:
    start_period: int
    limit: float
    seconds_until_start: float


@dataclass(frozen=True)
class EffectiveLimit:
    """
    Instantaneous limit for one session/connector.

    limit_kw is the minimum over the three scopes. When no profile applies,
    has_limit is False and limit_kw carries the EVSE maximum (or infinity).
    """
    limit_kw: float
    has_limit: bool
    source_purpose: Optional[ChargingProfilePurpose] = None
    profile_id: Optional[int] = None
    stack_level: Optional[int] = None
    next_period: Optional[NextPeriodInfo] = None
    profile: Optional[ChargingProfile] = field(default=None, repr=False, compare=False)

    @classmethod
    def no_limit(cls, max_power_kw: Optional[float] = None) -> "EffectiveLimit":
        return cls(
            limit_kw=max_power_kw if max_power_kw is not None else math.inf,
            has_limit=False,
        )

    def to_dict(self) -> dict:
        return {
            "limitKw": self.limit_kw,
            "hasLimit": self.has_limit,
            "sourcePurpose": self.source_purpose.value if self.source_purpose else None,
            "profileId": self.profile_id,
            "stackLevel": self.stack_level,
        }


@dataclass(frozen=True)
class LimitLookup:
    """Outcome of a limit lookup that distinguishes 'no limit' from 'lookup failed'."""
    status: LimitLookupStatus
    limit: Optional[EffectiveLimit] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == LimitLookupStatus.FAILED


@dataclass(frozen=True)
class SetProfileResult:
    status: ChargingProfileStatus
    reason: str = ""

    def __bool__(self) -> bool:
        return self.status == ChargingProfileStatus.accepted


@dataclass
class CompositeSchedule:
    connector_id: int
    duration: int
    start_time: datetime
    charging_rate_unit: ChargingRateUnit
    periods: List[ChargingSchedulePeriod]
    has_profiles: bool = True

    def to_schedule(self) -> ChargingSchedule:
        return ChargingSchedule(
            charging_rate_unit=self.charging_rate_unit,
            charging_schedule_period=self.periods,
            duration=self.duration,
            start_schedule=self.start_time,
        )

    def to_dict(self) -> dict:
        """OCPP chargingSchedule dictionary (GetCompositeSchedule.conf)."""
        return self.to_schedule().to_dict()


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def _parse_datetime(value) -> Optional[datetime]:
    """
    Parse an ISO8601 string (or pass through a datetime) as an aware datetime.

    Naive values are assumed to be UTC.

    Raises:
        ValueError: If the string is not a valid ISO8601 datetime
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    try:
        if value.endswith('Z'):
            value = value[:-1] + '+00:00'
        dt = datetime.fromisoformat(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid datetime format: {value}") from e


def _camel_to_snake(name: str) -> str:
    return "".join("_" + c.lower() if c.isupper() else c for c in name)


def _get(payload: dict, key: str, default=None):
    """Read a camelCase key, falling back to its snake_case spelling."""
    if key in payload:
        return payload[key]
    return payload.get(_camel_to_snake(key), default)


def _has(payload: dict, key: str) -> bool:
    return key in payload or _camel_to_snake(key) in payload


def parse_charging_profile(profile_dict: dict) -> ChargingProfile:
    """
    Convert an OCPP csChargingProfiles dictionary to a ChargingProfile.

    Accepts the camelCase wire payload as well as the snake_case payload the
    ocpp library hands to @on handlers.

    Raises:
        ValueError: If required fields are missing or invalid

    Example:
        >>> profile = parse_charging_profile({
        ...     "chargingProfileId": 1,
        ...     "stackLevel": 0,
        ...     "chargingProfilePurpose": "TxDefaultProfile",
        ...     "chargingProfileKind": "Relative",
        ...     "chargingSchedule": {
        ...         "chargingRateUnit": "W",
        ...         "chargingSchedulePeriod": [{"startPeriod": 0, "limit": 11000}]
        ...     }
        ... })
        >>> profile.stack_level
        0
    """
    if not isinstance(profile_dict, dict):
        raise ValueError("Charging profile must be an object")

    required_fields = [
        "chargingProfileId", "stackLevel", "chargingProfilePurpose",
        "chargingProfileKind", "chargingSchedule"
    ]
    for field_name in required_fields:
        if not _has(profile_dict, field_name):
            raise ValueError(f"Missing required field: {field_name}")

    schedule_dict = _get(profile_dict, "chargingSchedule")
    if not isinstance(schedule_dict, dict):
        raise ValueError("chargingSchedule must be an object")
    for field_name in ("chargingRateUnit", "chargingSchedulePeriod"):
        if not _has(schedule_dict, field_name):
            raise ValueError(f"Missing required field in chargingSchedule: {field_name}")

    try:
        rate_unit = ChargingRateUnit(_get(schedule_dict, "chargingRateUnit"))
    except ValueError:
        raise ValueError(f"Invalid chargingRateUnit: {_get(schedule_dict, 'chargingRateUnit')}")

    periods = []
    for period_dict in _get(schedule_dict, "chargingSchedulePeriod") or []:
        if not _has(period_dict, "startPeriod"):
            raise ValueError("Missing required field in period: startPeriod")
        if "limit" not in period_dict:
            raise ValueError("Missing required field in period: limit")

        number_phases = _get(period_dict, "numberPhases")
        periods.append(ChargingSchedulePeriod(
            start_period=int(_get(period_dict, "startPeriod")),
            limit=float(period_dict["limit"]),
            number_phases=int(number_phases) if number_phases is not None else None
        ))

    duration = _get(schedule_dict, "duration")
    min_rate = _get(schedule_dict, "minChargingRate")
    schedule = ChargingSchedule(
        charging_rate_unit=rate_unit,
        charging_schedule_period=periods,
        duration=int(duration) if duration is not None else None,
        start_schedule=_parse_datetime(_get(schedule_dict, "startSchedule")),
        min_charging_rate=float(min_rate) if min_rate is not None else None
    )

    try:
        purpose = ChargingProfilePurpose(_get(profile_dict, "chargingProfilePurpose"))
    except ValueError:
        raise ValueError(
            f"Invalid chargingProfilePurpose: {_get(profile_dict, 'chargingProfilePurpose')}"
        )

    try:
        kind = ChargingProfileKind(_get(profile_dict, "chargingProfileKind"))
    except ValueError:
        raise ValueError(f"Invalid chargingProfileKind: {_get(profile_dict, 'chargingProfileKind')}")

    recurrency_kind = None
    if _get(profile_dict, "recurrencyKind") is not None:
        try:
            recurrency_kind = RecurrencyKind(_get(profile_dict, "recurrencyKind"))
        except ValueError:
            raise ValueError(f"Invalid recurrencyKind: {_get(profile_dict, 'recurrencyKind')}")

    transaction_id = _get(profile_dict, "transactionId")
    return ChargingProfile(
        charging_profile_id=int(_get(profile_dict, "chargingProfileId")),
        stack_level=int(_get(profile_dict, "stackLevel")),
        charging_profile_purpose=purpose,
        charging_profile_kind=kind,
        charging_schedule=schedule,
        transaction_id=int(transaction_id) if transaction_id is not None else None,
        recurrency_kind=recurrency_kind,
        valid_from=_parse_datetime(_get(profile_dict, "validFrom")),
        valid_to=_parse_datetime(_get(profile_dict, "validTo"))
    )


def validate_charging_profile(profile: ChargingProfile) -> Tuple[bool, str]:
    """
    Structural validation of a ChargingProfile.

    Checks:
    - chargingProfileId and stackLevel are non-negative
    - at least one schedule period, sorted by startPeriod ascending
    - limits are non-negative (0 pauses charging)
    - duration, when present, is non-negative
    - Recurring profiles carry a recurrencyKind

    Scope rules that depend on the target connector/session are checked by
    SmartChargingResolver.set_charging_profile.

    Returns:
        Tuple of (is_valid, error_message); error_message is "" when valid
    """
    if profile.charging_profile_id < 0:
        return False, f"chargingProfileId must be non-negative, got {profile.charging_profile_id}"

    if profile.stack_level < 0:
        return False, f"stackLevel must be non-negative, got {profile.stack_level}"

    schedule = profile.charging_schedule
    periods = schedule.charging_schedule_period
    if not periods:
        return False, "chargingSchedulePeriod array cannot be empty"

    for i in range(1, len(periods)):
        if periods[i].start_period < periods[i-1].start_period:
            return False, (
                f"chargingSchedulePeriod must be sorted by startPeriod ascending. "
                f"Period {i} has startPeriod {periods[i].start_period} < "
                f"previous period startPeriod {periods[i-1].start_period}"
            )

    for i, period in enumerate(periods):
        if period.start_period < 0:
            return False, f"Period {i} has negative startPeriod: {period.start_period}"
        if period.limit < 0:
            return False, f"Period {i} has negative limit: {period.limit}"

    if schedule.duration is not None and schedule.duration < 0:
        return False, f"duration must be non-negative, got {schedule.duration}"

    if profile.charging_profile_kind == ChargingProfileKind.RECURRING:
        if profile.recurrency_kind is None:
            return False, "recurrencyKind is required for Recurring profile kind"

    return True, ""


def limit_to_kw(
    limit: float,
    unit: ChargingRateUnit,
    voltage: float,
    phases: int,
) -> Optional[float]:
    """
    Convert a schedule limit to kW.

    A: kW = V * A * factor / 1000, factor 1 for single-phase (or DC), sqrt(3)
    for poly-phase. W: kW = W / 1000. Returns None for A limits when the
    voltage is unknown (<= 0).
    """
    if unit == ChargingRateUnit.WATTS:
        return limit / 1000.0
    if voltage is None or voltage <= 0:
        return None
    factor = SQRT3 if (phases or 0) > 1 else 1.0
    return voltage * limit * factor / 1000.0


def kw_to_limit(
    power_kw: float,
    unit: ChargingRateUnit,
    voltage: float,
    phases: int,
) -> Optional[float]:
    if unit == ChargingRateUnit.WATTS:
        return power_kw * 1000.0
    if voltage is None or voltage <= 0:
        return None
    factor = SQRT3 if (phases or 0) > 1 else 1.0
    return power_kw * 1000.0 / (voltage * factor)


# ============================================================================
# SMART CHARGING RESOLVER
# ============================================================================

ProfileListener = Callable[[Optional[int], Optional[str]], None]

_PURPOSE_ORDER = {
    ChargingProfilePurpose.CHARGE_POINT_MAX_PROFILE: 0,
    ChargingProfilePurpose.TX_DEFAULT_PROFILE: 1,
    ChargingProfilePurpose.TX_PROFILE: 2,
}


class SmartChargingResolver:
    """
    Stores charging profiles for one charge point (or one simulated fleet)
    and resolves them into limits.

    The three scope stores are shared between sessions ticked in parallel and
    guarded by a single lock. Readers copy the candidate profiles under the
    lock and compute outside it, so one computation sees one consistent
    snapshot of the stores and of `now`.

    Listeners registered with add_listener() are called as
    listener(connector_id, session_id) after each stored or removed profile,
    so the owner can refresh the limit applied to affected sessions.

    Example:
        >>> resolver = SmartChargingResolver()
        >>> result = resolver.set_charging_profile(1, "session-1", profile)
        >>> if result:
        ...     limit = resolver.get_effective_limit("session-1", 1, 400.0, 3)
    """

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        allowed_rate_units: Optional[Iterable[str]] = None,
        max_schedule_periods: Optional[int] = None,
    ):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.allowed_rate_units = set(
            allowed_rate_units if allowed_rate_units is not None else ALLOWED_RATE_UNITS
        )
        self.max_schedule_periods = (
            max_schedule_periods if max_schedule_periods is not None else MAX_SCHEDULE_PERIODS
        )

        self._lock = threading.RLock()
        # stackLevel -> profile
        self._charge_point_max: Dict[int, ChargingProfile] = {}
        # connectorId -> stackLevel -> profile
        self._tx_default: Dict[int, Dict[int, ChargingProfile]] = {}
        # sessionId -> stackLevel -> profile
        self._tx_profiles: Dict[str, Dict[int, ChargingProfile]] = {}

        self._listeners: List[ProfileListener] = []

    def now(self) -> datetime:
        return self._clock()

    def add_listener(self, listener: ProfileListener) -> None:
        self._listeners.append(listener)

    def _notify(self, changed: List[ChargingProfile]) -> None:
        for profile in changed:
            for listener in list(self._listeners):
                try:
                    listener(profile.connector_id, profile.session_id)
                except Exception:
                    logger.exception(
                        f"Profile listener failed for profile {profile.charging_profile_id}"
                    )

    # ------------------------------------------------------------------
    # SetChargingProfile
    # ------------------------------------------------------------------

    def set_charging_profile(
        self,
        connector_id: int,
        session_id: Optional[str],
        profile: ChargingProfile,
        transaction_id: Optional[int] = None,
        effective_start_time: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> SetProfileResult:
        """
        Validate and store a profile in its scope.

        A profile at the same scope key (purpose + connector/session + stackLevel)
        is overwritten.

        Args:
            connector_id: Target connector (0 = charge point)
            session_id: Session owning the transaction (required for TxProfile)
            profile: Parsed profile
            transaction_id: Transaction currently running on the connector, if any
            effective_start_time: Start reference for Relative profiles (transaction start)
            now: Override for the resolver clock

        Returns:
            SetProfileResult with Accepted, Rejected or NotSupported
        """
        result = self._check_scope(connector_id, session_id, profile, transaction_id)
        if result.status != ChargingProfileStatus.accepted:
            logger.warning(
                f"Profile {profile.charging_profile_id} {result.status.value} "
                f"on connector {connector_id}: {result.reason}"
            )
            record_profile_operation("set", result.status.value)
            return result

        now = now or self._clock()
        stored = replace(
            profile,
            applied_at=now,
            effective_start_time=effective_start_time,
            connector_id=connector_id,
            session_id=session_id,
        )
        purpose = profile.charging_profile_purpose

        with self._lock:
            if purpose == ChargingProfilePurpose.CHARGE_POINT_MAX_PROFILE:
                self._charge_point_max[profile.stack_level] = stored
            elif purpose == ChargingProfilePurpose.TX_DEFAULT_PROFILE:
                self._tx_default.setdefault(connector_id, {})[profile.stack_level] = stored
            else:
                self._tx_profiles.setdefault(session_id, {})[profile.stack_level] = stored

        logger.info(
            f"Profile {profile.charging_profile_id} stored "
            f"(purpose={purpose.value}, connector={connector_id}, "
            f"session={session_id}, stackLevel={profile.stack_level})"
        )
        record_profile_operation("set", ChargingProfileStatus.accepted.value)
        self._notify([stored])
        return result

    def _check_scope(
        self,
        connector_id: int,
        session_id: Optional[str],
        profile: ChargingProfile,
        transaction_id: Optional[int],
    ) -> SetProfileResult:
        rejected = ChargingProfileStatus.rejected

        is_valid, error_msg = validate_charging_profile(profile)
        if not is_valid:
            return SetProfileResult(rejected, error_msg)

        schedule = profile.charging_schedule
        if schedule.charging_rate_unit.value not in self.allowed_rate_units:
            return SetProfileResult(
                ChargingProfileStatus.not_supported,
                f"chargingRateUnit {schedule.charging_rate_unit.value} not supported",
            )

        if len(schedule.charging_schedule_period) > self.max_schedule_periods:
            return SetProfileResult(
                rejected,
                f"{len(schedule.charging_schedule_period)} periods exceeds "
                f"ChargingScheduleMaxPeriods={self.max_schedule_periods}",
            )

        if connector_id is None or connector_id < 0:
            return SetProfileResult(rejected, f"Invalid connectorId: {connector_id}")

        purpose = profile.charging_profile_purpose
        if purpose == ChargingProfilePurpose.CHARGE_POINT_MAX_PROFILE and connector_id != 0:
            return SetProfileResult(rejected, "ChargePointMaxProfile requires connectorId 0")

        if purpose == ChargingProfilePurpose.TX_PROFILE:
            if connector_id == 0:
                return SetProfileResult(rejected, "TxProfile cannot target connectorId 0")
            if not session_id:
                return SetProfileResult(rejected, "TxProfile requires an active transaction")
            if (profile.transaction_id is not None
                    and profile.transaction_id != transaction_id):
                return SetProfileResult(
                    rejected,
                    f"transactionId {profile.transaction_id} does not match "
                    f"active transaction {transaction_id}",
                )

        return SetProfileResult(ChargingProfileStatus.accepted)

    # ------------------------------------------------------------------
    # ClearChargingProfile
    # ------------------------------------------------------------------

    def clear_charging_profile(
        self,
        session_id: Optional[str] = None,
        connector_id: Optional[int] = None,
        profile_id: Optional[int] = None,
        stack_level: Optional[int] = None,
        purpose: Optional[ChargingProfilePurpose] = None,
    ) -> ClearChargingProfileStatus:
        """
        Remove profiles matching the criteria.

        With profile_id, the first profile carrying that id is removed wherever
        it lives and every other filter is ignored. Otherwise the filters are
        ANDed per scope; an absent filter does not constrain, connector_id
        None/0 means every connector, and session_id only narrows TxProfiles.

        Returns:
            ClearChargingProfileStatus.accepted if at least one profile was removed,
            ClearChargingProfileStatus.unknown otherwise
        """
        with self._lock:
            if profile_id is not None:
                removed = self._remove_by_id(profile_id)
            else:
                removed = self._remove_matching(session_id, connector_id, stack_level, purpose)

        status = (
            ClearChargingProfileStatus.accepted if removed
            else ClearChargingProfileStatus.unknown
        )
        if removed:
            logger.info(
                f"Cleared {len(removed)} profiles (filters: id={profile_id}, "
                f"connector={connector_id}, session={session_id}, "
                f"purpose={purpose.value if purpose else None}, stackLevel={stack_level})"
            )
        else:
            logger.debug(
                f"No profiles matched clear criteria (id={profile_id}, connector={connector_id})"
            )
        record_profile_operation("clear", status.value)
        self._notify(removed)
        return status

    def _remove_by_id(self, profile_id: int) -> List[ChargingProfile]:
        for stack, profile in list(self._charge_point_max.items()):
            if profile.charging_profile_id == profile_id:
                return [self._charge_point_max.pop(stack)]
        for store in (self._tx_default, self._tx_profiles):
            for key, by_stack in store.items():
                for stack, profile in list(by_stack.items()):
                    if profile.charging_profile_id == profile_id:
                        removed = by_stack.pop(stack)
                        if not by_stack:
                            del store[key]
                        return [removed]
        return []

    def _remove_matching(
        self,
        session_id: Optional[str],
        connector_id: Optional[int],
        stack_level: Optional[int],
        purpose: Optional[ChargingProfilePurpose],
    ) -> List[ChargingProfile]:
        removed: List[ChargingProfile] = []
        all_connectors = connector_id is None or connector_id == 0

        def stack_matches(p: ChargingProfile) -> bool:
            return stack_level is None or p.stack_level == stack_level

        if purpose in (None, ChargingProfilePurpose.CHARGE_POINT_MAX_PROFILE) and all_connectors:
            for stack, profile in list(self._charge_point_max.items()):
                if stack_matches(profile):
                    removed.append(self._charge_point_max.pop(stack))

        if purpose in (None, ChargingProfilePurpose.TX_DEFAULT_PROFILE):
            for conn in list(self._tx_default):
                if not all_connectors and conn != connector_id:
                    continue
                by_stack = self._tx_default[conn]
                for stack, profile in list(by_stack.items()):
                    if stack_matches(profile):
                        removed.append(by_stack.pop(stack))
                if not by_stack:
                    del self._tx_default[conn]

        if purpose in (None, ChargingProfilePurpose.TX_PROFILE):
            for sid in list(self._tx_profiles):
                if session_id is not None and sid != session_id:
                    continue
                by_stack = self._tx_profiles[sid]
                for stack, profile in list(by_stack.items()):
                    if not all_connectors and profile.connector_id != connector_id:
                        continue
                    if stack_matches(profile):
                        removed.append(by_stack.pop(stack))
                if not by_stack:
                    del self._tx_profiles[sid]

        return removed

    def clear_session_profiles(self, session_id: str) -> int:
        """Drop every TxProfile owned by a session (its transaction ended)."""
        with self._lock:
            removed = list(self._tx_profiles.pop(session_id, {}).values())
        if removed:
            logger.info(f"Session {session_id}: removed {len(removed)} TxProfiles at transaction end")
        self._notify(removed)
        return len(removed)

    def cleanup_expired_profiles(self, now: Optional[datetime] = None) -> int:
        """
        Remove profiles that can never apply again: validTo in the past, or an
        Absolute schedule whose window has fully elapsed.
        """
        now = now or self._clock()
        removed: List[ChargingProfile] = []

        def expired(p: ChargingProfile) -> bool:
            if p.valid_to is not None and p.valid_to < now:
                return True
            duration = p.charging_schedule.duration
            if p.charging_profile_kind == ChargingProfileKind.ABSOLUTE and duration is not None:
                end = self.get_schedule_start_time(p, now) + timedelta(seconds=duration)
                return end < now
            return False

        with self._lock:
            for stack, profile in list(self._charge_point_max.items()):
                if expired(profile):
                    removed.append(self._charge_point_max.pop(stack))
            for store in (self._tx_default, self._tx_profiles):
                for key in list(store):
                    by_stack = store[key]
                    for stack, profile in list(by_stack.items()):
                        if expired(profile):
                            removed.append(by_stack.pop(stack))
                    if not by_stack:
                        del store[key]

        if removed:
            logger.info(f"Removed {len(removed)} expired profiles")
        self._notify(removed)
        return len(removed)

    def reset(self) -> None:
        with self._lock:
            self._charge_point_max.clear()
            self._tx_default.clear()
            self._tx_profiles.clear()
        logger.info("All charging profiles cleared")

    def profile_count(self) -> int:
        with self._lock:
            return (
                len(self._charge_point_max)
                + sum(len(v) for v in self._tx_default.values())
                + sum(len(v) for v in self._tx_profiles.values())
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _snapshot(
        self, session_id: Optional[str], connector_id: int
    ) -> Tuple[List[ChargingProfile], List[ChargingProfile], List[ChargingProfile]]:
        with self._lock:
            cp_max = list(self._charge_point_max.values())
            tx_default = list(self._tx_default.get(connector_id, {}).values())
            if connector_id != 0:
                tx_default.extend(self._tx_default.get(0, {}).values())
            tx = list(self._tx_profiles.get(session_id, {}).values()) if session_id else []
        return cp_max, tx_default, tx

    def get_profiles_for_connector(self, connector_id: int) -> List[ChargingProfile]:
        """Stored profiles scoped to a connector (connector 0 returns ChargePointMax profiles)."""
        with self._lock:
            result = list(self._tx_default.get(connector_id, {}).values())
            if connector_id == 0:
                result.extend(self._charge_point_max.values())
            for by_stack in self._tx_profiles.values():
                result.extend(p for p in by_stack.values() if p.connector_id == connector_id)
        return result

    def get_active_profiles(
        self,
        session_id: Optional[str],
        connector_id: int,
        now: Optional[datetime] = None,
    ) -> List[ChargingProfile]:
        """Profiles inside their validFrom/validTo window that concern this session/connector."""
        now = now or self._clock()
        cp_max, tx_default, tx = self._snapshot(session_id, connector_id)
        result = [p for p in cp_max + tx_default + tx if self._is_time_valid(p, now)]
        result.sort(key=lambda p: (_PURPOSE_ORDER[p.charging_profile_purpose], -p.stack_level))
        return result

    @staticmethod
    def _is_time_valid(profile: ChargingProfile, at: datetime) -> bool:
        if profile.valid_from is not None and at < profile.valid_from:
            return False
        if profile.valid_to is not None and at > profile.valid_to:
            return False
        return True

    def get_schedule_start_time(self, profile: ChargingProfile, now: datetime) -> datetime:
        """
        Resolve when the profile's schedule starts, relative to `now`.

        - Absolute: startSchedule, unless its whole window elapsed before the
          profile was applied, in which case appliedAt. Without startSchedule:
          validFrom, then appliedAt, then now.
        - Relative: effective_start_time (transaction start), then appliedAt, then now.
        - Recurring: start of the current daily/weekly window anchored on
          startSchedule.
        """
        schedule = profile.charging_schedule
        kind = profile.charging_profile_kind

        if kind == ChargingProfileKind.ABSOLUTE:
            start = schedule.start_schedule
            if start is not None:
                if (schedule.duration is not None and profile.applied_at is not None
                        and start + timedelta(seconds=schedule.duration) < profile.applied_at):
                    return profile.applied_at
                return start
            if profile.valid_from is not None:
                return profile.valid_from
            return profile.applied_at or now

        if kind == ChargingProfileKind.RELATIVE:
            return profile.effective_start_time or profile.applied_at or now

        base = schedule.start_schedule or profile.valid_from or profile.applied_at or now
        period = (profile.recurrency_kind or RecurrencyKind.DAILY).period
        elapsed = now - base
        if elapsed < timedelta(0):
            return base
        return base + (elapsed // period) * period

    def _active_period(
        self,
        profile: ChargingProfile,
        at: datetime,
        end_exclusive: bool = False,
    ) -> Optional[Tuple[ChargingSchedulePeriod, float, datetime]]:
        """(period, elapsed seconds, schedule start) in effect at `at`, or None."""
        schedule = profile.charging_schedule
        start = self.get_schedule_start_time(profile, at)
        elapsed = (at - start).total_seconds()
        if elapsed < 0:
            return None
        if schedule.duration is not None:
            if elapsed > schedule.duration or (end_exclusive and elapsed >= schedule.duration):
                return None

        applicable = None
        for period in schedule.charging_schedule_period:
            if period.start_period <= elapsed:
                applicable = period
            else:
                break
        if applicable is None:
            return None
        return applicable, elapsed, start

    def calculate_limit_kw(
        self,
        profile: ChargingProfile,
        at: datetime,
        voltage: float,
        phases: int,
    ) -> Optional[float]:
        """
        Instantaneous limit of one profile in kW, or None when the profile
        contributes nothing at `at` (not started, expired, or A limit with no voltage).
        """
        active = self._active_period(profile, at)
        if active is None:
            return None
        period = active[0]
        return limit_to_kw(
            period.limit,
            profile.charging_schedule.charging_rate_unit,
            voltage,
            period.number_phases or phases,
        )

    def _select_in_scope(
        self,
        candidates: List[ChargingProfile],
        at: datetime,
        end_exclusive: bool = False,
    ) -> Optional[Tuple[ChargingProfile, ChargingSchedulePeriod, float, datetime]]:
        # Highest stack first; a connector-specific TxDefault beats connector 0 on a tie
        ordered = sorted(
            candidates,
            key=lambda p: (p.stack_level, (p.connector_id or 0) != 0),
            reverse=True,
        )
        for profile in ordered:
            if not self._is_time_valid(profile, at):
                continue
            active = self._active_period(profile, at, end_exclusive)
            if active is not None:
                return (profile,) + active
        return None

    def _next_period(
        self, profile: ChargingProfile, elapsed: float
    ) -> Optional[NextPeriodInfo]:
        duration = profile.charging_schedule.duration
        for period in profile.charging_schedule.charging_schedule_period:
            if period.start_period > elapsed:
                if duration is not None and period.start_period >= duration:
                    return None
                return NextPeriodInfo(
                    start_period=period.start_period,
                    limit=period.limit,
                    seconds_until_start=period.start_period - elapsed,
                )
        return None

    def get_effective_limit(
        self,
        session_id: Optional[str],
        connector_id: int,
        voltage: float,
        phases: int,
        now: Optional[datetime] = None,
        max_power_kw: Optional[float] = None,
    ) -> EffectiveLimit:
        """
        Minimum limit across the three scopes at `now`.

        Each scope contributes the limit of its highest-stack profile that is
        both inside its validity window and currently active. A scope without
        such a profile does not constrain. With nothing applicable the result
        is EffectiveLimit.no_limit(max_power_kw).
        """
        now = now or self._clock()
        best: Optional[EffectiveLimit] = None

        for scope in self._snapshot(session_id, connector_id):
            selected = self._select_in_scope(scope, now)
            if selected is None:
                continue
            profile, period, elapsed, _ = selected
            limit_kw = limit_to_kw(
                period.limit,
                profile.charging_schedule.charging_rate_unit,
                voltage,
                period.number_phases or phases,
            )
            if limit_kw is None:
                continue
            if best is None or limit_kw < best.limit_kw:
                best = EffectiveLimit(
                    limit_kw=limit_kw,
                    has_limit=True,
                    source_purpose=profile.charging_profile_purpose,
                    profile_id=profile.charging_profile_id,
                    stack_level=profile.stack_level,
                    next_period=self._next_period(profile, elapsed),
                    profile=profile,
                )

        if best is None:
            return EffectiveLimit.no_limit(max_power_kw)

        logger.debug(
            f"Effective limit for session {session_id} connector {connector_id}: "
            f"{best.limit_kw:.2f} kW from {best.source_purpose.value} #{best.profile_id}"
        )
        return best

    def lookup_limit(
        self,
        session_id: Optional[str],
        connector_id: int,
        voltage: float,
        phases: int,
        now: Optional[datetime] = None,
        max_power_kw: Optional[float] = None,
    ) -> LimitLookup:
        """get_effective_limit() wrapped in a result type; never raises."""
        try:
            limit = self.get_effective_limit(
                session_id, connector_id, voltage, phases, now, max_power_kw
            )
        except Exception as e:
            logger.warning(
                f"Smart Charging lookup failed for session {session_id} "
                f"connector {connector_id}: {e}"
            )
            record_limit_lookup(LimitLookupStatus.FAILED.value)
            return LimitLookup(status=LimitLookupStatus.FAILED, error=str(e))

        status = LimitLookupStatus.LIMITED if limit.has_limit else LimitLookupStatus.NO_LIMIT
        record_limit_lookup(status.value)
        return LimitLookup(status=status, limit=limit)

    def apply_limit_to_session(self, session, now: Optional[datetime] = None) -> EffectiveLimit:
        """Refresh the scp_* fields and active profile of a session from the stores."""
        limit = self.get_effective_limit(
            session.id,
            session.connector_id,
            session.voltage,
            session.phases,
            now,
            session.max_power_kw,
        )
        if limit.has_limit:
            session.scp_limit_kw = limit.limit_kw
            session.scp_purpose = limit.source_purpose.value
            session.scp_stack_level = limit.stack_level
            session.scp_profile_id = limit.profile_id
            session.active_charging_profile = limit.profile
        else:
            session.scp_limit_kw = None
            session.scp_purpose = None
            session.scp_stack_level = None
            session.scp_profile_id = None
            session.active_charging_profile = None
        return limit

    # ------------------------------------------------------------------
    # GetCompositeSchedule
    # ------------------------------------------------------------------

    def _breakpoints(
        self,
        profiles: List[ChargingProfile],
        now: datetime,
        duration: int,
    ) -> List[int]:
        points = {0, duration}
        end = now + timedelta(seconds=duration)

        def add_start(at: datetime) -> None:
            offset = math.ceil((at - now).total_seconds())
            if 0 <= offset < duration:
                points.add(offset)

        def add_after(at: datetime) -> None:
            # first whole second strictly after `at`
            offset = math.floor((at - now).total_seconds()) + 1
            if 0 <= offset < duration:
                points.add(offset)

        for profile in profiles:
            schedule = profile.charging_schedule
            if profile.valid_from is not None:
                add_start(profile.valid_from)
            if profile.valid_to is not None:
                add_after(profile.valid_to)

            window_start = self.get_schedule_start_time(profile, now)
            windows = [window_start]
            if profile.charging_profile_kind == ChargingProfileKind.RECURRING:
                period = (profile.recurrency_kind or RecurrencyKind.DAILY).period
                nxt = window_start + period
                while nxt < end:
                    windows.append(nxt)
                    nxt += period

            for start in windows:
                for sp in schedule.charging_schedule_period:
                    add_start(start + timedelta(seconds=sp.start_period))
                if schedule.duration is not None:
                    add_start(start + timedelta(seconds=schedule.duration))

        return sorted(points)

    def get_composite_schedule(
        self,
        session_id: Optional[str],
        connector_id: int,
        duration: int,
        target_unit: Optional[ChargingRateUnit] = None,
        now: Optional[datetime] = None,
        voltage: float = 400.0,
        phases: int = 3,
        max_power_kw: float = 22.0,
        max_current_a: float = 32.0,
    ) -> CompositeSchedule:
        """
        Merge every applicable profile into one schedule over [now, now + duration).

        The window is cut at every instant a contributing profile can change
        (period starts, schedule ends, validity bounds, recurrences). For each
        sub-interval the per-scope winner is evaluated at the interval start
        and the minimum across scopes kept. Intervals without any limit carry
        the EVSE maximum; equal neighbouring periods are merged.
        """
        now = now or self._clock()
        target_unit = target_unit or ChargingRateUnit.WATTS
        duration = max(0, int(duration))
        scopes = self._snapshot(session_id, connector_id)
        all_profiles = [p for scope in scopes for p in scope]

        if target_unit == ChargingRateUnit.WATTS:
            evse_max = max_power_kw * 1000.0
        else:
            evse_max = max_current_a

        points = self._breakpoints(all_profiles, now, duration)
        periods: List[ChargingSchedulePeriod] = []
        contributed = False

        for offset in points[:-1]:
            at = now + timedelta(seconds=offset)
            limit = None
            number_phases = None

            for scope in scopes:
                selected = self._select_in_scope(scope, at, end_exclusive=True)
                if selected is None:
                    continue
                profile, period, _, _ = selected
                unit = profile.charging_schedule.charging_rate_unit
                period_phases = period.number_phases or phases
                if unit == target_unit:
                    value = period.limit
                else:
                    kw = limit_to_kw(period.limit, unit, voltage, period_phases)
                    value = kw_to_limit(kw, target_unit, voltage, period_phases) if kw is not None else None
                if value is None:
                    continue
                if limit is None or value < limit:
                    limit = value
                    number_phases = period.number_phases

            if limit is None:
                limit = evse_max
            else:
                contributed = True

            last = periods[-1] if periods else None
            if last is not None and last.limit == limit and last.number_phases == number_phases:
                continue
            periods.append(ChargingSchedulePeriod(
                start_period=offset,
                limit=limit,
                number_phases=number_phases,
            ))

        if not periods:
            periods.append(ChargingSchedulePeriod(start_period=0, limit=evse_max))

        logger.info(
            f"Composite schedule for connector {connector_id}: "
            f"{len(periods)} periods over {duration}s"
        )
        return CompositeSchedule(
            connector_id=connector_id,
            duration=duration,
            start_time=now,
            charging_rate_unit=target_unit,
            periods=periods,
            has_profiles=contributed,
        )
