"""
OCPP 1.6 connector-lifecycle state machine.

The allowed transitions live in a single table (VALID_TRANSITIONS) rather than
in per-state logic, so the table can be inspected and tested on its own.
SessionStateMachine applies that table to Session objects, stamps the change
time and notifies listeners; it never raises on an invalid transition.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from ocpp.v16.enums import ChargePointStatus

from metrics import record_session_transition

logger = logging.getLogger("session_state")


# ============================================================================
# STATES
# ============================================================================

class SessionState(Enum):
    DISCONNECTED = "disconnected"
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BOOT_ACCEPTED = "boot_accepted"
    AVAILABLE = "available"
    PARKED = "parked"
    PLUGGED = "plugged"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    STARTING = "starting"
    CHARGING = "charging"
    SUSPENDED_EVSE = "suspended_evse"
    SUSPENDED_EV = "suspended_ev"
    STOPPING = "stopping"
    FINISHING = "finishing"
    RESERVED = "reserved"
    UNAVAILABLE = "unavailable"
    FAULTED = "faulted"
    DISCONNECTING = "disconnecting"

    @property
    def is_charging(self) -> bool:
        """True while a transaction is running, including suspended periods."""
        return self in (
            SessionState.CHARGING,
            SessionState.SUSPENDED_EVSE,
            SessionState.SUSPENDED_EV,
        )

    @property
    def is_connected(self) -> bool:
        return self not in (
            SessionState.DISCONNECTED,
            SessionState.IDLE,
            SessionState.CONNECTING,
            SessionState.DISCONNECTING,
        )

    @property
    def is_error(self) -> bool:
        return self in (SessionState.FAULTED, SessionState.UNAVAILABLE)

    @property
    def is_transitional(self) -> bool:
        return self in (
            SessionState.CONNECTING,
            SessionState.AUTHORIZING,
            SessionState.STARTING,
            SessionState.STOPPING,
        )


S = SessionState

# Reachable from every state except DISCONNECTED/IDLE
UNIVERSAL_TARGETS: FrozenSet[SessionState] = frozenset({
    S.FAULTED, S.UNAVAILABLE, S.DISCONNECTED,
})

VALID_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    S.DISCONNECTED: frozenset({S.CONNECTING}),
    S.IDLE: frozenset({S.CONNECTING}),
    S.CONNECTING: frozenset({S.CONNECTED}),
    S.CONNECTED: frozenset({S.BOOT_ACCEPTED, S.DISCONNECTING}),
    S.BOOT_ACCEPTED: frozenset({S.PARKED, S.PLUGGED, S.RESERVED, S.DISCONNECTING}),
    S.AVAILABLE: frozenset({S.PARKED, S.PLUGGED, S.RESERVED, S.DISCONNECTING}),
    S.PARKED: frozenset({S.PLUGGED, S.BOOT_ACCEPTED, S.DISCONNECTING}),
    S.PLUGGED: frozenset({S.AUTHORIZING, S.AVAILABLE, S.PARKED}),
    S.AUTHORIZING: frozenset({S.AUTHORIZED, S.PLUGGED}),
    S.AUTHORIZED: frozenset({S.STARTING, S.AVAILABLE}),
    S.STARTING: frozenset({S.CHARGING, S.AUTHORIZED}),
    S.CHARGING: frozenset({S.SUSPENDED_EVSE, S.SUSPENDED_EV, S.STOPPING}),
    S.SUSPENDED_EVSE: frozenset({S.CHARGING, S.SUSPENDED_EV, S.STOPPING}),
    S.SUSPENDED_EV: frozenset({S.CHARGING, S.SUSPENDED_EVSE, S.STOPPING}),
    S.STOPPING: frozenset({S.FINISHING}),
    S.FINISHING: frozenset({S.AVAILABLE}),
    S.RESERVED: frozenset({S.AVAILABLE, S.PLUGGED}),
    S.UNAVAILABLE: frozenset({S.AVAILABLE, S.BOOT_ACCEPTED}),
    S.FAULTED: frozenset({S.AVAILABLE, S.UNAVAILABLE}),
    S.DISCONNECTING: frozenset({S.DISCONNECTED}),
}

VALID_ACTIONS: Dict[SessionState, FrozenSet[str]] = {
    S.DISCONNECTED: frozenset({"connect"}),
    S.IDLE: frozenset({"connect"}),
    S.CONNECTING: frozenset({"cancel"}),
    S.CONNECTED: frozenset({"boot", "disconnect"}),
    S.BOOT_ACCEPTED: frozenset({"park", "plug", "disconnect"}),
    S.AVAILABLE: frozenset({"park", "plug", "disconnect"}),
    S.PARKED: frozenset({"plug", "unpark", "disconnect"}),
    S.PLUGGED: frozenset({"authorize", "unplug"}),
    S.AUTHORIZING: frozenset(),
    S.AUTHORIZED: frozenset({"startTransaction", "unplug"}),
    S.STARTING: frozenset(),
    S.CHARGING: frozenset({"stopTransaction", "suspend", "sendMeterValues"}),
    S.SUSPENDED_EVSE: frozenset({"resume", "stopTransaction"}),
    S.SUSPENDED_EV: frozenset({"resume", "stopTransaction"}),
    S.STOPPING: frozenset(),
    S.FINISHING: frozenset({"unplug"}),
    S.FAULTED: frozenset({"clearFault", "disconnect"}),
    S.UNAVAILABLE: frozenset({"setAvailable"}),
    S.RESERVED: frozenset({"cancelReservation"}),
    S.DISCONNECTING: frozenset(),
}

# States before the charge point is registered have no connector status
OCPP_STATUS: Dict[SessionState, ChargePointStatus] = {
    S.BOOT_ACCEPTED: ChargePointStatus.available,
    S.AVAILABLE: ChargePointStatus.available,
    S.PARKED: ChargePointStatus.available,
    S.PLUGGED: ChargePointStatus.preparing,
    S.AUTHORIZING: ChargePointStatus.preparing,
    S.AUTHORIZED: ChargePointStatus.preparing,
    S.STARTING: ChargePointStatus.preparing,
    S.CHARGING: ChargePointStatus.charging,
    S.SUSPENDED_EVSE: ChargePointStatus.suspended_evse,
    S.SUSPENDED_EV: ChargePointStatus.suspended_ev,
    S.STOPPING: ChargePointStatus.finishing,
    S.FINISHING: ChargePointStatus.finishing,
    S.RESERVED: ChargePointStatus.reserved,
    S.UNAVAILABLE: ChargePointStatus.unavailable,
    S.FAULTED: ChargePointStatus.faulted,
}


def allowed_targets(state: SessionState) -> FrozenSet[SessionState]:
    targets = VALID_TRANSITIONS.get(state, frozenset())
    if state not in (S.DISCONNECTED, S.IDLE):
        targets = targets | UNIVERSAL_TARGETS
    return targets - {state}


def can_transition_to(current: SessionState, target: SessionState) -> bool:
    return target in allowed_targets(current)


def ocpp_status_for(state: SessionState) -> Optional[ChargePointStatus]:
    return OCPP_STATUS.get(state)


def should_send_status_notification(from_state: SessionState, to_state: SessionState) -> bool:
    """True when the new state maps to a connector status different from the old one."""
    new_status = ocpp_status_for(to_state)
    if new_status is None:
        return False
    return new_status != ocpp_status_for(from_state)


# ============================================================================
# STATE MACHINE
# ============================================================================

@dataclass
class TransitionResult:
    success: bool
    previous_state: SessionState
    new_state: SessionState
    valid_transitions: FrozenSet[SessionState] = field(default_factory=frozenset)
    reason: str = ""

    def __bool__(self) -> bool:
        return self.success


TransitionListener = Callable[[object, SessionState, SessionState], None]


class SessionStateMachine:
    """
    Applies the transition table to sessions.

    Listeners are called as listener(session, old_state, new_state) after every
    successful (or forced) transition; the caller uses them to emit
    StatusNotification frames or broadcast state. A listener that raises is
    logged and does not undo the transition.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._listeners: List[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def can_transition(self, session, target_state: SessionState) -> bool:
        return can_transition_to(session.state, target_state)

    def get_valid_transitions(self, session) -> FrozenSet[SessionState]:
        return allowed_targets(session.state)

    def get_valid_actions(self, session) -> FrozenSet[str]:
        return VALID_ACTIONS.get(session.state, frozenset())

    def transition(
        self,
        session,
        new_state: SessionState,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        previous = session.state
        valid = allowed_targets(previous)

        if new_state not in valid:
            names = ", ".join(sorted(s.name for s in valid)) or "none"
            logger.warning(
                f"Session {session.id}: invalid transition {previous.name} -> "
                f"{new_state.name} (valid: {names})"
            )
            record_session_transition("rejected")
            return TransitionResult(
                success=False,
                previous_state=previous,
                new_state=previous,
                valid_transitions=valid,
                reason=f"Invalid transition {previous.name} -> {new_state.name}",
            )

        self._apply(session, previous, new_state, now)
        logger.info(f"Session {session.id}: {previous.name} -> {new_state.name}")
        record_session_transition("accepted")
        return TransitionResult(
            success=True,
            previous_state=previous,
            new_state=new_state,
            valid_transitions=allowed_targets(new_state),
        )

    def force_transition(
        self,
        session,
        new_state: SessionState,
        reason: str,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Apply a transition regardless of the table (hard reset and similar)."""
        previous = session.state
        self._apply(session, previous, new_state, now)
        logger.warning(
            f"Session {session.id}: forced {previous.name} -> {new_state.name} ({reason})"
        )
        record_session_transition("forced")
        return TransitionResult(
            success=True,
            previous_state=previous,
            new_state=new_state,
            valid_transitions=allowed_targets(new_state),
            reason=reason,
        )

    def _apply(self, session, previous: SessionState, new_state: SessionState, now) -> None:
        session.state = new_state
        session.last_state_change = now or self._clock()
        for listener in list(self._listeners):
            try:
                listener(session, previous, new_state)
            except Exception:
                logger.exception(
                    f"Session {session.id}: transition listener failed "
                    f"({previous.name} -> {new_state.name})"
                )
