"""
Unit tests for OCPP 1.6 Smart Charging message handlers

Tests SetChargingProfile, GetCompositeSchedule, and ClearChargingProfile
OCPP operations, profile stacking across scopes, and StatusNotification
emission on connector state changes.
"""

import asyncio
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import AsyncMock, MagicMock
from ocpp.v16 import call
from ocpp.v16.enums import (
    ChargePointErrorCode,
    ChargePointStatus,
    ChargingProfileStatus,
    ClearChargingProfileStatus,
    GetCompositeScheduleStatus,
)
from station import SimulatedChargePoint
from charging_profile_manager import ChargingProfilePurpose, parse_charging_profile
from session import ChargerType, Session
from session_state import SessionState


NOW = datetime(2026, 1, 8, 12, 0, 0, tzinfo=timezone.utc)


def profile_payload(
    profile_id=1,
    purpose="TxDefaultProfile",
    stack_level=0,
    kind="Relative",
    periods=((0, 11000),),
    unit="W",
    **extra
):
    schedule = {
        "chargingRateUnit": unit,
        "chargingSchedulePeriod": [
            {"startPeriod": start, "limit": limit} for start, limit in periods
        ],
    }
    schedule.update(extra.pop("schedule", {}))
    payload = {
        "chargingProfileId": profile_id,
        "stackLevel": stack_level,
        "chargingProfilePurpose": purpose,
        "chargingProfileKind": kind,
        "chargingSchedule": schedule,
    }
    payload.update(extra)
    return payload


async def drain(cp):
    """Wait for StatusNotification tasks scheduled by state changes."""
    pending = list(cp._background)
    if pending:
        await asyncio.gather(*pending)


@pytest.fixture
def mock_connection():
    """Mock WebSocket connection for ChargePoint."""
    mock_ws = MagicMock()
    mock_ws.send = AsyncMock()
    return mock_ws


@pytest.fixture
def charge_point(mock_connection):
    """Create a SimulatedChargePoint with a fixed clock and a mocked outgoing call."""
    cp = SimulatedChargePoint("TEST_STATION", mock_connection, clock=lambda: NOW)
    cp.call = AsyncMock()
    return cp


@pytest.fixture
def charging_session(charge_point):
    """Session on connector 1 with a running transaction."""
    session = Session.for_charger(
        "session-1", "TEST_STATION", ChargerType.AC_TRI,
        connector_id=1, transaction_id=42, transaction_start=NOW,
    )
    charge_point.attach_session(session)
    return session


class TestSetChargingProfile:
    """Test SetChargingProfile OCPP message handling."""

    @pytest.mark.asyncio
    async def test_set_charge_point_max_accepted(self, charge_point):
        """ChargePointMaxProfile on connector 0 is accepted."""
        response = await charge_point.on_set_charging_profile(
            connector_id=0,
            cs_charging_profiles=profile_payload(
                purpose="ChargePointMaxProfile", kind="Absolute", periods=((0, 22000),),
                schedule={"startSchedule": "2026-01-08T10:00:00Z"},
            )
        )

        assert response.status == ChargingProfileStatus.accepted
        assert charge_point.resolver.profile_count() == 1

    @pytest.mark.asyncio
    async def test_charge_point_max_on_connector_rejected(self, charge_point):
        response = await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(purpose="ChargePointMaxProfile")
        )

        assert response.status == ChargingProfileStatus.rejected
        assert charge_point.resolver.profile_count() == 0

    @pytest.mark.asyncio
    async def test_set_invalid_profile_rejected(self, charge_point):
        """Invalid profile is rejected."""
        response = await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(profile_id=-1)
        )

        assert response.status == ChargingProfileStatus.rejected

    @pytest.mark.asyncio
    async def test_set_profile_missing_required_field_rejected(self, charge_point):
        payload = profile_payload()
        del payload["chargingSchedule"]

        response = await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=payload
        )

        assert response.status == ChargingProfileStatus.rejected

    @pytest.mark.asyncio
    async def test_snake_case_payload_accepted(self, charge_point):
        response = await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles={
                "charging_profile_id": 3,
                "stack_level": 0,
                "charging_profile_purpose": "TxDefaultProfile",
                "charging_profile_kind": "Relative",
                "charging_schedule": {
                    "charging_rate_unit": "A",
                    "charging_schedule_period": [{"start_period": 0, "limit": 16}],
                },
            }
        )

        assert response.status == ChargingProfileStatus.accepted

    @pytest.mark.asyncio
    async def test_tx_profile_without_transaction_rejected(self, charge_point):
        response = await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(purpose="TxProfile")
        )

        assert response.status == ChargingProfileStatus.rejected

    @pytest.mark.asyncio
    async def test_tx_profile_on_session_without_transaction_rejected(self, charge_point):
        charge_point.attach_session(Session.for_charger(
            "idle", "TEST_STATION", ChargerType.AC_TRI, connector_id=1
        ))

        response = await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(purpose="TxProfile")
        )

        assert response.status == ChargingProfileStatus.rejected

    @pytest.mark.asyncio
    async def test_tx_profile_applies_to_running_session(self, charge_point, charging_session):
        response = await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(
                profile_id=5, purpose="TxProfile", periods=((0, 7400),), transactionId=42
            )
        )

        assert response.status == ChargingProfileStatus.accepted
        assert charging_session.scp_limit_kw == pytest.approx(7.4)
        assert charging_session.scp_profile_id == 5
        assert charging_session.scp_purpose == "TxProfile"

    @pytest.mark.asyncio
    async def test_tx_profile_wrong_transaction_rejected(self, charge_point, charging_session):
        response = await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(purpose="TxProfile", transactionId=7)
        )

        assert response.status == ChargingProfileStatus.rejected
        assert charging_session.scp_limit_kw is None

    @pytest.mark.asyncio
    async def test_relative_tx_profile_starts_at_transaction_start(self, charge_point):
        session = Session.for_charger(
            "session-2", "TEST_STATION", ChargerType.AC_TRI,
            connector_id=1, transaction_id=9, transaction_start=NOW - timedelta(minutes=40),
        )
        charge_point.attach_session(session)

        await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(
                purpose="TxProfile", periods=((0, 11000), (1800, 3000))
            )
        )

        # 40 minutes into the transaction the second period is in force
        assert session.scp_limit_kw == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_connector_zero_default_refreshes_sessions(self, charge_point, charging_session):
        await charge_point.on_set_charging_profile(
            connector_id=0,
            cs_charging_profiles=profile_payload(periods=((0, 5000),))
        )

        assert charging_session.scp_limit_kw == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_set_recurring_profile(self, charge_point):
        response = await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(
                kind="Recurring", recurrencyKind="Daily",
                schedule={"startSchedule": "2026-01-01T08:00:00Z", "duration": 28800},
            )
        )

        assert response.status == ChargingProfileStatus.accepted


class TestGetCompositeSchedule:
    """Test GetCompositeSchedule OCPP message handling."""

    @pytest.mark.asyncio
    async def test_single_profile(self, charge_point):
        await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(periods=((0, 11000), (1800, 7400)))
        )

        response = await charge_point.on_get_composite_schedule(
            connector_id=1, duration=3600, charging_rate_unit="W"
        )

        assert response.status == GetCompositeScheduleStatus.accepted
        assert response.connector_id == 1
        assert response.schedule_start == NOW.isoformat()
        assert response.charging_schedule["chargingSchedulePeriod"] == [
            {"startPeriod": 0, "limit": 11000.0},
            {"startPeriod": 1800, "limit": 7400.0},
        ]

    @pytest.mark.asyncio
    async def test_no_profiles_returns_evse_maximum(self, charge_point):
        response = await charge_point.on_get_composite_schedule(
            connector_id=1, duration=3600, charging_rate_unit="W"
        )

        assert response.status == GetCompositeScheduleStatus.accepted
        assert response.charging_schedule["chargingSchedulePeriod"] == [
            {"startPeriod": 0, "limit": 22000.0}
        ]

    @pytest.mark.asyncio
    async def test_rate_unit_amps(self, charge_point):
        response = await charge_point.on_get_composite_schedule(
            connector_id=1, duration=600, charging_rate_unit="A"
        )

        assert response.charging_schedule["chargingRateUnit"] == "A"
        assert response.charging_schedule["chargingSchedulePeriod"][0]["limit"] == 32.0

    @pytest.mark.asyncio
    async def test_default_rate_unit_is_watts(self, charge_point):
        response = await charge_point.on_get_composite_schedule(connector_id=1, duration=600)
        assert response.charging_schedule["chargingRateUnit"] == "W"

    @pytest.mark.asyncio
    async def test_invalid_rate_unit_rejected(self, charge_point):
        response = await charge_point.on_get_composite_schedule(
            connector_id=1, duration=600, charging_rate_unit="kW"
        )
        assert response.status == GetCompositeScheduleStatus.rejected

    @pytest.mark.asyncio
    async def test_non_positive_duration_rejected(self, charge_point):
        response = await charge_point.on_get_composite_schedule(connector_id=1, duration=0)
        assert response.status == GetCompositeScheduleStatus.rejected

    @pytest.mark.asyncio
    async def test_includes_connector_zero_and_charge_point_max(self, charge_point):
        await charge_point.on_set_charging_profile(
            connector_id=0,
            cs_charging_profiles=profile_payload(
                profile_id=1, purpose="ChargePointMaxProfile", periods=((0, 10000),)
            )
        )
        await charge_point.on_set_charging_profile(
            connector_id=0,
            cs_charging_profiles=profile_payload(profile_id=2, periods=((0, 15000), (1200, 5000)))
        )

        response = await charge_point.on_get_composite_schedule(
            connector_id=1, duration=3600, charging_rate_unit="W"
        )

        assert response.charging_schedule["chargingSchedulePeriod"] == [
            {"startPeriod": 0, "limit": 10000.0},
            {"startPeriod": 1200, "limit": 5000.0},
        ]

    @pytest.mark.asyncio
    async def test_includes_session_tx_profile(self, charge_point, charging_session):
        await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(purpose="TxProfile", periods=((0, 6000),))
        )

        response = await charge_point.on_get_composite_schedule(
            connector_id=1, duration=600, charging_rate_unit="W"
        )

        assert response.charging_schedule["chargingSchedulePeriod"][0]["limit"] == 6000.0

    @pytest.mark.asyncio
    async def test_uses_charger_electrical_spec(self, mock_connection):
        cp = SimulatedChargePoint(
            "MONO", mock_connection, charger_type=ChargerType.AC_MONO, clock=lambda: NOW
        )

        response = await cp.on_get_composite_schedule(
            connector_id=1, duration=600, charging_rate_unit="W"
        )

        assert response.charging_schedule["chargingSchedulePeriod"][0]["limit"] == 7400.0


class TestClearChargingProfile:
    """Test ClearChargingProfile OCPP message handling."""

    @pytest.fixture
    def populated(self, charge_point):
        """ChargePointMax on connector 0 plus two TxDefault profiles on connector 1."""
        resolver = charge_point.resolver
        resolver.set_charging_profile(0, None, parse_charging_profile(
            profile_payload(profile_id=1, purpose="ChargePointMaxProfile")
        ))
        resolver.set_charging_profile(1, None, parse_charging_profile(
            profile_payload(profile_id=2, stack_level=0)
        ))
        resolver.set_charging_profile(1, None, parse_charging_profile(
            profile_payload(profile_id=3, stack_level=1)
        ))
        return charge_point

    @pytest.mark.asyncio
    async def test_clear_by_profile_id(self, populated):
        response = await populated.on_clear_charging_profile(id=2)

        assert response.status == ClearChargingProfileStatus.accepted
        assert populated.resolver.profile_count() == 2

    @pytest.mark.asyncio
    async def test_clear_by_purpose(self, populated):
        response = await populated.on_clear_charging_profile(
            charging_profile_purpose="TxDefaultProfile"
        )

        assert response.status == ClearChargingProfileStatus.accepted
        assert populated.resolver.profile_count() == 1

    @pytest.mark.asyncio
    async def test_clear_by_stack_level(self, populated):
        response = await populated.on_clear_charging_profile(connector_id=1, stack_level=1)

        assert response.status == ClearChargingProfileStatus.accepted
        assert [p.charging_profile_id for p in populated.resolver.get_profiles_for_connector(1)] == [2]

    @pytest.mark.asyncio
    async def test_clear_all_profiles(self, populated):
        response = await populated.on_clear_charging_profile()

        assert response.status == ClearChargingProfileStatus.accepted
        assert populated.resolver.profile_count() == 0

    @pytest.mark.asyncio
    async def test_clear_connector_keeps_charge_point_max(self, populated):
        await populated.on_clear_charging_profile(connector_id=1)

        remaining = populated.resolver.get_profiles_for_connector(0)
        assert [p.charging_profile_purpose for p in remaining] == [
            ChargingProfilePurpose.CHARGE_POINT_MAX_PROFILE
        ]

    @pytest.mark.asyncio
    async def test_clear_no_matching_profiles_unknown(self, charge_point):
        response = await charge_point.on_clear_charging_profile(id=999)
        assert response.status == ClearChargingProfileStatus.unknown

    @pytest.mark.asyncio
    async def test_clear_invalid_purpose_unknown(self, populated):
        response = await populated.on_clear_charging_profile(charging_profile_purpose="Bogus")

        assert response.status == ClearChargingProfileStatus.unknown
        assert populated.resolver.profile_count() == 3

    @pytest.mark.asyncio
    async def test_clear_releases_session_limit(self, charge_point, charging_session):
        await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(profile_id=8, purpose="TxProfile", periods=((0, 4000),))
        )
        assert charging_session.scp_limit_kw == pytest.approx(4.0)

        await charge_point.on_clear_charging_profile(id=8)

        assert charging_session.scp_limit_kw is None


class TestProfileStacking:
    """Test limit resolution across the three profile scopes."""

    @pytest.mark.asyncio
    async def test_three_tier_minimum(self, charge_point, charging_session):
        await charge_point.on_set_charging_profile(
            connector_id=0,
            cs_charging_profiles=profile_payload(
                profile_id=1, purpose="ChargePointMaxProfile", periods=((0, 10000),)
            )
        )
        await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(profile_id=2, periods=((0, 15000),))
        )
        await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(profile_id=3, purpose="TxProfile", periods=((0, 20000),))
        )

        assert charging_session.scp_limit_kw == pytest.approx(10.0)
        assert charging_session.scp_purpose == "ChargePointMaxProfile"

    @pytest.mark.asyncio
    async def test_tx_profile_tighter_than_default(self, charge_point, charging_session):
        await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(profile_id=2, periods=((0, 11000),))
        )
        await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(profile_id=3, purpose="TxProfile", periods=((0, 3700),))
        )

        assert charging_session.scp_limit_kw == pytest.approx(3.7)
        assert charging_session.active_charging_profile.charging_profile_id == 3

    @pytest.mark.asyncio
    async def test_expired_profile_ignored(self, charge_point, charging_session):
        await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(validTo=(NOW - timedelta(hours=1)).isoformat())
        )

        assert charging_session.scp_limit_kw is None

    @pytest.mark.asyncio
    async def test_future_profile_ignored(self, charge_point, charging_session):
        await charge_point.on_set_charging_profile(
            connector_id=1,
            cs_charging_profiles=profile_payload(validFrom=(NOW + timedelta(hours=1)).isoformat())
        )

        assert charging_session.scp_limit_kw is None


class TestStatusNotification:
    """Test StatusNotification emission on connector state changes."""

    @pytest.fixture
    def session(self, charge_point):
        session = Session.for_charger("session-9", "TEST_STATION", ChargerType.AC_TRI, connector_id=2)
        charge_point.attach_session(session)
        return session

    @pytest.mark.asyncio
    async def test_pre_connection_states_send_nothing(self, charge_point, session):
        charge_point.state_machine.transition(session, SessionState.CONNECTING)
        charge_point.state_machine.transition(session, SessionState.CONNECTED)
        await drain(charge_point)

        charge_point.call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_status_sent_on_change(self, charge_point, session):
        machine = charge_point.state_machine
        for state in (SessionState.CONNECTING, SessionState.CONNECTED,
                      SessionState.BOOT_ACCEPTED, SessionState.PLUGGED):
            machine.transition(session, state)
        await drain(charge_point)

        sent = [c.args[0] for c in charge_point.call.await_args_list]
        assert all(isinstance(req, call.StatusNotification) for req in sent)
        assert [req.status for req in sent] == [
            ChargePointStatus.available, ChargePointStatus.preparing
        ]
        assert sent[-1].connector_id == 2
        assert sent[-1].error_code == ChargePointErrorCode.no_error

    @pytest.mark.asyncio
    async def test_same_status_not_repeated(self, charge_point, session):
        machine = charge_point.state_machine
        for state in (SessionState.CONNECTING, SessionState.CONNECTED,
                      SessionState.BOOT_ACCEPTED, SessionState.PLUGGED):
            machine.transition(session, state)
        await drain(charge_point)
        charge_point.call.reset_mock()

        # PLUGGED and AUTHORIZING both report Preparing
        machine.transition(session, SessionState.AUTHORIZING)
        await drain(charge_point)

        charge_point.call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_faulted_reports_error_code(self, charge_point, session):
        machine = charge_point.state_machine
        machine.transition(session, SessionState.CONNECTING)
        machine.transition(session, SessionState.FAULTED)
        await drain(charge_point)

        req = charge_point.call.await_args.args[0]
        assert req.status == ChargePointStatus.faulted
        assert req.error_code == ChargePointErrorCode.other_error

    @pytest.mark.asyncio
    async def test_failed_call_is_logged(self, charge_point, session, caplog):
        charge_point.call = AsyncMock(side_effect=ConnectionError("socket closed"))
        machine = charge_point.state_machine
        for state in (SessionState.CONNECTING, SessionState.CONNECTED,
                      SessionState.BOOT_ACCEPTED):
            machine.transition(session, state)
        pending = list(charge_point._background)

        with caplog.at_level("ERROR", logger="station"):
            await asyncio.gather(*pending, return_exceptions=True)
            await asyncio.sleep(0)

        assert charge_point._background == set()
        assert "StatusNotification failed" in caplog.text
        assert "socket closed" in charge_point.get_logs()[-1]

    def test_no_event_loop_skips_notification(self, charge_point, session):
        charge_point.state_machine.transition(session, SessionState.CONNECTING)
        charge_point.state_machine.transition(session, SessionState.FAULTED)

        assert session.state == SessionState.FAULTED
        charge_point.call.assert_not_called()
