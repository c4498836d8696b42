"""Tests for the action catalog and dispatcher."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from patient_assistant.services.backend_client import BackendAPIError
from patient_assistant.tools.catalog import CATALOG, format_dt, resolve_therapist
from patient_assistant.tools.dispatcher import ActionDispatcher


@pytest.fixture
def dispatcher(records):
    return ActionDispatcher(records)


# ── Catalog ──────────────────────────────────────────────────────────


class TestCatalog:
    def test_names(self):
        assert CATALOG.names() == [
            "list_therapists",
            "book_appointment",
            "list_appointments",
            "cancel_appointment",
            "get_profile",
        ]

    def test_requires_parameters(self):
        assert CATALOG.requires_parameters("list_therapists") is False
        assert CATALOG.requires_parameters("book_appointment") is True
        assert CATALOG.requires_parameters("cancel_appointment") is True
        assert CATALOG.requires_parameters("does_not_exist") is False

    def test_describe_lists_parameter_contract(self):
        text = CATALOG.describe()
        assert "therapistId (string, required)" in text
        assert "appointmentDate (ISO-8601 string, required)" in text
        assert "duration (integer, required)" in text
        assert "notes (string, optional)" in text
        assert "cancellationReason (string, optional)" in text

    def test_tool_schemas_use_camel_case(self):
        schemas = {s["name"]: s for s in CATALOG.tool_schemas()}
        book = schemas["book_appointment"]["input_schema"]
        assert set(book["required"]) == {"therapistId", "appointmentDate", "duration"}
        assert "title" not in book


class TestResolveTherapist:
    def test_by_id(self, records):
        assert resolve_therapist("t2", records.therapists)["lastName"] == "Jones"

    def test_by_unique_name(self, records):
        assert resolve_therapist("Dr. Smith", records.therapists)["_id"] == "t1"

    def test_ambiguous_name(self, records):
        records.therapists.append({"_id": "t3", "firstName": "Anna", "lastName": "Smith"})
        assert resolve_therapist("Smith", records.therapists) is None

    def test_unknown(self, records):
        assert resolve_therapist("Dr. Who", records.therapists) is None


class TestFormatDt:
    def test_iso_with_z(self):
        assert format_dt("2026-11-03T10:00:00.000Z") == "Tue 03 Nov 2026 at 10:00"

    def test_unparseable_passes_through(self):
        assert format_dt("next tuesday") == "next tuesday"


# ── Dispatcher ───────────────────────────────────────────────────────


class TestUnknownAction:
    def test_unknown_action_envelope(self, dispatcher):
        envelope = dispatcher.dispatch("unknown_action", {}, "p1")
        assert envelope.success is False
        assert envelope.error == "Unknown tool: unknown_action"


class TestListActions:
    def test_list_therapists(self, dispatcher):
        envelope = dispatcher.dispatch("list_therapists", {}, "p1")
        assert envelope.success is True
        assert len(envelope.data) == 2
        assert envelope.message.startswith("Found 2 therapists:")
        assert "Dr. John Smith (Anxiety & Depression) - ID: t1" in envelope.message

    def test_list_therapists_empty(self, dispatcher, records):
        records.therapists = []
        envelope = dispatcher.dispatch("list_therapists", None, "p1")
        assert envelope.success is True
        assert envelope.data == []

    def test_list_appointments_only_own(self, dispatcher):
        envelope = dispatcher.dispatch("list_appointments", {}, "p1")
        assert envelope.success is True
        assert [a["_id"] for a in envelope.data] == ["abc123"]
        assert "abc123" in envelope.message

    def test_list_appointments_empty(self, dispatcher, records):
        records.appointments.clear()
        envelope = dispatcher.dispatch("list_appointments", {}, "p1")
        assert envelope.message == "You have no appointments."

    def test_extra_parameters_ignored(self, dispatcher):
        envelope = dispatcher.dispatch("list_therapists", {"specialization": "anxiety"}, "p1")
        assert envelope.success is True


class TestBookAppointment:
    def test_books_with_therapist_id(self, dispatcher, records):
        envelope = dispatcher.dispatch(
            "book_appointment",
            {"therapistId": "t1", "appointmentDate": "2026-11-10T14:00:00Z", "duration": 60},
            "p1",
        )
        assert envelope.success is True
        [(patient_id, payload)] = records.called("create_appointment")
        assert patient_id == "p1"
        assert payload["therapistId"] == "t1"
        assert payload["appointmentDate"] == "2026-11-10T14:00:00+00:00"
        assert payload["duration"] == 60
        assert "notes" not in payload
        assert "Dr. John Smith" in envelope.message

    def test_resolves_therapist_name(self, dispatcher, records):
        envelope = dispatcher.dispatch(
            "book_appointment",
            {"therapistId": "Dr. Jones", "appointmentDate": "2026-11-10T14:00:00Z", "duration": 45,
             "notes": "First session"},
            "p1",
        )
        assert envelope.success is True
        [(_, payload)] = records.called("create_appointment")
        assert payload["therapistId"] == "t2"
        assert payload["notes"] == "First session"

    def test_execute_returns_resolved_arguments(self, dispatcher):
        envelope, arguments = dispatcher.execute(
            "book_appointment",
            {"therapistId": "Dr. Smith", "appointmentDate": "2026-11-10T14:00:00Z", "duration": "60"},
            "p1",
        )
        assert envelope.success is True
        assert arguments == {
            "therapistId": "t1",
            "appointmentDate": "2026-11-10T14:00:00Z",
            "duration": 60,
        }

    def test_execute_keeps_raw_arguments_when_validation_fails(self, dispatcher):
        envelope, arguments = dispatcher.execute("book_appointment", {"therapistId": "Dr. Smith"}, "p1")
        assert envelope.error_type == "ValidationError"
        assert arguments == {"therapistId": "Dr. Smith"}

    def test_execute_keeps_raw_arguments_when_therapist_is_unknown(self, dispatcher):
        raw = {"therapistId": "Dr. Who", "appointmentDate": "2026-11-10T14:00:00Z", "duration": 60}
        envelope, arguments = dispatcher.execute("book_appointment", raw, "p1")
        assert envelope.error == "Therapist not found: Dr. Who"
        assert arguments == raw

    def test_unknown_therapist(self, dispatcher, records):
        envelope = dispatcher.dispatch(
            "book_appointment",
            {"therapistId": "t9", "appointmentDate": "2026-11-10T14:00:00Z", "duration": 60},
            "p1",
        )
        assert envelope.success is False
        assert envelope.error == "Therapist not found: t9"
        assert envelope.error_type == "DispatchError"
        assert records.called("create_appointment") == []

    def test_missing_parameters_is_validation_error(self, dispatcher, records):
        envelope = dispatcher.dispatch("book_appointment", {"therapistId": "t1"}, "p1")
        assert envelope.success is False
        assert envelope.error_type == "ValidationError"
        assert "appointmentDate" in envelope.error
        assert "duration" in envelope.error
        assert envelope.message.startswith("I couldn't run book appointment:")
        assert records.called("create_appointment") == []

    @pytest.mark.parametrize("duration", [10, 181])
    def test_duration_bounds(self, dispatcher, duration):
        envelope = dispatcher.dispatch(
            "book_appointment",
            {"therapistId": "t1", "appointmentDate": "2026-11-10T14:00:00Z", "duration": duration},
            "p1",
        )
        assert envelope.success is False
        assert envelope.error_type == "ValidationError"
        assert "duration" in envelope.error

    def test_invalid_date(self, dispatcher):
        envelope = dispatcher.dispatch(
            "book_appointment",
            {"therapistId": "t1", "appointmentDate": "next tuesday", "duration": 60},
            "p1",
        )
        assert envelope.success is False
        assert "appointmentDate" in envelope.error


class TestCancelAppointment:
    def test_cancels_own_appointment_with_default_reason(self, dispatcher, records):
        envelope = dispatcher.dispatch("cancel_appointment", {"appointmentId": "abc123"}, "p1")
        assert envelope.success is True
        [(appointment_id, changes)] = records.called("update_appointment")
        assert appointment_id == "abc123"
        assert changes == {"status": "cancelled", "cancellationReason": "Cancelled by patient"}
        assert "Dr. John Smith" in envelope.message

    def test_custom_reason(self, dispatcher, records):
        dispatcher.dispatch(
            "cancel_appointment", {"appointmentId": "abc123", "cancellationReason": "Travelling"}, "p1",
        )
        [(_, changes)] = records.called("update_appointment")
        assert changes["cancellationReason"] == "Travelling"

    def test_refuses_other_patients_appointment(self, dispatcher, records):
        envelope = dispatcher.dispatch("cancel_appointment", {"appointmentId": "bob-apt"}, "p1")
        assert envelope.success is False
        assert envelope.error == "You can only cancel your own appointments"
        assert records.called("update_appointment") == []
        assert records.appointments["bob-apt"]["status"] == "scheduled"

    def test_missing_appointment(self, dispatcher):
        envelope = dispatcher.dispatch("cancel_appointment", {"appointmentId": "zzz"}, "p1")
        assert envelope.success is False
        assert envelope.error == "Appointment not found: zzz"

    def test_already_cancelled(self, dispatcher, records):
        records.appointments["abc123"]["status"] = "cancelled"
        envelope = dispatcher.dispatch("cancel_appointment", {"appointmentId": "abc123"}, "p1")
        assert envelope.success is False
        assert "already cancelled" in envelope.error
        assert records.called("update_appointment") == []


class TestGetProfile:
    def test_profile(self, dispatcher):
        envelope = dispatcher.dispatch("get_profile", {}, "p1")
        assert envelope.success is True
        assert envelope.data["email"] == "alice@example.com"
        assert "Alice Doe" in envelope.message
        assert "Phone: Not provided" in envelope.message


class TestNeverRaises:
    def test_backend_failure_becomes_envelope(self):
        records = MagicMock()
        records.list_therapists.side_effect = BackendAPIError("Server error 503", status_code=503)
        envelope = ActionDispatcher(records).dispatch("list_therapists", {}, "p1")
        assert envelope.success is False
        assert "503" in envelope.error
        assert envelope.message.startswith("The appointment system could not complete")

    def test_unexpected_exception_becomes_envelope(self):
        records = MagicMock()
        records.find_patient.side_effect = KeyError("firstName")
        envelope = ActionDispatcher(records).dispatch("get_profile", {}, "p1")
        assert envelope.success is False
        assert envelope.error_type == "DispatchError"

    def test_invokes_capability_once(self):
        records = MagicMock()
        records.list_therapists.return_value = [{"_id": "t1", "firstName": "A", "lastName": "B"}]
        ActionDispatcher(records).dispatch("list_therapists", {}, "p1")
        assert records.list_therapists.call_count == 1


class TestMetrics:
    @patch("patient_assistant.tools.dispatcher.metrics")
    def test_records_outcome(self, mock_metrics, dispatcher):
        dispatcher.dispatch("list_therapists", {}, "p1")
        dispatcher.dispatch("book_appointment", {}, "p1")
        mock_metrics.record_action.assert_any_call("list_therapists", success=True, error_type=None)
        mock_metrics.record_action.assert_any_call(
            "book_appointment", success=False, error_type="ValidationError",
        )
