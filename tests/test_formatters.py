"""Tests for the compact result projections."""

from ehr_assistant import formatters
from ehr_assistant.catalog import default_catalog


def _bundle(*resources: dict[str, object], total: int | None = None) -> dict[str, object]:
    bundle: dict[str, object] = {
        "resourceType": "Bundle",
        "entry": [{"resource": r} for r in resources],
    }
    if total is not None:
        bundle["total"] = total
    return bundle


class TestExtractionRules:
    """Coded values and references fall back in a fixed order."""

    def test_coded_text_prefers_text(self) -> None:
        concept = {"text": "Hypertension", "coding": [{"display": "HTN", "code": "I10"}]}
        assert formatters.coded_text(concept) == "Hypertension"

    def test_coded_text_falls_back_to_display_then_code(self) -> None:
        assert formatters.coded_text({"coding": [{"display": "HTN", "code": "I10"}]}) == "HTN"
        assert formatters.coded_text({"coding": [{"code": "I10"}]}) == "I10"

    def test_coded_text_unknown(self) -> None:
        assert formatters.coded_text({}) == "Unknown"
        assert formatters.coded_text(None) == "Unknown"
        assert formatters.coded_text({"coding": []}) == "Unknown"

    def test_reference_display(self) -> None:
        assert formatters.reference_display({"display": "Dr. Lee", "reference": "Practitioner/1"}) == "Dr. Lee"
        assert formatters.reference_display({"reference": "Practitioner/1"}) == "Practitioner/1"
        assert formatters.reference_display(None) == "Unknown"

    def test_to_day_truncates_date_times(self) -> None:
        assert formatters.to_day("2024-03-05T10:15:00Z") == "2024-03-05"
        assert formatters.to_day("2024-03-05") == "2024-03-05"
        assert formatters.to_day(None) is None

    def test_binary_id_from_url(self) -> None:
        assert formatters.binary_id_from_url("Binary/abc") == "abc"
        assert formatters.binary_id_from_url("https://ehr.test/fhir/Binary/abc?x=1") == "abc"
        assert formatters.binary_id_from_url("https://ehr.test/docs/abc.pdf") is None


class TestProjections:
    def test_observation_with_quantity(self) -> None:
        result = formatters.observation(
            {
                "code": {"coding": [{"display": "Body weight"}]},
                "valueQuantity": {"value": 72.5, "unit": "kg"},
                "effectiveDateTime": "2024-03-05T10:15:00Z",
                "status": "final",
            }
        )

        assert result["name"] == "Body weight"
        assert result["value"] == "72.5 kg"
        # Ordering timestamps keep full precision
        assert result["date"] == "2024-03-05T10:15:00Z"

    def test_observation_components(self) -> None:
        result = formatters.observation(
            {
                "code": {"text": "Blood pressure"},
                "component": [
                    {"code": {"text": "Systolic"}, "valueQuantity": {"value": 120, "unit": "mmHg"}},
                    {"code": {"text": "Diastolic"}, "valueQuantity": {"value": 80, "unit": "mmHg"}},
                ],
            }
        )

        assert result["value"] == "Systolic: 120 mmHg; Diastolic: 80 mmHg"

    def test_medication_request_instructions(self) -> None:
        result = formatters.medication_request(
            {
                "medicationCodeableConcept": {"text": "Lisinopril 10 mg"},
                "authoredOn": "2024-01-02T08:00:00Z",
                "dosageInstruction": [{"text": "Take 1 tablet daily, with water, in the morning"}],
            }
        )

        assert result["name"] == "Lisinopril 10 mg"
        assert result["authoredOn"] == "2024-01-02"
        assert result["dosage"] == "Take 1 tablet daily."

    def test_patient_instruction_preferred(self) -> None:
        resource = {
            "dosageInstruction": [
                {"patientInstruction": "One pill every morning", "text": "1 tab PO QD, with food"}
            ]
        }
        assert formatters.medication_instructions(resource) == "One pill every morning"

    def test_document_reference_attachments(self) -> None:
        result = formatters.document_reference(
            {
                "id": "doc-1",
                "type": {"text": "Progress note"},
                "content": [
                    {"attachment": {"contentType": "text/html", "url": "Binary/b-1"}},
                    {"attachment": {"contentType": "text/plain", "data": "aGk="}},
                ],
            }
        )

        assert result["attachments"][0]["binaryId"] == "b-1"
        assert result["attachments"][1]["hasInlineData"] is True
        assert result["author"] == "Unknown"

    def test_patient_demographics(self) -> None:
        result = formatters.patient(
            {
                "id": "123",
                "name": [{"given": ["Ada"], "family": "Lovelace"}],
                "gender": "female",
                "birthDate": "1815-12-10",
                "telecom": [{"system": "phone", "value": "555-0100"}],
                "address": [{"line": ["1 Main St"], "city": "Boston", "state": "MA", "postalCode": "02110"}],
            }
        )

        assert result["name"] == "Ada Lovelace"
        assert result["phone"] == "555-0100"
        assert result["email"] == "N/A"
        assert result["address"] == "1 Main St Boston, MA 02110"


class TestFormatBundle:
    def test_empty_bundle_is_a_message_not_an_error(self) -> None:
        result = default_catalog().get("Conditions").format(_bundle())

        assert result == {
            "kind": "Conditions",
            "count": 0,
            "message": "No conditions found matching the criteria.",
        }
        assert "error" not in result

    def test_missing_entry_list(self) -> None:
        result = default_catalog().get("Encounters").format({"resourceType": "Bundle"})

        assert result["count"] == 0

    def test_operation_outcomes_and_empty_entries_are_skipped(self) -> None:
        bundle = {
            "resourceType": "Bundle",
            "entry": [
                {"resource": {"resourceType": "OperationOutcome"}},
                {"fullUrl": "no-resource"},
                {"resource": {"resourceType": "Immunization", "vaccineCode": {"text": "Flu"}}},
            ],
        }

        result = default_catalog().get("Immunizations").format(bundle)

        assert result["count"] == 1
        assert result["results"][0]["vaccine"] == "Flu"

    def test_total_is_passed_through(self) -> None:
        result = default_catalog().get("Immunizations").format(
            _bundle({"vaccineCode": {"text": "Flu"}}, total=12)
        )

        assert result["total"] == 12

    def test_read_result_from_single_resource_or_bundle(self) -> None:
        spec = default_catalog().get("Patient")
        resource = {"resourceType": "Patient", "id": "123", "name": [{"text": "Ada Lovelace"}]}

        direct = spec.format(resource)
        wrapped = spec.format(_bundle(resource))

        assert direct == wrapped
        assert direct["kind"] == "Patient"
        assert direct["name"] == "Ada Lovelace"
