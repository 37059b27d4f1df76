"""Static metadata for every resource kind the assistant can retrieve.

Each ResourceSpec is a closed record of everything needed to work with one
kind of clinical record: its primary query template, the fallback templates
to try when a server rejects the primary one, the search parameters the
model may use, and the projection that makes results LLM-sized.

Concept — Fallback templates:
    FHIR servers differ in which search parameters they accept. One server
    rejects _sort=-date on Encounter, another only knows category=LAB. The
    primary template asks for the ideal query; fallbacks progressively drop
    or swap the parts most likely to be unsupported.

Templates may reference binding context with str.format placeholders:
{patient_id} for the patient in context and {resource_id} for read-style
queries such as Binary/{resource_id}.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ehr_assistant import formatters
from ehr_assistant.errors import ConfigError
from ehr_assistant.formatters import Projection

ValueKind = Literal["token", "date", "string", "reference"]


class SearchParam(BaseModel):
    """One searchable field of a resource kind."""

    model_config = ConfigDict(frozen=True)

    wire: str  # The FHIR search parameter name sent to the server
    kind: ValueKind
    description: str
    enum: tuple[str, ...] | None = None
    target: str | None = None  # Referenced resource type, for reference params


class ResourceSpec(BaseModel):
    """Immutable description of one resource kind."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: str
    tool_name: str | None = None  # None = no generated search tool
    label: str
    description: str
    template: str
    fallbacks: tuple[str, ...] = ()
    params: dict[str, SearchParam] = Field(default_factory=dict)
    default_sort: str | None = None
    default_count: int | None = 20
    projection: Projection
    read: bool = False  # True when the template addresses a single resource

    @property
    def templates(self) -> tuple[str, ...]:
        """Primary template followed by fallbacks, in priority order."""
        return (self.template, *self.fallbacks)

    @property
    def date_param(self) -> str | None:
        """Wire name a generic date range filters on, or None if the kind has no date."""
        for param in self.params.values():
            if param.kind == "date":
                return param.wire
        return None

    @property
    def sort_choices(self) -> tuple[str, ...]:
        """Orderings the model may ask for: the default and its reverse."""
        if not self.default_sort or self.read:
            return ()
        field = self.default_sort.lstrip("-")
        newest_first = f"-{field}"
        return (self.default_sort, field if self.default_sort == newest_first else newest_first)

    def format(self, payload: Any) -> dict[str, Any]:
        """Project a raw result for this kind."""
        if self.read:
            return formatters.format_resource(self.kind, self.label, payload, self.projection)
        return formatters.format_bundle(self.kind, self.label, payload, self.projection)


class ResourceCatalog:
    """Registry of ResourceSpecs keyed by kind."""

    def __init__(self, specs: tuple[ResourceSpec, ...] | list[ResourceSpec]) -> None:
        self._specs: dict[str, ResourceSpec] = {}
        for spec in specs:
            if spec.kind in self._specs:
                raise ConfigError(f"Duplicate resource kind: {spec.kind}")
            self._specs[spec.kind] = spec

    def get(self, kind: str) -> ResourceSpec:
        """Look up a spec.

        Raises:
            ConfigError: If the kind is not registered.
        """
        try:
            return self._specs[kind]
        except KeyError:
            raise ConfigError(f"Unknown resource type: {kind}") from None

    def kinds(self) -> list[str]:
        return list(self._specs)

    def exposed(self) -> list[ResourceSpec]:
        """Specs that get a generated search tool."""
        return [spec for spec in self._specs.values() if spec.tool_name]

    def __contains__(self, kind: object) -> bool:
        return kind in self._specs

    def __iter__(self) -> Iterator[ResourceSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)


# ---------------------------------------------------------------------------
# Shared search parameters
# ---------------------------------------------------------------------------

_CODE = SearchParam(wire="code", kind="token", description="LOINC, SNOMED or RxNorm code")
_DATE = SearchParam(wire="date", kind="date", description="Clinical date (YYYY-MM-DD)")
_ENCOUNTER = SearchParam(
    wire="encounter",
    kind="reference",
    target="Encounter",
    description="Encounter the record belongs to",
)


def _status(*values: str) -> SearchParam:
    return SearchParam(wire="status", kind="token", description="Record status", enum=values)


_OBSERVATION_PARAMS = {
    "code": _CODE,
    "date": _DATE,
    "status": _status("registered", "preliminary", "final", "amended", "cancelled"),
}

# ---------------------------------------------------------------------------
# Default catalog
# ---------------------------------------------------------------------------

DEFAULT_SPECS: tuple[ResourceSpec, ...] = (
    ResourceSpec(
        kind="Patient",
        label="patient",
        description="Demographics of the patient in context",
        template="Patient/{patient_id}",
        default_count=None,
        projection=formatters.patient,
        read=True,
    ),
    ResourceSpec(
        kind="VitalSigns",
        tool_name="search_vital_signs",
        label="vital signs",
        description="Search vital-sign observations (blood pressure, pulse, weight, ...)",
        template="Observation?category=vital-signs",
        fallbacks=("Observation?category=vital-signs", "Observation"),
        params=_OBSERVATION_PARAMS,
        default_sort="-date",
        projection=formatters.observation,
    ),
    ResourceSpec(
        kind="LabResults",
        tool_name="search_lab_results",
        label="lab results",
        description="Search laboratory observations",
        template="Observation?category=laboratory",
        fallbacks=("Observation?category=laboratory", "Observation?category=LAB"),
        params=_OBSERVATION_PARAMS,
        default_sort="-date",
        projection=formatters.observation,
    ),
    ResourceSpec(
        kind="SocialHistory",
        tool_name="search_social_history",
        label="social history observations",
        description="Search social-history observations (smoking, alcohol, occupation)",
        template="Observation?category=social-history",
        fallbacks=("Observation?category=social-history",),
        params={"code": _CODE, "date": _DATE},
        default_sort="-date",
        projection=formatters.observation,
    ),
    ResourceSpec(
        kind="MedicationRequests",
        tool_name="search_medication_requests",
        label="medication orders",
        description="Search medication orders and prescriptions",
        template="MedicationRequest",
        fallbacks=("MedicationRequest?_sort=-date", "MedicationRequest"),
        params={
            "status": _status(
                "active", "completed", "cancelled", "draft", "entered-in-error", "stopped"
            ),
            "authored": SearchParam(
                wire="authoredon", kind="date", description="Date the order was written"
            ),
            "intent": SearchParam(
                wire="intent",
                kind="token",
                description="Order intent",
                enum=("proposal", "plan", "order", "original-order"),
            ),
        },
        default_sort="-authoredon",
        projection=formatters.medication_request,
    ),
    ResourceSpec(
        kind="Medications",
        tool_name="search_medications",
        label="medications",
        description="Search medication definitions",
        template="Medication",
        params={"code": _CODE},
        projection=formatters.medication,
    ),
    ResourceSpec(
        kind="Binary",
        label="binary content",
        description="Raw document content by id",
        template="Binary/{resource_id}",
        default_count=None,
        projection=formatters.binary,
        read=True,
    ),
    ResourceSpec(
        kind="Conditions",
        tool_name="search_conditions",
        label="conditions",
        description="Search conditions, problems and diagnoses",
        template="Condition?patient=Patient%2F{patient_id}",
        fallbacks=(
            "Condition?patient=Patient%2F{patient_id}&category=problem-list-item",
            "Condition?patient=Patient%2F{patient_id}&clinical-status=active",
            "Condition",
        ),
        params={
            "clinical_status": SearchParam(
                wire="clinical-status",
                kind="token",
                description="Clinical status of the condition",
                enum=("active", "inactive", "resolved", "remission"),
            ),
            "category": SearchParam(
                wire="category",
                kind="token",
                description="Condition category",
                enum=("problem-list-item", "health-concern", "encounter-diagnosis"),
            ),
            "recorded": SearchParam(
                wire="recorded-date", kind="date", description="Date the condition was recorded"
            ),
        },
        projection=formatters.condition,
    ),
    ResourceSpec(
        kind="Encounters",
        tool_name="search_encounters",
        label="encounters",
        description="Search encounters and visits",
        template="Encounter",
        fallbacks=("Encounter?_sort=-period", "Encounter"),
        params={
            "status": _status(
                "planned", "arrived", "triaged", "in-progress", "finished", "cancelled"
            ),
            "type": SearchParam(wire="type", kind="token", description="Encounter type code"),
            "date": _DATE,
        },
        default_sort="-date",
        projection=formatters.encounter,
    ),
    ResourceSpec(
        kind="DiagnosticReports",
        tool_name="search_diagnostic_reports",
        label="diagnostic reports",
        description="Search diagnostic reports (lab panels, imaging, pathology)",
        template="DiagnosticReport",
        fallbacks=("DiagnosticReport?_sort=-effective-date", "DiagnosticReport"),
        params={
            "category": SearchParam(
                wire="category",
                kind="token",
                description="Report category",
                enum=("LAB", "RAD", "PATH", "CARDIO", "ENDO"),
            ),
            "status": _status(
                "registered", "partial", "preliminary", "final", "amended", "corrected",
                "cancelled",
            ),
            "code": _CODE,
            "date": _DATE,
            "encounter": _ENCOUNTER,
        },
        default_sort="-date",
        default_count=5,
        projection=formatters.diagnostic_report,
    ),
    ResourceSpec(
        kind="AllergyIntolerances",
        tool_name="search_allergies",
        label="allergies",
        description="Search allergies and intolerances",
        template="AllergyIntolerance",
        params={
            "clinical_status": SearchParam(
                wire="clinical-status",
                kind="token",
                description="Clinical status of the allergy",
                enum=("active", "inactive", "resolved"),
            ),
            "criticality": SearchParam(
                wire="criticality",
                kind="token",
                description="Potential harm",
                enum=("low", "high", "unable-to-assess"),
            ),
        },
        projection=formatters.allergy_intolerance,
    ),
    ResourceSpec(
        kind="Immunizations",
        tool_name="search_immunizations",
        label="immunizations",
        description="Search immunization history",
        template="Immunization",
        fallbacks=("Immunization?_sort=-occurrence", "Immunization"),
        params={
            "status": _status("completed", "entered-in-error", "not-done"),
            "date": _DATE,
        },
        default_sort="-date",
        projection=formatters.immunization,
    ),
    ResourceSpec(
        kind="Procedures",
        tool_name="search_procedures",
        label="procedures",
        description="Search procedures performed on the patient",
        template="Procedure",
        fallbacks=("Procedure?_sort=-performed", "Procedure"),
        params={
            "status": _status("preparation", "in-progress", "completed", "stopped"),
            "code": _CODE,
            "date": _DATE,
        },
        default_sort="-date",
        projection=formatters.procedure,
    ),
    ResourceSpec(
        kind="DocumentReferences",
        tool_name="search_documents",
        label="documents",
        description="Search clinical documents and notes (metadata only)",
        template="DocumentReference",
        fallbacks=("DocumentReference?category=clinical-note", "DocumentReference"),
        params={
            "category": SearchParam(
                wire="category", kind="token", description="Document category"
            ),
            "type": SearchParam(wire="type", kind="token", description="Document type code"),
            "status": _status("current", "superseded", "entered-in-error"),
            "date": _DATE,
            "encounter": _ENCOUNTER,
        },
        default_sort="-date",
        projection=formatters.document_reference,
    ),
    ResourceSpec(
        kind="Appointments",
        tool_name="search_appointments",
        label="appointments",
        description="Search past and upcoming appointments",
        template="Appointment",
        fallbacks=("Appointment?status=booked,arrived,checked-in", "Appointment"),
        params={
            "status": _status(
                "proposed", "pending", "booked", "arrived", "fulfilled", "cancelled", "noshow",
                "checked-in",
            ),
            "date": _DATE,
        },
        default_sort="-date",
        projection=formatters.appointment,
    ),
    ResourceSpec(
        kind="Questionnaires",
        tool_name="search_questionnaires",
        label="questionnaires",
        description="Search questionnaire definitions",
        template="Questionnaire",
        params={"status": _status("draft", "active", "retired")},
        default_count=5,
        projection=formatters.questionnaire,
    ),
    ResourceSpec(
        kind="QuestionnaireResponses",
        tool_name="search_questionnaire_responses",
        label="questionnaire responses",
        description="Search completed questionnaires and their answers",
        template="QuestionnaireResponse",
        fallbacks=("QuestionnaireResponse",),
        params={
            "status": _status("in-progress", "completed", "amended"),
            "authored": SearchParam(
                wire="authored", kind="date", description="Date the response was authored"
            ),
            "questionnaire": SearchParam(
                wire="questionnaire",
                kind="reference",
                target="Questionnaire",
                description="Questionnaire that was answered",
            ),
        },
        default_sort="-authored",
        projection=formatters.questionnaire_response,
    ),
)


def default_catalog() -> ResourceCatalog:
    """Build the catalog of all built-in resource kinds."""
    return ResourceCatalog(DEFAULT_SPECS)
