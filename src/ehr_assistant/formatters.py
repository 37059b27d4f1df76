"""Compact projections of FHIR results for the model.

Raw FHIR bundles are large and deeply nested. Each function here turns one
resource into a small flat dict that carries only what a model needs to
answer clinical questions. format_bundle() applies a per-resource projection
to every entry and handles the "nothing found" case.

Shared extraction rules:
- Coded values: text, then first coding's display, then first coding's code,
  then "Unknown".
- References: display, then the literal reference, then "Unknown".
- Day-granular clinical dates (onset, authored, birth) are cut to YYYY-MM-DD.
  Date-times used for ordering (effective, period, issued) keep full precision.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

Projection = Callable[[dict[str, Any]], dict[str, Any]]

UNKNOWN = "Unknown"


# ---------------------------------------------------------------------------
# Shared extraction helpers
# ---------------------------------------------------------------------------


def coded_text(concept: dict[str, Any] | None) -> str:
    """Return the most human-readable label of a CodeableConcept."""
    if not concept:
        return UNKNOWN
    if concept.get("text"):
        return concept["text"]
    codings = concept.get("coding") or []
    if codings:
        first = codings[0]
        if first.get("display"):
            return first["display"]
        if first.get("code"):
            return first["code"]
    return UNKNOWN


def first_coded_text(concepts: list[dict[str, Any]] | None) -> str:
    """coded_text() of the first concept in a list (category, type, ...)."""
    if not concepts:
        return UNKNOWN
    return coded_text(concepts[0])


def reference_display(ref: dict[str, Any] | None) -> str:
    """Return a readable label for a Reference."""
    if not ref:
        return UNKNOWN
    return ref.get("display") or ref.get("reference") or UNKNOWN


def to_day(value: str | None) -> str | None:
    """Truncate a FHIR date or dateTime to its calendar date."""
    if not value:
        return None
    return value.split("T", 1)[0]


def quantity_text(quantity: dict[str, Any] | None) -> str | None:
    if not quantity or quantity.get("value") is None:
        return None
    unit = quantity.get("unit") or quantity.get("code") or ""
    return f"{quantity['value']} {unit}".strip()


def value_text(element: dict[str, Any]) -> str | None:
    """Render the value[x] of an Observation or one of its components."""
    if "valueQuantity" in element:
        return quantity_text(element["valueQuantity"])
    if "valueString" in element:
        return element["valueString"]
    if "valueCodeableConcept" in element:
        return coded_text(element["valueCodeableConcept"])
    if "valueBoolean" in element:
        return str(element["valueBoolean"]).lower()
    if "valueInteger" in element:
        return str(element["valueInteger"])
    return None


def medication_instructions(resource: dict[str, Any]) -> str:
    """Summarize dosage instructions, preferring patient-facing text."""
    parts = []
    for dosage in resource.get("dosageInstruction") or []:
        if dosage.get("patientInstruction"):
            parts.append(dosage["patientInstruction"])
        elif dosage.get("text") and "," in dosage["text"]:
            parts.append(dosage["text"].split(",", 1)[0].strip() + ".")
        else:
            parts.append(dosage.get("text") or "N/A")
    return "; ".join(parts) or "No dosage info"


def binary_id_from_url(url: str | None) -> str | None:
    """Extract the Binary id from an attachment URL, if it points at one."""
    if not url:
        return None
    match = re.search(r"(?:^|/)Binary/([^/?#]+)", url)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Per-resource projections
# ---------------------------------------------------------------------------


def observation(resource: dict[str, Any]) -> dict[str, Any]:
    value = value_text(resource)
    if value is None and resource.get("component"):
        value = "; ".join(
            f"{coded_text(c.get('code'))}: {value_text(c) or 'N/A'}"
            for c in resource["component"]
        )
    return {
        "name": coded_text(resource.get("code")),
        "value": value or "N/A",
        "date": resource.get("effectiveDateTime")
        or (resource.get("effectivePeriod") or {}).get("start"),
        "status": resource.get("status"),
        "category": first_coded_text(resource.get("category")),
        "interpretation": first_coded_text(resource.get("interpretation"))
        if resource.get("interpretation")
        else None,
    }


def medication_request(resource: dict[str, Any]) -> dict[str, Any]:
    if resource.get("medicationCodeableConcept"):
        name = coded_text(resource["medicationCodeableConcept"])
    else:
        name = reference_display(resource.get("medicationReference"))
    return {
        "name": name,
        "status": resource.get("status"),
        "authoredOn": to_day(resource.get("authoredOn")),
        "dosage": medication_instructions(resource),
        "requester": reference_display(resource.get("requester")),
    }


def medication(resource: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": coded_text(resource.get("code")),
        "form": coded_text(resource.get("form")) if resource.get("form") else None,
        "status": resource.get("status"),
    }


def condition(resource: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": coded_text(resource.get("code")),
        "clinicalStatus": coded_text(resource.get("clinicalStatus")),
        "verificationStatus": coded_text(resource.get("verificationStatus")),
        "onsetDate": to_day(resource.get("onsetDateTime") or resource.get("recordedDate")),
        "category": first_coded_text(resource.get("category")),
    }


def encounter(resource: dict[str, Any]) -> dict[str, Any]:
    period = resource.get("period") or {}
    locations = resource.get("location") or [{}]
    participants = resource.get("participant") or [{}]
    return {
        "type": first_coded_text(resource.get("type")),
        "class": (resource.get("class") or {}).get("display")
        or (resource.get("class") or {}).get("code"),
        "status": resource.get("status"),
        "period": {"start": period.get("start"), "end": period.get("end")},
        "reason": first_coded_text(resource.get("reasonCode"))
        if resource.get("reasonCode")
        else None,
        "location": reference_display(locations[0].get("location")),
        "provider": reference_display(participants[0].get("individual")),
    }


def diagnostic_report(resource: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": coded_text(resource.get("code")),
        "status": resource.get("status"),
        "category": first_coded_text(resource.get("category")),
        "effectiveDate": resource.get("effectiveDateTime")
        or (resource.get("effectivePeriod") or {}).get("start"),
        "issued": resource.get("issued"),
        "conclusion": resource.get("conclusion") or "No conclusion available",
    }


def allergy_intolerance(resource: dict[str, Any]) -> dict[str, Any]:
    reactions = []
    for reaction in resource.get("reaction") or []:
        for manifestation in reaction.get("manifestation") or []:
            reactions.append(coded_text(manifestation))
    return {
        "substance": coded_text(resource.get("code")),
        "clinicalStatus": coded_text(resource.get("clinicalStatus")),
        "criticality": resource.get("criticality"),
        "reactions": reactions,
        "recordedDate": to_day(resource.get("recordedDate")),
    }


def immunization(resource: dict[str, Any]) -> dict[str, Any]:
    return {
        "vaccine": coded_text(resource.get("vaccineCode")),
        "status": resource.get("status"),
        "date": to_day(resource.get("occurrenceDateTime")),
    }


def procedure(resource: dict[str, Any]) -> dict[str, Any]:
    performed = resource.get("performedDateTime") or (
        resource.get("performedPeriod") or {}
    ).get("start")
    return {
        "name": coded_text(resource.get("code")),
        "status": resource.get("status"),
        "performedDate": to_day(performed),
    }


def document_reference(resource: dict[str, Any]) -> dict[str, Any]:
    attachments = []
    for content in resource.get("content") or []:
        attachment = content.get("attachment") or {}
        attachments.append(
            {
                "contentType": attachment.get("contentType"),
                "title": attachment.get("title"),
                "binaryId": binary_id_from_url(attachment.get("url")),
                "hasInlineData": bool(attachment.get("data")),
            }
        )
    authors = resource.get("author") or [{}]
    return {
        "id": resource.get("id"),
        "type": coded_text(resource.get("type")),
        "category": first_coded_text(resource.get("category")),
        "date": resource.get("date"),
        "status": resource.get("status"),
        "description": resource.get("description"),
        "author": reference_display(authors[0]),
        "attachments": attachments,
    }


def appointment(resource: dict[str, Any]) -> dict[str, Any]:
    return {
        "description": resource.get("description") or first_coded_text(
            resource.get("serviceType")
        ),
        "status": resource.get("status"),
        "start": resource.get("start"),
        "end": resource.get("end"),
        "participants": [
            reference_display(p.get("actor")) for p in resource.get("participant") or []
        ],
    }


def questionnaire(resource: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": resource.get("id"),
        "title": resource.get("title") or resource.get("name") or UNKNOWN,
        "status": resource.get("status"),
        "itemCount": len(resource.get("item") or []),
    }


def _answer_text(answer: dict[str, Any]) -> str | None:
    if "valueCoding" in answer:
        coding = answer["valueCoding"]
        return coding.get("display") or coding.get("code")
    for key in ("valueString", "valueDate", "valueDateTime", "valueInteger",
                "valueDecimal", "valueBoolean"):
        if key in answer:
            return str(answer[key])
    if "valueQuantity" in answer:
        return quantity_text(answer["valueQuantity"])
    return None


def questionnaire_response(resource: dict[str, Any]) -> dict[str, Any]:
    answers = []
    for item in resource.get("item") or []:
        values = [_answer_text(a) for a in item.get("answer") or []]
        answers.append(
            {
                "question": item.get("text") or item.get("linkId"),
                "answer": "; ".join(v for v in values if v) or None,
            }
        )
    return {
        "questionnaire": resource.get("questionnaire"),
        "status": resource.get("status"),
        "authored": resource.get("authored"),
        "answers": answers,
    }


def binary(resource: dict[str, Any]) -> dict[str, Any]:
    return {"id": resource.get("id"), "contentType": resource.get("contentType")}


def patient(resource: dict[str, Any]) -> dict[str, Any]:
    """Demographics of a Patient resource."""
    names = resource.get("name") or [{}]
    name = names[0].get("text") or " ".join(
        part for part in [*(names[0].get("given") or []), names[0].get("family") or ""] if part
    )
    telecom = resource.get("telecom") or []
    phone = next((t.get("value") for t in telecom if t.get("system") == "phone"), None)
    email = next((t.get("value") for t in telecom if t.get("system") == "email"), None)
    address = None
    if resource.get("address"):
        addr = resource["address"][0]
        line = " ".join(addr.get("line") or [])
        locality = ", ".join(x for x in [addr.get("city"), addr.get("state")] if x)
        address = " ".join(x for x in [line, locality, addr.get("postalCode")] if x) or None
    return {
        "name": name or UNKNOWN,
        "gender": resource.get("gender") or "N/A",
        "birthDate": to_day(resource.get("birthDate")) or "N/A",
        "id": resource.get("id") or "N/A",
        "phone": phone or "N/A",
        "email": email or "N/A",
        "address": address or "N/A",
    }


# ---------------------------------------------------------------------------
# Bundle-level formatting
# ---------------------------------------------------------------------------


def bundle_resources(bundle: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Resources of a searchset bundle, skipping malformed and outcome entries."""
    resources = []
    for entry in (bundle or {}).get("entry") or []:
        resource = entry.get("resource")
        if not resource or resource.get("resourceType") == "OperationOutcome":
            continue
        resources.append(resource)
    return resources


def format_bundle(
    kind: str,
    label: str,
    bundle: dict[str, Any] | None,
    projection: Projection,
) -> dict[str, Any]:
    """Project every resource in a bundle into the compact result shape.

    An empty bundle yields a "message" result, never an "error" one, so the
    model can tell "nothing recorded" apart from "the lookup failed".
    """
    resources = bundle_resources(bundle)
    if not resources:
        return {
            "kind": kind,
            "count": 0,
            "message": f"No {label} found matching the criteria.",
        }
    results = [projection(r) for r in resources]
    formatted: dict[str, Any] = {"kind": kind, "count": len(results), "results": results}
    if isinstance(bundle, dict) and bundle.get("total") is not None:
        formatted["total"] = bundle["total"]
    return formatted


def format_resource(
    kind: str,
    label: str,
    payload: dict[str, Any] | None,
    projection: Projection,
) -> dict[str, Any]:
    """Format a read-style result (a single resource, or a one-entry bundle)."""
    if payload and payload.get("resourceType") == "Bundle":
        resources = bundle_resources(payload)
        payload = resources[0] if resources else None
    if not payload:
        return {"kind": kind, "count": 0, "message": f"No {label} found."}
    return {"kind": kind, **projection(payload)}
