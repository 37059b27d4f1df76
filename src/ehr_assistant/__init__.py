"""EHR Clinical Assistant.

This package contains an assistant embedded in an electronic health record.
Clinicians ask natural language questions about the patient in context and
get answers backed by that patient's FHIR record, fetched through a backend
proxy with per-server fallbacks, caching and request coalescing.
"""
