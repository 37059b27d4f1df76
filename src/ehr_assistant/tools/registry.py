"""Tool schemas the model can call.

Every exposed ResourceSpec gets one generated search tool. Its parameters
are derived mechanically from the spec's search-parameter schema:

- token / string parameters become a single string input
- date parameters become a <name>_start / <name>_end pair (ge / le bounds)
- reference parameters become a <name>_id input
- every generated tool also takes "text" (free text) and "count" (result cap)
- kinds with a default ordering also take "sort" (the default or its reverse)

Every term a generated tool's query can carry is either fixed by the
kind's template or produced by one of these declared arguments.

The derivation is invertible. to_fetch_options() turns any declared
argument into a wire term, and declared_wire_terms() lists which wire term
each declared argument produces, so tests can check both directions.

Besides the generated tools there is a fixed set of hand-written composite
tools (patient summary, fan-out search, binary content, clinical notes).

Tool names resolve to kinds through a plain {tool_name: kind} table built
from each spec's explicit tool_name. Nothing is reconstructed from the
name string itself.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from ehr_assistant.catalog import ResourceCatalog, ResourceSpec
from ehr_assistant.errors import ConfigError
from ehr_assistant.queries import FetchOptions

MAX_COUNT = 100

PATIENT_SUMMARY_TOOL = "get_patient_summary"
RECORD_SEARCH_TOOL = "search_patient_record"
BINARY_CONTENT_TOOL = "get_binary_content"
CLINICAL_NOTES_TOOL = "search_clinical_notes"


class ToolDefinition(BaseModel):
    """A callable tool as presented to the model."""

    name: str
    description: str
    parameters: dict[str, Any]

    def to_function_tool(self) -> dict[str, Any]:
        """OpenAI-style function tool dict, accepted by LangChain's bind_tools()."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _object_schema(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required or []}


def _date_bounds(description: str) -> dict[str, Any]:
    return {
        "start": {"type": "string", "description": f"{description}: on or after (YYYY-MM-DD)"},
        "end": {"type": "string", "description": f"{description}: on or before (YYYY-MM-DD)"},
    }


def derive_parameters(spec: ResourceSpec) -> dict[str, Any]:
    """JSON schema for the generated search tool of a spec."""
    properties: dict[str, Any] = {}
    for name, param in spec.params.items():
        if param.kind == "date":
            bounds = _date_bounds(param.description)
            properties[f"{name}_start"] = bounds["start"]
            properties[f"{name}_end"] = bounds["end"]
        elif param.kind == "reference":
            properties[f"{name}_id"] = {
                "type": "string",
                "description": f"{param.description} ({param.target or 'resource'} id)",
            }
        else:
            prop: dict[str, Any] = {"type": "string", "description": param.description}
            if param.enum:
                prop["enum"] = list(param.enum)
            properties[name] = prop

    if spec.sort_choices:
        properties["sort"] = {
            "type": "string",
            "enum": list(spec.sort_choices),
            "description": "Result order; a leading \"-\" means newest first",
            "default": spec.default_sort,
        }

    properties["text"] = {"type": "string", "description": "Free-text search term"}
    count: dict[str, Any] = {
        "type": "integer",
        "description": "Maximum number of results to return",
        "minimum": 1,
        "maximum": MAX_COUNT,
    }
    if spec.default_count:
        count["default"] = spec.default_count
    properties["count"] = count
    return _object_schema(properties)


def parse_count(value: Any) -> int | None:
    """Coerce a model-supplied result cap into 1..MAX_COUNT."""
    if value in (None, ""):
        return None
    count = int(value)
    if count < 1:
        raise ValueError(f"count must be at least 1, got {value!r}")
    return min(count, MAX_COUNT)


def composite_definitions(catalog: ResourceCatalog) -> list[ToolDefinition]:
    """The fixed, hand-defined composite tools."""
    searchable = [spec.kind for spec in catalog.exposed()]
    dates = _date_bounds("Clinical date")
    return [
        ToolDefinition(
            name=PATIENT_SUMMARY_TOOL,
            description="Get a summary of the patient's demographics and basic info",
            parameters=_object_schema({}),
        ),
        ToolDefinition(
            name=RECORD_SEARCH_TOOL,
            description=(
                "Search several kinds of record at once for a term. Each kind is "
                "searched independently; a failure in one kind is reported in its "
                "own entry and does not affect the others."
            ),
            parameters=_object_schema(
                {
                    "resource_types": {
                        "type": "array",
                        "items": {"type": "string", "enum": searchable},
                        "description": "Kinds of record to search",
                    },
                    "text": {"type": "string", "description": "Free-text search term"},
                    "date_start": dates["start"],
                    "date_end": dates["end"],
                    "count": {
                        "type": "integer",
                        "description": "Maximum results per kind",
                        "minimum": 1,
                        "maximum": MAX_COUNT,
                    },
                },
                required=["resource_types"],
            ),
        ),
        ToolDefinition(
            name=BINARY_CONTENT_TOOL,
            description="Retrieve the content of a Binary resource (e.g. a document attachment)",
            parameters=_object_schema(
                {
                    "binary_id": {"type": "string", "description": "Binary resource id"},
                    "format": {
                        "type": "string",
                        "enum": ["text", "base64"],
                        "description": "Return decoded text or the raw base64 payload",
                        "default": "text",
                    },
                },
                required=["binary_id"],
            ),
        ),
        ToolDefinition(
            name=CLINICAL_NOTES_TOOL,
            description=(
                "Search clinical notes and, optionally, read their content. Notes "
                "whose content cannot be loaded are still listed with the reason."
            ),
            parameters=_object_schema(
                {
                    "text": {"type": "string", "description": "Free-text search term"},
                    "date_start": dates["start"],
                    "date_end": dates["end"],
                    "count": {
                        "type": "integer",
                        "description": "Maximum number of notes to search",
                        "minimum": 1,
                        "maximum": MAX_COUNT,
                    },
                    "include_content": {
                        "type": "boolean",
                        "description": "Also fetch each note's text",
                        "default": True,
                    },
                    "max_documents": {
                        "type": "integer",
                        "description": "Maximum number of notes whose content is fetched",
                        "minimum": 1,
                        "default": 5,
                    },
                }
            ),
        ),
    ]


class ToolRegistry:
    """All tool definitions plus the name → kind table."""

    def __init__(self, catalog: ResourceCatalog) -> None:
        self.catalog = catalog
        self._composites = {d.name: d for d in composite_definitions(catalog)}
        self._generated: dict[str, ToolDefinition] = {}
        self._kinds: dict[str, str] = {}

        for spec in catalog.exposed():
            name = spec.tool_name or ""
            if name in self._kinds or name in self._composites:
                raise ConfigError(f"Duplicate tool name {name!r} for {spec.kind}")
            self._kinds[name] = spec.kind
            self._generated[name] = ToolDefinition(
                name=name,
                description=spec.description,
                parameters=derive_parameters(spec),
            )

    def tool_definitions(self) -> list[ToolDefinition]:
        return [*self._generated.values(), *self._composites.values()]

    def definitions(self) -> list[dict[str, Any]]:
        """Every tool in function-tool dict form, ready for bind_tools()."""
        return [d.to_function_tool() for d in self.tool_definitions()]

    def names(self) -> list[str]:
        return [d.name for d in self.tool_definitions()]

    def definition(self, tool_name: str) -> ToolDefinition | None:
        return self._generated.get(tool_name) or self._composites.get(tool_name)

    def kind_for(self, tool_name: str) -> str | None:
        """Resource kind behind a generated tool, or None."""
        return self._kinds.get(tool_name)

    def is_composite(self, tool_name: str) -> bool:
        return tool_name in self._composites

    def to_fetch_options(self, kind: str, args: dict[str, Any]) -> FetchOptions:
        """Translate generated-tool arguments into FetchOptions.

        Unknown argument names are ignored. Raises ValueError for a bad
        count or an ordering the kind does not offer.
        """
        spec = self.catalog.get(kind)
        terms: list[tuple[str, str]] = []
        for name, param in spec.params.items():
            if param.kind == "date":
                if args.get(f"{name}_start"):
                    terms.append((param.wire, f"ge{args[f'{name}_start']}"))
                if args.get(f"{name}_end"):
                    terms.append((param.wire, f"le{args[f'{name}_end']}"))
            elif param.kind == "reference":
                value = args.get(f"{name}_id")
                if value:
                    value = str(value)
                    if param.target and "/" not in value:
                        value = f"{param.target}/{value}"
                    terms.append((param.wire, value))
            elif args.get(name) not in (None, ""):
                terms.append((param.wire, str(args[name])))

        sort = args.get("sort") or None
        if sort is not None and sort not in spec.sort_choices:
            raise ValueError(f"sort must be one of {list(spec.sort_choices)}, got {sort!r}")

        return FetchOptions(
            count=parse_count(args.get("count")),
            sort=sort,
            text=args.get("text") or None,
            params=tuple(terms),
            use_cache=True,
        )

    def declared_wire_terms(self, kind: str) -> dict[str, str]:
        """Map each declared argument of a generated tool to its wire term."""
        spec = self.catalog.get(kind)
        terms: dict[str, str] = {}
        for name, param in spec.params.items():
            if param.kind == "date":
                terms[f"{name}_start"] = param.wire
                terms[f"{name}_end"] = param.wire
            elif param.kind == "reference":
                terms[f"{name}_id"] = param.wire
            else:
                terms[name] = param.wire
        if spec.sort_choices:
            terms["sort"] = "_sort"
        terms["text"] = "_text"
        terms["count"] = "_count"
        return terms
