"""Turn a logical resource request into concrete query strings.

build_queries() is a pure function: given a ResourceSpec, FetchOptions and
the binding context, it returns every query the FetchCoordinator should
try, primary first and fallbacks after it in catalog order.

Option application is idempotent. Templates are parsed into terms, and an
option that names a term the template already has replaces that term in
place instead of adding a duplicate. Terms the template lacks are appended.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field

from ehr_assistant.catalog import ResourceCatalog, ResourceSpec
from ehr_assistant.config import CACHE_TTL_SECONDS
from ehr_assistant.errors import ConfigError


class FetchOptions(BaseModel):
    """Per-call options for a resource fetch.

    params holds raw extra terms as (wire name, value) pairs; the same
    name may appear more than once (e.g. a date lower and upper bound).
    """

    model_config = ConfigDict(frozen=True)

    count: int | None = Field(default=None, ge=1)
    sort: str | None = None
    date_start: str | None = None
    date_end: str | None = None
    status: str | None = None
    text: str | None = None
    params: tuple[tuple[str, str], ...] = ()
    resource_id: str | None = None
    use_cache: bool = False
    cache_ttl: float = CACHE_TTL_SECONDS


def options_key(options: FetchOptions) -> str:
    """Deterministic serialization of the query-shaping part of options.

    use_cache and cache_ttl only decide whether a result is stored, so
    they are left out: callers that differ only there share one key.
    """
    payload = options.model_dump(mode="json", exclude={"use_cache", "cache_ttl"})
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def encode_value(value: object) -> str:
    """Percent-encode a term value, keeping FHIR's comma list separator."""
    return quote(str(value), safe=",:")


def _split(query: str) -> tuple[str, list[list[str]]]:
    path, _, query_string = query.partition("?")
    terms = []
    for term in query_string.split("&"):
        if term:
            name, _, value = term.partition("=")
            terms.append([name, value])
    return path, terms


def _join(path: str, terms: list[list[str]]) -> str:
    if not terms:
        return path
    return path + "?" + "&".join(f"{name}={value}" for name, value in terms)


def _put(terms: list[list[str]], name: str, value: str) -> None:
    """Set a single-valued term, replacing the first existing one in place."""
    positions = [i for i, (existing, _) in enumerate(terms) if existing == name]
    if not positions:
        terms.append([name, value])
        return
    terms[positions[0]][1] = value
    for i in reversed(positions[1:]):
        del terms[i]


def _put_all(terms: list[list[str]], name: str, values: list[str]) -> None:
    """Set a multi-valued term where the template first had it.

    Whatever values the template had for the term are dropped. When it had
    none, the new values are appended.
    """
    positions = [i for i, (existing, _) in enumerate(terms) if existing == name]
    replacement = [[name, value] for value in dict.fromkeys(values)]
    if not positions:
        terms.extend(replacement)
        return
    for i in reversed(positions):
        del terms[i]
    terms[positions[0]:positions[0]] = replacement


def bind_template(template: str, context: Mapping[str, str | None]) -> str:
    """Fill {placeholders} in a template from the binding context.

    Raises:
        ConfigError: If the template needs a binding the context lacks.
    """
    bound = {key: quote(str(value), safe="") for key, value in context.items() if value}
    try:
        return template.format_map(bound)
    except KeyError as exc:
        raise ConfigError(f"Query template {template!r} needs {exc.args[0]}") from None


def apply_options(
    query: str,
    spec: ResourceSpec,
    options: FetchOptions,
    primary: bool = False,
) -> str:
    """Apply FetchOptions to one bound query.

    Raises:
        ConfigError: If a date range is given for a kind with no date parameter.
    """
    path, terms = _split(query)

    count = options.count or spec.default_count
    if count:
        _put(terms, "_count", str(count))

    # Sorting only applies to the primary query; fallbacks exist precisely
    # for servers that reject it and carry their own ordering.
    sort = options.sort or spec.default_sort
    if primary and sort and not spec.read:
        _put(terms, "_sort", encode_value(sort))

    bounds = []
    if options.date_start:
        bounds.append(f"ge{encode_value(options.date_start)}")
    if options.date_end:
        bounds.append(f"le{encode_value(options.date_end)}")
    if bounds:
        if spec.date_param is None:
            raise ConfigError(f"{spec.kind} has no date to filter on")
        _put_all(terms, spec.date_param, bounds)

    if options.status:
        _put(terms, "status", encode_value(options.status))

    if options.text:
        _put(terms, "_text", encode_value(options.text))

    extra: dict[str, list[str]] = {}
    for name, value in options.params:
        extra.setdefault(name, []).append(encode_value(value))
    for name, values in extra.items():
        _put_all(terms, name, values)

    return _join(path, terms)


def build_queries(
    spec: ResourceSpec,
    options: FetchOptions | None = None,
    context: Mapping[str, str | None] | None = None,
) -> list[str]:
    """Every query to attempt for a request, in priority order.

    Args:
        spec: The resource kind being fetched.
        options: Caller options; defaults to FetchOptions().
        context: Binding context, typically {"patient_id": ...}.
            options.resource_id is added as "resource_id".

    Returns:
        A non-empty list: the primary query followed by its fallbacks.
    """
    options = options or FetchOptions()
    binding = {**(context or {}), "resource_id": options.resource_id}
    return [
        apply_options(bind_template(template, binding), spec, options, primary=(i == 0))
        for i, template in enumerate(spec.templates)
    ]


class QueryBuilder:
    """build_queries() bound to a catalog, so callers can work with kind tags."""

    def __init__(self, catalog: ResourceCatalog) -> None:
        self._catalog = catalog

    def build(
        self,
        kind: str,
        options: FetchOptions | None = None,
        context: Mapping[str, str | None] | None = None,
    ) -> list[str]:
        """Raises ConfigError if the kind is not registered."""
        return build_queries(self._catalog.get(kind), options, context)
