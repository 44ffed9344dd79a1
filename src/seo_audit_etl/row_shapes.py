"""seo_audit_etl.row_shapes

Row shapes: one tagged variant per kind of export the importers consume.

Each RowShape maps to a ShapeSpec declaring
  - the target table and how unmatched rows are handled (MatchMode),
  - the header → canonical field table with a type per column,
  - the lookup key fields and the partition of the table they are
    resolved against (e.g. issue_type_id = 15 for backlink toxicity),
  - fields that may be cleared to NULL on purpose,
  - whether a matched row applies to every record sharing its key.

Which columns carry what is therefore decided by the shape, never by
branching on a numeric issue-type id elsewhere.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from seo_audit_etl.normalize import (
    domain_from_url,
    normalize_domain,
    normalize_header,
    parse_bool,
    parse_date,
    parse_int,
    parse_number,
    parse_ts,
    trim,
    url_lookup_key,
)
from seo_audit_etl.shared import MalformedRowError

BACKLINK_ISSUE_TYPE_ID = 15
CRAWL_ISSUE_TYPE_ID = 16

REPLACEMENT_CHAR = "\ufffd"


class RowShape(Enum):
    ISSUE_SEED = "issue_seed"
    BACKLINK_TOXICITY = "backlink_toxicity"
    CRAWL_AUDIT = "crawl_audit"
    TRAFFIC_SHARE = "traffic_share"
    REF_DOMAIN = "ref_domain"
    RANKING_KEYWORD = "ranking_keyword"
    BACKLINK_URL = "backlink_url"
    REDIRECT_MAP = "redirect_map"


class MatchMode(Enum):
    ENRICH = "enrich"   # update matched records, skip unmatched
    LOAD = "load"       # update matched records, insert unmatched
    UPSERT = "upsert"   # store resolves the natural key (ON CONFLICT)
    APPEND = "append"   # insert every row, no key


@dataclass(frozen=True)
class Column:
    field: str
    headers: tuple[str, ...]
    kind: str = "text"  # text | domain | int | number | date | ts | bool
    required: bool = False


@dataclass(frozen=True)
class ShapeSpec:
    shape: RowShape
    table: str
    mode: MatchMode
    columns: tuple[Column, ...]
    key_fields: tuple[str, ...] = ()
    partition: tuple[tuple[str, Any], ...] = ()
    clearable: frozenset[str] = frozenset()
    insert_defaults: tuple[tuple[str, Any], ...] = ()
    conflict_key: str | None = None
    derive: Callable[[dict[str, Any]], dict[str, Any]] | None = None
    derived_required: tuple[str, ...] = ()
    # matched rows update every record sharing the key, not just the first
    fan_out: bool = False

    @property
    def partition_filter(self) -> dict[str, Any]:
        return dict(self.partition)

    @property
    def required_fields(self) -> list[str]:
        return [c.field for c in self.columns if c.required]

    def missing_headers(self, header: list[str]) -> list[str]:
        """Required columns for which none of the accepted headers is present."""
        present = {normalize_header(h).casefold() for h in header}
        missing = []
        for col in self.columns:
            if not col.required:
                continue
            if not any(normalize_header(h).casefold() in present for h in col.headers):
                missing.append(col.headers[0])
        return missing


# ---------------------------------------------------------------------------
# Field conversion
# ---------------------------------------------------------------------------

def _convert(kind: str, raw: str | None, locale: str) -> Any:
    if kind == "int":
        return parse_int(raw, locale)
    if kind == "number":
        return parse_number(raw, locale)
    if kind == "date":
        return parse_date(raw)
    if kind == "ts":
        return parse_ts(raw)
    if kind == "bool":
        return parse_bool(raw)
    if kind == "domain":
        return normalize_domain(raw)
    return trim(raw)


def _lookup(row: dict[str, str], headers: tuple[str, ...]) -> str | None:
    for h in headers:
        if h in row:
            return row[h]
    # exports re-saved by spreadsheet tools sometimes mangle accents
    wanted = {normalize_header(h).casefold() for h in headers}
    for k, v in row.items():
        if normalize_header(k).casefold() in wanted:
            return v
    return None


def extract_fields(
    spec: ShapeSpec,
    row: dict[str, str],
    line_number: int,
    locale: str = "us",
) -> dict[str, Any]:
    """Map a raw CSV row to typed canonical fields.

    Blank cells become None ("absent"); columns the export does not carry
    at all are left out of the result.  Raises MalformedRowError when a
    required field is missing or does not parse.
    """
    out: dict[str, Any] = {}
    for col in spec.columns:
        raw = _lookup(row, col.headers)
        if raw is None and not col.required:
            continue
        # the reader decodes invalid bytes as U+FFFD; such a key never matches
        if raw and REPLACEMENT_CHAR in raw and (col.required or col.field in spec.key_fields):
            raise MalformedRowError(line_number, f"undecodable bytes in field {col.field!r}")
        value = _convert(col.kind, raw, locale)
        if col.required and value is None:
            reason = "missing" if trim(raw) is None else "unparsable"
            raise MalformedRowError(line_number, f"{reason} required field {col.field!r}")
        out[col.field] = value
    if spec.derive is not None:
        out.update(spec.derive(out))
        for name in spec.derived_required:
            if out.get(name) is None:
                raise MalformedRowError(line_number, f"could not derive {name!r}")
    return out


def record_key(spec: ShapeSpec, record: dict[str, Any]) -> tuple | None:
    """Lookup key for an incoming row or an existing store record.

    URL-like fields go through url_lookup_key; everything else is compared
    as a stripped, case-folded string.  None when any part is absent.
    """
    parts: list[str] = []
    for name in spec.key_fields:
        value = record.get(name)
        if value is None:
            return None
        if name in ("url", "source_url", "linked_from"):
            part = url_lookup_key(str(value))
        else:
            part = str(value).strip().casefold() or None
        if part is None:
            return None
        parts.append(part)
    return tuple(parts)


# ---------------------------------------------------------------------------
# Derived fields
# ---------------------------------------------------------------------------

def _derive_source_domain(fields: dict[str, Any]) -> dict[str, Any]:
    return {"source_domain": domain_from_url(fields.get("source_url"))}


# ---------------------------------------------------------------------------
# Shape table
# ---------------------------------------------------------------------------

SHAPES: dict[RowShape, ShapeSpec] = {
    RowShape.ISSUE_SEED: ShapeSpec(
        shape=RowShape.ISSUE_SEED,
        table="audit_urls",
        mode=MatchMode.LOAD,
        columns=(
            Column("issue_type_id", ("issue_type_id",), "int", required=True),
            Column("url", ("url",), "text", required=True),
            Column("linked_from", ("linked_from",)),
        ),
        key_fields=("url", "issue_type_id"),
        insert_defaults=(("status", "pending"),),
    ),
    RowShape.BACKLINK_TOXICITY: ShapeSpec(
        shape=RowShape.BACKLINK_TOXICITY,
        table="audit_urls",
        mode=MatchMode.ENRICH,
        columns=(
            Column("url", ("Source URL",), "text", required=True),
            Column("toxicity_score", ("Toxic Score",), "int"),
            Column("authority_score", ("Domain Authority Score",), "int"),
        ),
        key_fields=("url",),
        partition=(("issue_type_id", BACKLINK_ISSUE_TYPE_ID),),
    ),
    RowShape.CRAWL_AUDIT: ShapeSpec(
        shape=RowShape.CRAWL_AUDIT,
        table="audit_urls",
        mode=MatchMode.ENRICH,
        columns=(
            Column("url", ("Dirección", "Address"), "text", required=True),
            Column("status_code", ("Código de respuesta", "Status Code"), "int"),
            Column("content_type", ("Tipo de contenido", "Content Type")),
            Column("indexability", ("Indexabilidad", "Indexability")),
            Column("indexability_status", ("Estado de indexabilidad", "Indexability Status")),
            Column("depth_level", ("Nivel de profundidad", "Crawl Depth"), "int"),
            Column("internal_links_count", ("Enlaces internos", "Inlinks"), "int"),
            Column("unique_internal_links", ("Enlaces internos únicos", "Unique Inlinks"), "int"),
            Column("outlinks_count", ("Enlaces salientes", "Outlinks"), "int"),
            Column("word_count", ("Recuento de palabras", "Word Count"), "int"),
            Column("response_time", ("Tiempo de respuesta", "Response Time"), "number"),
            Column("last_modified", ("Last Modified",), "ts"),
            Column("canonical_url", ("Elemento de enlace canónico 1", "Canonical Link Element 1")),
            Column("meta_robots", ("Meta robots 1", "Meta Robots 1")),
            Column("title_width", ("Ancho de píxeles del título 1", "Title 1 Pixel Width"), "int"),
            Column(
                "meta_desc_width",
                ("Ancho de píxeles de la meta description 1", "Meta Description 1 Pixel Width"),
                "int",
            ),
            Column("page_title", ("Título 1", "Title 1")),
            Column("meta_description", ("Meta description 1", "Meta Description 1")),
            Column("h1", ("H1-1",)),
        ),
        key_fields=("url",),
        partition=(("issue_type_id", CRAWL_ISSUE_TYPE_ID),),
    ),
    RowShape.TRAFFIC_SHARE: ShapeSpec(
        shape=RowShape.TRAFFIC_SHARE,
        table="audit_urls",
        mode=MatchMode.ENRICH,
        columns=(
            Column("url", ("Dirección", "Address"), "text", required=True),
            Column("traffic_percentage", ("% del total", "% of Total"), "number", required=True),
        ),
        key_fields=("url",),
        partition=(("issue_type_id", CRAWL_ISSUE_TYPE_ID),),
    ),
    RowShape.REF_DOMAIN: ShapeSpec(
        shape=RowShape.REF_DOMAIN,
        table="ref_domains",
        mode=MatchMode.UPSERT,
        columns=(
            Column("domain", ("Domain",), "domain", required=True),
            Column("authority_score", ("Domain ascore", "Authority Score"), "int"),
            Column("backlinks", ("Backlinks",), "int"),
            Column("ip_address", ("IP Address",)),
            Column("country", ("Country",)),
            Column("first_seen", ("First seen",), "date"),
            Column("last_seen", ("Last seen",), "date"),
        ),
        key_fields=("domain",),
        conflict_key="domain",
    ),
    RowShape.RANKING_KEYWORD: ShapeSpec(
        shape=RowShape.RANKING_KEYWORD,
        table="ranking_traffic",
        mode=MatchMode.APPEND,
        columns=(
            Column("keyword", ("Keyword",), "text", required=True),
            Column("position", ("Position",), "int"),
            Column("previous_position", ("Previous position",), "int"),
            Column("search_volume", ("Search Volume",), "int"),
            Column("keyword_difficulty", ("Keyword Difficulty",), "number"),
            Column("cpc", ("CPC",), "number"),
            Column("url", ("URL",)),
            Column("traffic", ("Traffic",), "number"),
            Column("traffic_percentage", ("Traffic (%)",), "number"),
            Column("traffic_cost", ("Traffic Cost",), "number"),
            Column("competition", ("Competition",), "number"),
            Column("number_of_results", ("Number of Results",), "int"),
            Column("trends", ("Trends",)),
            Column("timestamp", ("Timestamp",), "ts"),
            Column("serp_features", ("SERP Features by Keyword",)),
            Column("keyword_intents", ("Keyword Intents",)),
            Column("position_type", ("Position Type",)),
        ),
    ),
    RowShape.BACKLINK_URL: ShapeSpec(
        shape=RowShape.BACKLINK_URL,
        table="backlink_urls",
        mode=MatchMode.APPEND,
        columns=(
            Column("source_url", ("Referring page URL", "referring page url"), "text", required=True),
            Column("target_url", ("Target URL",)),
            Column("anchor", ("Anchor",)),
            Column("page_title", ("Referring page title",)),
            Column("domain_rating", ("Domain rating",), "int"),
        ),
        derive=_derive_source_domain,
        derived_required=("source_domain",),
    ),
    RowShape.REDIRECT_MAP: ShapeSpec(
        shape=RowShape.REDIRECT_MAP,
        table="audit_urls",
        mode=MatchMode.ENRICH,
        columns=(
            Column("url", ("url", "Old URL", "Source"), "text", required=True),
            Column("redirect_destination", ("redirect_destination", "New URL", "Destination")),
            Column("redirect_verified", ("redirect_verified", "Verified"), "bool"),
        ),
        key_fields=("url",),
        # a blank destination in a mapping file means "no redirect"
        clearable=frozenset({"redirect_destination"}),
        fan_out=True,
    ),
}
