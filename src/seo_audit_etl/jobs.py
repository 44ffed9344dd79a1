"""seo_audit_etl.jobs

One ImportJob per import command: which row shape it loads, the demo file
it reads when no path is given, its export dialect, number locale and
write chunk size.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from seo_audit_etl.csv_reader import COMMA_UTF8, TAB_UTF16LE, Dialect
from seo_audit_etl.row_shapes import SHAPES, RowShape, ShapeSpec

# Ranking exports are per market; the market is only in the file name.
_MARKET_HINTS = (
    ("francia", "fr"),
    ("france", "fr"),
    ("eeuu", "us"),
    ("usa", "us"),
)
DEFAULT_MARKET = "es"


def market_from_path(path: Path) -> dict[str, Any]:
    stem = Path(path).stem.lower()
    for hint, market in _MARKET_HINTS:
        if hint in stem:
            return {"market": market}
    return {"market": DEFAULT_MARKET}


@dataclass(frozen=True)
class ImportJob:
    name: str
    shape: RowShape
    default_path: str
    chunk_size: int
    dialect: Dialect = COMMA_UTF8
    locale: str = "us"
    static_fields: Callable[[Path], dict[str, Any]] | None = None

    @property
    def spec(self) -> ShapeSpec:
        return SHAPES[self.shape]

    def fields_for(self, path: Path) -> dict[str, Any] | None:
        return self.static_fields(path) if self.static_fields else None


JOBS: dict[str, ImportJob] = {
    job.name: job
    for job in (
        ImportJob(
            name="issues",
            shape=RowShape.ISSUE_SEED,
            default_path="sample_issues_import.csv",
            chunk_size=1000,
        ),
        ImportJob(
            name="backlinks",
            shape=RowShape.BACKLINK_TOXICITY,
            default_path="public/backlink_audit_domains.csv",
            chunk_size=50,
        ),
        ImportJob(
            name="deep_audit",
            shape=RowShape.CRAWL_AUDIT,
            default_path="csv/internos_todo.csv",
            chunk_size=50,
            locale="eu",
        ),
        ImportJob(
            name="traffic",
            shape=RowShape.TRAFFIC_SHARE,
            default_path="csv/internos_todo_old.csv",
            chunk_size=1000,
            locale="eu",
        ),
        ImportJob(
            name="refdomains",
            shape=RowShape.REF_DOMAIN,
            default_path="csv/refdomains.csv",
            chunk_size=100,
        ),
        ImportJob(
            name="ranking",
            shape=RowShape.RANKING_KEYWORD,
            default_path="csv/kw_posicion_trafico.csv",
            chunk_size=100,
            static_fields=market_from_path,
        ),
        ImportJob(
            name="backlink_urls",
            shape=RowShape.BACKLINK_URL,
            default_path="csv/backlinks-subdomains.csv",
            chunk_size=500,
            dialect=TAB_UTF16LE,
        ),
        ImportJob(
            name="redirects",
            shape=RowShape.REDIRECT_MAP,
            default_path="csv/redirect_map.csv",
            chunk_size=50,
        ),
    )
}
