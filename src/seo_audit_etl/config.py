"""seo_audit_etl.config

Explicit configuration for one run, read once from the environment and
passed into the pipeline.  Nothing reads os.environ after this point.

Required:
  SUPABASE_URL            (fallback NEXT_PUBLIC_SUPABASE_URL)
  SUPABASE_SERVICE_KEY    (fallback SUPABASE_SERVICE_ROLE_KEY)

Optional:
  SUPABASE_DB_DSN              direct Postgres connection instead of REST
  SEO_AUDIT_CHUNK_SIZE         overrides every job's write chunk size
  SEO_AUDIT_PAGE_SIZE          index page size (default 1000)
  SEO_AUDIT_MAX_IN_FLIGHT      concurrent chunk writes (default 1)
  SEO_AUDIT_TIMEOUT_SECONDS    per store call (default 30)
  SEO_AUDIT_NUMBER_LOCALE      "us" | "eu", overrides job defaults
  SEO_AUDIT_ARTIFACTS_DIR      rejects / reports root (default ./artifacts)

A ``.env.local`` (then ``.env``) in the working directory is loaded first
when present; real environment variables win.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

from seo_audit_etl.normalize import NUMBER_LOCALES
from seo_audit_etl.shared import ConfigError

ENV_FILES = (".env.local", ".env")


def load_env_files(base_dir: Path | None = None) -> list[Path]:
    """Load dotenv files without overriding variables already set."""
    base = base_dir or Path.cwd()
    loaded = []
    for name in ENV_FILES:
        path = base / name
        if path.is_file():
            load_dotenv(dotenv_path=path, override=False)
            loaded.append(path)
    return loaded


def _first(env: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        value = (env.get(name) or "").strip()
        if value:
            return value
    return None


def _positive_int(env: Mapping[str, str], name: str, default: int | None) -> int | None:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise ConfigError(f"{name} must be >= 1, got {value}")
    return value


@dataclass(frozen=True)
class ImportConfig:
    store_url: str | None
    service_key: str | None
    db_dsn: str | None = None
    chunk_size: int | None = None
    page_size: int = 1000
    max_in_flight: int = 1
    timeout_seconds: float = 30.0
    number_locale: str | None = None
    artifacts_dir: Path = Path("./artifacts")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> ImportConfig:
        """Build and validate a config.  Raises ConfigError on missing credentials."""
        env = os.environ if env is None else env
        db_dsn = _first(env, "SUPABASE_DB_DSN")
        store_url = _first(env, "SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL")
        service_key = _first(env, "SUPABASE_SERVICE_KEY", "SUPABASE_SERVICE_ROLE_KEY")
        if not db_dsn:
            missing = [
                name for name, value in (
                    ("SUPABASE_URL", store_url),
                    ("SUPABASE_SERVICE_KEY", service_key),
                )
                if not value
            ]
            if missing:
                raise ConfigError(f"missing environment variable(s): {', '.join(missing)}")

        raw_timeout = (env.get("SEO_AUDIT_TIMEOUT_SECONDS") or "").strip()
        try:
            timeout = float(raw_timeout) if raw_timeout else 30.0
        except ValueError:
            raise ConfigError(
                f"SEO_AUDIT_TIMEOUT_SECONDS must be a number, got {raw_timeout!r}"
            ) from None
        if timeout <= 0:
            raise ConfigError("SEO_AUDIT_TIMEOUT_SECONDS must be > 0")

        locale = _first(env, "SEO_AUDIT_NUMBER_LOCALE")
        if locale is not None:
            locale = locale.lower()
            if locale not in NUMBER_LOCALES:
                raise ConfigError(
                    f"SEO_AUDIT_NUMBER_LOCALE must be one of {NUMBER_LOCALES}, got {locale!r}"
                )

        return cls(
            store_url=store_url,
            service_key=service_key,
            db_dsn=db_dsn,
            chunk_size=_positive_int(env, "SEO_AUDIT_CHUNK_SIZE", None),
            page_size=_positive_int(env, "SEO_AUDIT_PAGE_SIZE", 1000),
            max_in_flight=_positive_int(env, "SEO_AUDIT_MAX_IN_FLIGHT", 1),
            timeout_seconds=timeout,
            number_locale=locale,
            artifacts_dir=Path(_first(env, "SEO_AUDIT_ARTIFACTS_DIR") or "./artifacts"),
        )

    @property
    def rejects_dir(self) -> Path:
        return self.artifacts_dir / "rejects"

    @property
    def reports_dir(self) -> Path:
        return self.artifacts_dir / "reports"
