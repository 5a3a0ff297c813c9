"""Runtime configuration for the media task orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

ENV_PREFIX = "MEDIA_TASKS_"

KNOWN_ADAPTERS = frozenset({"elevenlabs", "gemini", "kie", "scripted"})


@dataclass(slots=True)
class KindSettings:
    """Static per-kind routing and limits."""

    kind: str
    adapter: str
    poll_interval_seconds: float = 5.0
    timeout_seconds: int = 600
    max_retries: int = 3
    options: dict[str, str] = field(default_factory=dict)


DEFAULT_KINDS: tuple[KindSettings, ...] = (
    KindSettings(
        kind="dub",
        adapter="elevenlabs",
        poll_interval_seconds=5.0,
        timeout_seconds=600,
        max_retries=3,
        options={"source_lang": "auto", "target_lang": "en"},
    ),
    KindSettings(
        kind="translate-and-localize",
        adapter="gemini",
        poll_interval_seconds=3.0,
        timeout_seconds=300,
        max_retries=3,
        options={"target_language": "English"},
    ),
    KindSettings(
        kind="watermark-remove",
        adapter="kie",
        poll_interval_seconds=5.0,
        timeout_seconds=300,
        max_retries=3,
    ),
)


@dataclass(slots=True)
class PollerSettings:
    """Status poller loop settings."""

    tick_seconds: float = 1.0
    max_concurrency: int = 8
    batch_limit: int = 200
    progress_notify_step: int = 10


@dataclass(slots=True)
class SweeperSettings:
    """Retry sweeper settings."""

    interval_seconds: int = 300
    batch_limit: int = 100
    claim_lease_seconds: int = 120
    retry_base_seconds: int = 60
    retry_max_seconds: int = 1_800


@dataclass(slots=True)
class ProviderSettings:
    """Credentials and endpoints for provider adapters."""

    elevenlabs_api_key: str = ""
    elevenlabs_base_url: str = "https://api.elevenlabs.io"
    kie_api_key: str = ""
    kie_base_url: str = "https://api.kie.ai"
    gemini_api_key: str = ""
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_model: str = "gemini-2.5-flash"
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".media_tasks.db")
    sqlite_busy_timeout_ms: int = 5_000
    results_dir: Path = Path(".media_tasks_results")
    poller: PollerSettings = field(default_factory=PollerSettings)
    sweeper: SweeperSettings = field(default_factory=SweeperSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    kinds: dict[str, KindSettings] = field(
        default_factory=lambda: {item.kind: _copy_kind(item) for item in DEFAULT_KINDS},
    )

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".media_tasks.db")),
            sqlite_busy_timeout_ms=int(_env("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            results_dir=Path(_env("RESULTS_DIR", ".media_tasks_results")),
            poller=PollerSettings(
                tick_seconds=float(_env("POLL_TICK_SECONDS", "1.0")),
                max_concurrency=int(_env("POLL_MAX_CONCURRENCY", "8")),
                batch_limit=int(_env("POLL_BATCH_LIMIT", "200")),
                progress_notify_step=int(_env("PROGRESS_NOTIFY_STEP", "10")),
            ),
            sweeper=SweeperSettings(
                interval_seconds=int(_env("SWEEP_INTERVAL_SECONDS", "300")),
                batch_limit=int(_env("SWEEP_BATCH_LIMIT", "100")),
                claim_lease_seconds=int(_env("SWEEP_CLAIM_LEASE_SECONDS", "120")),
                retry_base_seconds=int(_env("RETRY_BASE_SECONDS", "60")),
                retry_max_seconds=int(_env("RETRY_MAX_SECONDS", "1800")),
            ),
            providers=ProviderSettings(
                elevenlabs_api_key=_env("ELEVENLABS_API_KEY", ""),
                elevenlabs_base_url=_env("ELEVENLABS_BASE_URL", "https://api.elevenlabs.io"),
                kie_api_key=_env("KIE_API_KEY", ""),
                kie_base_url=_env("KIE_BASE_URL", "https://api.kie.ai"),
                gemini_api_key=_env("GEMINI_API_KEY", ""),
                gemini_base_url=_env(
                    "GEMINI_BASE_URL",
                    "https://generativelanguage.googleapis.com",
                ),
                gemini_model=_env("GEMINI_MODEL", "gemini-2.5-flash"),
                timeout_seconds=float(_env("PROVIDER_TIMEOUT_SECONDS", "60")),
            ),
            kinds=_collect_kinds(),
        )

    def kind_settings(self, kind: str) -> KindSettings | None:
        return self.kinds.get(kind)

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("MEDIA_TASKS_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.poller.tick_seconds <= 0:
            raise ValueError("MEDIA_TASKS_POLL_TICK_SECONDS must be > 0.")
        if self.poller.max_concurrency <= 0:
            raise ValueError("MEDIA_TASKS_POLL_MAX_CONCURRENCY must be > 0.")
        if self.poller.batch_limit <= 0:
            raise ValueError("MEDIA_TASKS_POLL_BATCH_LIMIT must be > 0.")
        if not 1 <= self.poller.progress_notify_step <= 100:
            raise ValueError("MEDIA_TASKS_PROGRESS_NOTIFY_STEP must be within 1..100.")
        if self.sweeper.interval_seconds <= 0:
            raise ValueError("MEDIA_TASKS_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.sweeper.batch_limit <= 0:
            raise ValueError("MEDIA_TASKS_SWEEP_BATCH_LIMIT must be > 0.")
        if self.sweeper.claim_lease_seconds <= 0:
            raise ValueError("MEDIA_TASKS_SWEEP_CLAIM_LEASE_SECONDS must be > 0.")
        if self.sweeper.retry_base_seconds < 0:
            raise ValueError("MEDIA_TASKS_RETRY_BASE_SECONDS must be >= 0.")
        if self.sweeper.retry_max_seconds < self.sweeper.retry_base_seconds:
            raise ValueError(
                "MEDIA_TASKS_RETRY_MAX_SECONDS must be >= MEDIA_TASKS_RETRY_BASE_SECONDS.",
            )
        if self.providers.timeout_seconds <= 0:
            raise ValueError("MEDIA_TASKS_PROVIDER_TIMEOUT_SECONDS must be > 0.")
        for base_url in (
            self.providers.elevenlabs_base_url,
            self.providers.kie_base_url,
            self.providers.gemini_base_url,
        ):
            _validate_base_url(base_url)
        if not self.kinds:
            raise ValueError("At least one job kind must be configured.")
        for item in self.kinds.values():
            prefix = _kind_env_prefix(item.kind)
            if item.adapter not in KNOWN_ADAPTERS:
                raise ValueError(
                    f"{prefix}ADAPTER must be one of {sorted(KNOWN_ADAPTERS)}: {item.adapter!r}",
                )
            if item.poll_interval_seconds <= 0:
                raise ValueError(f"{prefix}POLL_INTERVAL_SECONDS must be > 0.")
            if item.timeout_seconds <= 0:
                raise ValueError(f"{prefix}TIMEOUT_SECONDS must be > 0.")
            if item.max_retries < 0:
                raise ValueError(f"{prefix}MAX_RETRIES must be >= 0.")


def parse_options(raw: str) -> dict[str, str]:
    """Parse ``key=value,key=value`` into a dict."""

    options: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ValueError(f"Invalid kind option {token!r}. Expected format 'key=value'.")
        key, value = token.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Invalid kind option {token!r}: empty key.")
        options[key] = value.strip()
    return options


def _collect_kinds() -> dict[str, KindSettings]:
    names = [item.kind for item in DEFAULT_KINDS]
    extra = _env("KINDS", "").strip()
    if extra:
        for part in extra.split(","):
            name = part.strip()
            if name and name not in names:
                names.append(name)

    defaults = {item.kind: item for item in DEFAULT_KINDS}
    kinds: dict[str, KindSettings] = {}
    for name in names:
        base = defaults.get(name)
        prefix = _kind_env_prefix(name)
        adapter = os.getenv(f"{prefix}ADAPTER", base.adapter if base else "")
        if not adapter:
            raise ValueError(f"{prefix}ADAPTER is required for kind {name!r}.")
        options = dict(base.options) if base else {}
        options.update(parse_options(os.getenv(f"{prefix}OPTIONS", "")))
        kinds[name] = KindSettings(
            kind=name,
            adapter=adapter.strip(),
            poll_interval_seconds=float(
                os.getenv(
                    f"{prefix}POLL_INTERVAL_SECONDS",
                    str(base.poll_interval_seconds if base else 5.0),
                ),
            ),
            timeout_seconds=int(
                os.getenv(f"{prefix}TIMEOUT_SECONDS", str(base.timeout_seconds if base else 600)),
            ),
            max_retries=int(
                os.getenv(f"{prefix}MAX_RETRIES", str(base.max_retries if base else 3)),
            ),
            options=options,
        )
    return kinds


def _copy_kind(item: KindSettings) -> KindSettings:
    return KindSettings(
        kind=item.kind,
        adapter=item.adapter,
        poll_interval_seconds=item.poll_interval_seconds,
        timeout_seconds=item.timeout_seconds,
        max_retries=item.max_retries,
        options=dict(item.options),
    )


def _kind_env_prefix(kind: str) -> str:
    return f"{ENV_PREFIX}KIND_{kind.upper().replace('-', '_')}_"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid provider base URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
