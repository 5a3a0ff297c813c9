"""Adapter construction from settings."""

from __future__ import annotations

import httpx

from media_tasks.config import Settings
from media_tasks.providers.base import ProviderAdapter
from media_tasks.providers.elevenlabs import ElevenLabsDubbingAdapter
from media_tasks.providers.gemini import GeminiTranslateAdapter
from media_tasks.providers.kie import KieWatermarkAdapter
from media_tasks.providers.scripted import ScriptedAdapter


def build_adapter(
    name: str,
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> ProviderAdapter:
    """Instantiate the adapter registered under ``name``."""

    providers = settings.providers
    if name == "elevenlabs":
        return ElevenLabsDubbingAdapter(
            api_key=providers.elevenlabs_api_key,
            base_url=providers.elevenlabs_base_url,
            results_dir=settings.results_dir,
            timeout_seconds=providers.timeout_seconds,
            transport=transport,
        )
    if name == "kie":
        return KieWatermarkAdapter(
            api_key=providers.kie_api_key,
            base_url=providers.kie_base_url,
            timeout_seconds=providers.timeout_seconds,
            transport=transport,
        )
    if name == "gemini":
        return GeminiTranslateAdapter(
            api_key=providers.gemini_api_key,
            base_url=providers.gemini_base_url,
            model=providers.gemini_model,
            results_dir=settings.results_dir,
            timeout_seconds=providers.timeout_seconds,
            transport=transport,
        )
    if name == "scripted":
        return ScriptedAdapter()
    raise ValueError(f"Unknown provider adapter: {name!r}")


def build_adapters(
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, ProviderAdapter]:
    """Map every configured kind to its adapter, sharing one instance per adapter name."""

    by_name: dict[str, ProviderAdapter] = {}
    by_kind: dict[str, ProviderAdapter] = {}
    for kind, kind_settings in settings.kinds.items():
        adapter = by_name.get(kind_settings.adapter)
        if adapter is None:
            adapter = build_adapter(kind_settings.adapter, settings, transport=transport)
            by_name[kind_settings.adapter] = adapter
        by_kind[kind] = adapter
    return by_kind
