"""Resolve the effective provider/model configuration for a request."""

from typing import Literal

from pydantic import BaseModel, ConfigDict

from navreach.config import Config, get_config
from navreach.exceptions import RemoteDataError
from navreach.llm import normalize_provider_key
from navreach.logging import get_logger
from navreach.protocol import ModelSelection, ProviderSettings
from navreach.remote import RemoteDataClient

log = get_logger(__name__)

# API key placeholder used for the system-managed provider entry.
MANAGED_API_KEY = "managed-by-system"


class EffectiveModelConfig(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    provider_type: str
    model_id: str
    api_key: str = ""
    base_url: str = ""
    source: Literal["cloud", "request", "system", "local"] = "local"


async def _fetch_system_settings(remote: RemoteDataClient | None) -> dict:
    if remote is None:
        return {}
    try:
        return await remote.get_system_settings()
    except RemoteDataError as e:
        log.warning("System settings unavailable", error=str(e))
        return {}


async def _fetch_user_override(remote: RemoteDataClient | None, access_token: str | None) -> dict:
    if remote is None or not access_token:
        return {}
    try:
        settings = await remote.get_user_settings(access_token)
    except RemoteDataError as e:
        log.warning("User model override unavailable", error=str(e))
        return {}
    if settings.get("ai_provider") and settings.get("ai_model"):
        return settings
    return {}


async def resolve_effective_config(
    selection: ModelSelection | None = None,
    provider_settings: ProviderSettings | None = None,
    remote: RemoteDataClient | None = None,
    access_token: str | None = None,
    config: Config | None = None,
) -> EffectiveModelConfig:
    """Merge cloud override > request selection > system default > local config."""
    cfg = config or get_config()
    system = await _fetch_system_settings(remote)
    system_key = str(system.get("system_ai_api_key") or "")
    system_base_url = str(system.get("system_ai_base_url") or "")

    override = await _fetch_user_override(remote, access_token)
    if override:
        resolved = EffectiveModelConfig(
            provider_type=normalize_provider_key(override["ai_provider"]),
            model_id=str(override["ai_model"]),
            api_key=str(override.get("ai_api_key") or system_key),
            base_url=str(override.get("ai_base_url") or ""),
            source="cloud",
        )
    elif selection is not None and selection.provider_type and selection.model_id:
        api_key = provider_settings.api_key if provider_settings else ""
        base_url = provider_settings.base_url if provider_settings else ""
        if api_key == MANAGED_API_KEY:
            api_key = system_key
            base_url = base_url or system_base_url
        resolved = EffectiveModelConfig(
            provider_type=normalize_provider_key(selection.provider_type),
            model_id=selection.model_id,
            api_key=api_key,
            base_url=base_url,
            source="request",
        )
    elif system.get("default_ai_provider") and system.get("default_ai_model"):
        resolved = EffectiveModelConfig(
            provider_type=normalize_provider_key(str(system["default_ai_provider"])),
            model_id=str(system["default_ai_model"]),
            api_key=system_key,
            base_url=system_base_url,
            source="system",
        )
    else:
        resolved = EffectiveModelConfig(
            provider_type=normalize_provider_key(cfg.model.provider),
            model_id=cfg.model.model,
            api_key=cfg.model.api_key,
            base_url=cfg.model.base_url,
            source="local",
        )

    log.info(
        "Resolved model config",
        provider=resolved.provider_type,
        model=resolved.model_id,
        source=resolved.source,
    )
    return resolved
