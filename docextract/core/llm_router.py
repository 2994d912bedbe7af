"""LiteLLM Router shared by every agent call.

The router owns API keys, retries, cooldowns and model fallbacks so the
agent service only deals with prompts, schemas and timeouts.

Supports:
- OpenRouter (default): Uses OPENROUTER_API_KEY
- Azure OpenAI: Uses AZURE_API_KEY, AZURE_API_BASE, AZURE_API_VERSION
"""

import os

from litellm import Router

from docextract.core.config import (
    LLM_PROVIDER,
    API_KEY_ENV_VAR,
    SMART_MODEL,
    FAST_MODEL,
)


def _deployment(model: str, **params) -> dict:
    """One router deployment entry whose public name equals the model id."""
    return {"model_name": model, "litellm_params": {"model": model, **params}}


def _build_openrouter_model_list() -> list[dict]:
    api_key_ref = f"os.environ/{API_KEY_ENV_VAR}"
    models = [FAST_MODEL, SMART_MODEL, "openrouter/openai/gpt-4-turbo"]
    return [_deployment(m, api_key=api_key_ref) for m in dict.fromkeys(models)]


def _build_azure_model_list() -> list[dict]:
    """Azure deployments for the fast and smart tiers.

    Deployment names come from AZURE_DEPLOYMENT_GPT_4O_MINI and
    AZURE_DEPLOYMENT_GPT_4O (see config._get_model_name).
    """
    params = {
        "api_key": os.environ.get("AZURE_API_KEY", ""),
        "api_base": os.environ.get("AZURE_API_BASE", ""),
        "api_version": os.environ.get("AZURE_API_VERSION", "2024-02-15-preview"),
    }
    return [_deployment(m, **params) for m in dict.fromkeys([FAST_MODEL, SMART_MODEL])]


def _build_fallbacks() -> list[dict]:
    if LLM_PROVIDER == "azure":
        return [{FAST_MODEL: [SMART_MODEL]}]
    return [{FAST_MODEL: ["openrouter/openai/gpt-4-turbo"]}]


def build_router() -> Router:
    """Build the LLM Router with retry and fallback configuration.

    The router handles:
    - Retries (2) with a 4s base wait
    - Fallback from the fast model once retries are exhausted
    - A 60s cooldown for a deployment after 2 failures
    """
    if LLM_PROVIDER == "azure":
        model_list = _build_azure_model_list()
    else:
        model_list = _build_openrouter_model_list()

    return Router(
        model_list=model_list,
        num_retries=2,
        retry_after=4,
        cooldown_time=60,
        allowed_fails=2,
        fallbacks=_build_fallbacks(),
    )


router = build_router()
