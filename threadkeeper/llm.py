"""Model string handling for direct litellm calls."""

import os
from typing import Optional


def parse_model_string(model_string: str) -> tuple[str, str, Optional[str]]:
    """Parse a ``provider:model[:variant]`` model string.

    Args:
        model_string: Format like "ollama:qwen2.5-coder:14b" or "openai:gpt-4o-mini"

    Returns:
        Tuple of (provider, model_name, variant)
    """
    parts = model_string.split(":")
    if len(parts) < 2:
        raise ValueError(f"Invalid model string format: {model_string}")

    provider = parts[0]
    model_name = parts[1]
    variant = parts[2] if len(parts) > 2 else None

    return provider, model_name, variant


def get_model_params(model_string: str, **kwargs) -> dict:
    """Get parameters for direct litellm.acompletion() calls.

    Examples:
        >>> params = get_model_params("openai:gpt-4o-mini", temperature=0.2)
        >>> params["model"]
        'openai/gpt-4o-mini'
    """
    provider, model_name, variant = parse_model_string(model_string)
    params = dict(kwargs)

    if provider == "ollama":
        params["model"] = f"{model_name}:{variant}" if variant else model_name
        params.setdefault("api_base", os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1"))
        params.setdefault("api_key", "ollama")
    elif provider == "openai":
        params["model"] = f"openai/{model_name}"
        params.setdefault("api_key", os.getenv("OPENAI_API_KEY"))
    elif provider == "anthropic":
        params["model"] = f"anthropic/{model_name}"
        params.setdefault("api_key", os.getenv("ANTHROPIC_API_KEY"))
    elif provider == "google":
        params["model"] = f"gemini/{model_name}"
        params.setdefault("api_key", os.getenv("GOOGLE_API_KEY"))
    else:
        # Fallback: try LiteLLM with the provider prefix
        params["model"] = f"{provider}/{model_name}"

    return params


def litellm_model_name(model_string: str) -> str:
    """LiteLLM model id for a model string, or the string itself if unparseable."""
    try:
        return get_model_params(model_string)["model"]
    except ValueError:
        return model_string
