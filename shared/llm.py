"""Shared LLM utilities"""
from typing import Literal, Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI

from shared.config import config
from shared.logger import get_logger

logger = get_logger(__name__)

_tracing_configured = False


def _detect_provider(model: str) -> Literal["openai", "anthropic"]:
    """Detect provider from model name."""
    if model.startswith(("gpt-", "o3-")):
        return "openai"
    elif model.startswith("claude-"):
        return "anthropic"
    else:
        # Default to OpenAI for backward compatibility
        return "openai"


def _configure_tracing() -> None:
    """Enable MLflow autologging for LangChain calls once, when a tracking server is configured."""
    global _tracing_configured

    if _tracing_configured or not config.is_mlflow_tracing_enabled:
        return

    import mlflow

    mlflow.set_tracking_uri(config.mlflow_tracking_uri)
    if config.mlflow_experiment_name:
        mlflow.set_experiment(config.mlflow_experiment_name)
    mlflow.langchain.autolog()
    _tracing_configured = True
    logger.info("MLflow tracing enabled", extra={"tracking_uri": config.mlflow_tracking_uri})


def get_llm(
    model: Optional[str] = None,
    temperature: float = 0.2,
    reasoning_effort: str = "minimal",
    api_key: Optional[str] = None,
) -> BaseChatModel:
    """
    Get a configured LLM instance for OpenAI or Anthropic models.

    Args:
        model: Model name (e.g., "gpt-5-mini", "claude-sonnet-4-5"), defaults to config.default_llm_model
        temperature: Temperature setting
        reasoning_effort: Reasoning effort level (only used for models that support it)
        api_key: Optional API key override (provider-specific)

    Returns:
        Configured ChatOpenAI or ChatAnthropic instance
    """
    model = model or config.default_llm_model
    provider = _detect_provider(model)
    _configure_tracing()

    if provider == "openai":
        if api_key is None:
            api_key = config.openai_api_key
        if api_key is None or api_key == "":
            raise ValueError("OPENAI_API_KEY not found in environment")

        kwargs = {
            "model": model,
            "api_key": api_key,
            "temperature": temperature,
        }
        # o3 and full-size gpt-5 models accept a reasoning effort
        if model.startswith("o3-"):
            kwargs["reasoning"] = {"effort": reasoning_effort}
        elif model.startswith("gpt-5") and not model.startswith(("gpt-5-mini", "gpt-5-nano")):
            kwargs["reasoning"] = {"effort": reasoning_effort}

        return ChatOpenAI(**kwargs)

    if api_key is None:
        api_key = config.anthropic_api_key
    if api_key is None or api_key == "":
        raise ValueError("ANTHROPIC_API_KEY not found in environment")

    return ChatAnthropic(
        model=model,
        anthropic_api_key=api_key,
        temperature=temperature,
    )


def message_text(message) -> str:
    """
    Flatten a chat message's content into plain text. Responses-API style
    messages carry a list of content blocks instead of a string.
    """
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    text = ""
    if isinstance(content, list):
        for block in content:
            if isinstance(block, str):
                text += block
            elif isinstance(block, dict) and block.get("type") == "text":
                text += block.get("text", "")
    return text
