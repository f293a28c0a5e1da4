# USD per 1K tokens
MODEL_RATES = {
    "anthropic/claude-3-sonnet": 0.003,
    "anthropic/claude-3-haiku": 0.00025,
    "openai/gpt-4": 0.03,
    "openai/gpt-3.5-turbo": 0.002,
    "mistralai/mixtral-8x7b-instruct": 0.0007,
    "google/palm-2-chat-bison": 0.0005,
}
DEFAULT_RATE = 0.002

FALLBACK_SUFFIX = " (fallback)"


def rate_for(model: str) -> float:
    # Usage rows for fallback calls carry the tagged name
    if model.endswith(FALLBACK_SUFFIX):
        model = model[: -len(FALLBACK_SUFFIX)]
    return MODEL_RATES.get(model, DEFAULT_RATE)


def calculate_cost(model: str, total_tokens: int) -> float:
    if not total_tokens or total_tokens < 0:
        return 0.0
    return round((total_tokens / 1000.0) * rate_for(model), 8)
