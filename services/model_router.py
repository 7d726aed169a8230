"""
Model Router: maps model identifiers to provider families.

Provides:
- MODEL_PROVIDERS: static table of known model ids
- ProviderResolver: table lookup, then ordered family heuristics
- resolve_provider(): module-level shortcut using the default resolver

Resolution is total; anything unrecognized routes to the generic
OpenAI-compatible proxy (``ProviderKind.OTHER``).
"""

import logging

from .providers.base import ProviderKind

logger = logging.getLogger(__name__)


# ============ Known Models ============

MODEL_PROVIDERS: dict[str, ProviderKind] = {
    # Google (official SDK)
    "gemini-1.5-pro": ProviderKind.GOOGLE,
    "gemini-1.5-pro-latest": ProviderKind.GOOGLE,
    "gemini-1.5-flash": ProviderKind.GOOGLE,
    "gemini-1.5-flash-latest": ProviderKind.GOOGLE,
    "gemini-1.5-flash-001": ProviderKind.GOOGLE,
    "gemini-1.5-flash-002": ProviderKind.GOOGLE,
    "gemini-1.5-flash-8b": ProviderKind.GOOGLE,
    "gemini-2.0-flash-exp": ProviderKind.GOOGLE,
    "gemini-2.0-flash-exp-latest": ProviderKind.GOOGLE,
    "imagen-3.0-generate-001": ProviderKind.GOOGLE,
    "veo-3.1-generate-preview": ProviderKind.GOOGLE,
    # Local proxy (Antigravity-style gateways)
    "flux-1-dev": ProviderKind.OTHER,
    "gemini-3-pro-high": ProviderKind.OTHER,
    "gemini-3-pro-low": ProviderKind.OTHER,
    "gemini-3-flash": ProviderKind.OTHER,
    "gemini-3-pro-image": ProviderKind.OTHER,
    "gemini-2.5-flash": ProviderKind.OTHER,
    "gemini-2.5-flash-lite": ProviderKind.OTHER,
    "gemini-2.5-pro": ProviderKind.OTHER,
    "gemini-2.0-flash": ProviderKind.OTHER,
    "gemini-2.5-flash-thinking": ProviderKind.OTHER,
    "claude-sonnet-4-5": ProviderKind.OTHER,
    "claude-sonnet-4-5-thinking": ProviderKind.OTHER,
    "claude-opus-4-5-thinking": ProviderKind.OTHER,
    "claude-3-5-sonnet-latest": ProviderKind.OTHER,
    "claude-3-5-sonnet-20241022": ProviderKind.OTHER,
    "luma-ray-v1": ProviderKind.OTHER,
    "kling-v1-5": ProviderKind.OTHER,
    "eleven-labs-v2": ProviderKind.OTHER,
    "fish-speech-1-4": ProviderKind.OTHER,
    # Jimeng native
    "jimeng_ti2v_v30_pro": ProviderKind.JIMENG,
    "jimeng_ti2v_v30_1080p": ProviderKind.JIMENG,
    "jimeng_ti2v_v30_720p": ProviderKind.JIMENG,
    "jimeng_t2i_v40": ProviderKind.JIMENG,
    # Jimeng web
    "jimeng-video-3.5-pro": ProviderKind.JIMENG_WEB,
    "jimeng-video-3.5": ProviderKind.JIMENG_WEB,
    "jimeng-video-3.0-pro": ProviderKind.JIMENG_WEB,
    "jimeng-video-3.0-fast": ProviderKind.JIMENG_WEB,
    "jimeng-video-3.0": ProviderKind.JIMENG_WEB,
    "jimeng-video-veo3": ProviderKind.JIMENG_WEB,
    "jimeng-video-veo3.1": ProviderKind.JIMENG_WEB,
    "jimeng-video-sora2": ProviderKind.JIMENG_WEB,
    "jimeng-4.5": ProviderKind.JIMENG_WEB,
    "jimeng-4.0": ProviderKind.JIMENG_WEB,
    # Others
    "grok-2-latest": ProviderKind.XAI,
    "claude-3-haiku": ProviderKind.ANTHROPIC,
    "gpt-4o-audio-preview": ProviderKind.OPENAI,
}

# Models that always go through the local proxy, checked before the Google family
PROXY_SENTINELS = ["gemini-3"]

JIMENG_WEB_IMAGE_MODELS = {"jimeng-4.5", "jimeng-4.0"}

# Ordered (substrings, provider); first match wins
FAMILY_RULES: list[tuple[tuple[str, ...], ProviderKind]] = [
    (("gemini", "veo", "imagen"), ProviderKind.GOOGLE),
    (("jimeng-video",), ProviderKind.JIMENG_WEB),
    (("jimeng",), ProviderKind.JIMENG),
    (("gpt", "dall-e"), ProviderKind.OPENAI),
    (("claude", "anthropic"), ProviderKind.ANTHROPIC),
    (("qwen",), ProviderKind.QWEN),
    (("deepseek",), ProviderKind.DEEPSEEK),
    (("grok",), ProviderKind.XAI),
]


class ProviderResolver:
    """
    Resolve a model identifier to the provider family that serves it.

    Matching is case-insensitive. Extra table entries can be supplied to
    override or extend ``MODEL_PROVIDERS``.
    """

    def __init__(self, overrides: dict[str, ProviderKind | str] | None = None):
        self._table = dict(MODEL_PROVIDERS)
        for model_id, provider in (overrides or {}).items():
            self._table[model_id.lower()] = ProviderKind.parse(provider)

    def resolve(self, model_id: str) -> ProviderKind:
        """
        Map a model id to a ProviderKind.

        Order: exact table entry, proxy sentinel, family heuristics, then
        ``OTHER``. Never raises.
        """
        lower = (model_id or "").strip().lower()

        if lower in self._table:
            return self._table[lower]

        if any(sentinel in lower for sentinel in PROXY_SENTINELS):
            return ProviderKind.OTHER

        for needles, provider in FAMILY_RULES:
            if provider is ProviderKind.JIMENG_WEB and lower in JIMENG_WEB_IMAGE_MODELS:
                return provider
            if any(needle in lower for needle in needles):
                return provider

        logger.debug(f"[Router] No provider match for '{model_id}', using generic proxy")
        return ProviderKind.OTHER


_default_resolver = ProviderResolver()


def resolve_provider(model_id: str) -> ProviderKind:
    """Resolve with the built-in table."""
    return _default_resolver.resolve(model_id)
