"""
Model name resolution.

Hosts ask for models by user-facing names (``claude-sonnet-4.5``,
``antigravity-gemini-3-pro-high``, ``gemini-claude-opus-4-5-thinking-low``).
The gateway wants the bare API model plus a thinking configuration derived
from any tier suffix.
"""

import re
from dataclasses import dataclass
from typing import Dict, Optional

from greconcile.proxy.thinking import ModelFamily

# Thinking budgets by tier, per budget family.
THINKING_TIER_BUDGETS: Dict[str, Dict[str, int]] = {
    "claude": {"low": 8192, "medium": 16384, "high": 32768},
    "gemini-2.5-pro": {"low": 8192, "medium": 16384, "high": 32768},
    "gemini-2.5-flash": {"low": 6144, "medium": 12288, "high": 24576},
    "default": {"low": 4096, "medium": 8192, "high": 16384},
}

# Gemini 3 takes a thinking level string instead of a budget.
GEMINI_3_THINKING_LEVELS = ("minimal", "low", "medium", "high")

MODEL_ALIASES = {
    "gemini-3-pro-low": "gemini-3-pro",
    "gemini-3-pro-high": "gemini-3-pro",
    "gemini-3-flash-low": "gemini-3-flash",
    "gemini-3-flash-medium": "gemini-3-flash",
    "gemini-3-flash-high": "gemini-3-flash",
    "gemini-claude-sonnet-4-5": "claude-sonnet-4-5",
    "gemini-claude-sonnet-4-5-thinking-low": "claude-sonnet-4-5-thinking",
    "gemini-claude-sonnet-4-5-thinking-medium": "claude-sonnet-4-5-thinking",
    "gemini-claude-sonnet-4-5-thinking-high": "claude-sonnet-4-5-thinking",
    "gemini-claude-opus-4-5-thinking-low": "claude-opus-4-5-thinking",
    "gemini-claude-opus-4-5-thinking-medium": "claude-opus-4-5-thinking",
    "gemini-claude-opus-4-5-thinking-high": "claude-opus-4-5-thinking",
    "gemini-3-pro-image-preview": "gemini-3-pro-image",
}

MODEL_FALLBACKS = {
    "gemini-2.5-flash-image": "gemini-2.5-flash",
}

# Model name substrings that imply a thinking-capable model.
THINKING_MODEL_PATTERNS = ("thinking", "gemini-3", "opus")

STREAM_ACTION = "streamGenerateContent"

TIER_REGEX = re.compile(r"-(minimal|low|medium|high)$")
QUOTA_PREFIX_REGEX = re.compile(r"^antigravity-", re.IGNORECASE)
ANTIGRAVITY_ONLY_MODELS = re.compile(r"^(claude|gpt)", re.IGNORECASE)
URL_MODEL_REGEX = re.compile(r"/models/([^:/]+):(\w+)")


@dataclass
class ResolvedModel:
    actual_model: str
    is_thinking_model: bool
    quota_preference: str
    tier: Optional[str] = None
    thinking_budget: Optional[int] = None
    thinking_level: Optional[str] = None


@dataclass
class ParsedModelInfo:
    raw_model: str
    action: str
    is_streaming: bool
    is_claude: bool
    is_thinking_model: bool
    family: ModelFamily


def normalize_claude_model_name(model: str) -> str:
    """Normalize Claude model IDs that sometimes use a 4.5 dot suffix."""
    if "claude-" not in model:
        return model
    return (
        model.replace("claude-opus-4.5", "claude-opus-4-5")
        .replace("claude-sonnet-4.5", "claude-sonnet-4-5")
    )


def get_api_model_name(model: str) -> str:
    """
    Convert an internal model ID to the API model name.

    The ``antigravity-`` prefix only selects the quota; the API expects the
    model without it. Tier suffixes are preserved.

    Args:
        model: Internal model ID (e.g., 'antigravity-gemini-3-pro-low')

    Returns:
        str: API model name (e.g., 'gemini-3-pro-low')
    """
    return normalize_claude_model_name(QUOTA_PREFIX_REGEX.sub("", model))


def is_thinking_capable_model(model: str) -> bool:
    lower = model.lower()
    return "thinking" in lower or "gemini-3" in lower or "gemini-2.5" in lower


def get_model_family(model: str) -> ModelFamily:
    """Reconciliation policy for a model name."""
    lower = (model or "").lower()
    if "claude" in lower:
        return ModelFamily.CLAUDE
    if "gpt" in lower:
        return ModelFamily.GPT
    return ModelFamily.GEMINI


def _supports_thinking_tiers(model: str) -> bool:
    # gpt-oss-120b-medium is a model name, not a tier
    lower = model.lower()
    return (
        "gemini-3" in lower
        or "gemini-2.5" in lower
        or ("claude" in lower and "thinking" in lower)
    )


def _budget_family(model: str) -> str:
    if "claude" in model:
        return "claude"
    if "gemini-2.5-pro" in model:
        return "gemini-2.5-pro"
    if "gemini-2.5-flash" in model:
        return "gemini-2.5-flash"
    return "default"


def resolve_model_with_tier(requested_model: str) -> ResolvedModel:
    """
    Resolve a requested model name to the API model and thinking settings.

    Examples:
        gemini-2.5-flash -> gemini-2.5-flash, gemini-cli quota
        antigravity-gemini-3-pro-high -> gemini-3-pro-high, tier high, antigravity quota
        claude-sonnet-4-5-thinking-medium -> claude-sonnet-4-5-thinking, budget 16384
    """
    is_antigravity = bool(QUOTA_PREFIX_REGEX.match(requested_model))
    model = normalize_claude_model_name(QUOTA_PREFIX_REGEX.sub("", requested_model))

    tier_match = TIER_REGEX.search(model) if _supports_thinking_tiers(model) else None
    tier = tier_match.group(1) if tier_match else None
    base_name = TIER_REGEX.sub("", model) if tier else model

    quota = "antigravity" if is_antigravity or ANTIGRAVITY_ONLY_MODELS.match(model) else "gemini-cli"

    is_gemini_3 = model.lower().startswith("gemini-3")
    skip_alias = is_antigravity and is_gemini_3

    if skip_alias:
        actual = model
    else:
        actual = MODEL_ALIASES.get(model) or MODEL_ALIASES.get(base_name) or base_name
    actual = MODEL_FALLBACKS.get(actual, actual)
    is_thinking = is_thinking_capable_model(actual)

    if not tier:
        if actual == "gemini-3-flash" and not skip_alias:
            return ResolvedModel(actual, True, quota, thinking_level="minimal")
        return ResolvedModel(actual, is_thinking, quota)

    if "gemini-3" in actual and not skip_alias:
        return ResolvedModel(actual, True, quota, tier=tier, thinking_level=tier)

    if skip_alias:
        return ResolvedModel(actual, True, quota, tier=tier)

    budgets = THINKING_TIER_BUDGETS[_budget_family(actual)]
    return ResolvedModel(
        actual,
        is_thinking,
        quota,
        tier=tier,
        thinking_budget=budgets.get(tier, budgets["medium"]),
    )


def parse_model_from_url(url: str) -> Optional[ParsedModelInfo]:
    """Pull model and action out of a ``.../models/<model>:<action>`` URL."""
    match = URL_MODEL_REGEX.search(url or "")
    if not match:
        return None
    raw_model, action = match.group(1), match.group(2)
    lower = raw_model.lower()
    return ParsedModelInfo(
        raw_model=raw_model,
        action=action,
        is_streaming=action == STREAM_ACTION,
        is_claude="claude" in lower,
        is_thinking_model=any(pattern in lower for pattern in THINKING_MODEL_PATTERNS),
        family=get_model_family(raw_model),
    )
