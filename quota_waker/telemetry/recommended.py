"""Рекомендованные модели: allow-list по id и нормализованному label."""

import re

RECOMMENDED_LABELS: tuple[str, ...] = (
    "Gemini 3.1 Pro (High)",
    "Gemini 3.1 Pro (Low)",
    "Gemini 3 Flash",
    "Claude Sonnet 4.6 (Thinking)",
    "Claude Opus 4.6 (Thinking)",
    "GPT-OSS 120B (Medium)",
    "Gemini 3 Pro Image",
)

RECOMMENDED_MODEL_IDS: tuple[str, ...] = (
    "MODEL_PLACEHOLDER_M37",  # Gemini 3.1 Pro (High)
    "MODEL_PLACEHOLDER_M36",  # Gemini 3.1 Pro (Low)
    "MODEL_PLACEHOLDER_M18",  # Gemini 3 Flash
    "MODEL_PLACEHOLDER_M35",  # Claude Sonnet 4.6 (Thinking)
    "MODEL_PLACEHOLDER_M26",  # Claude Opus 4.6 (Thinking)
    "MODEL_OPENAI_GPT_OSS_120B_MEDIUM",
    "MODEL_PLACEHOLDER_M9",   # Gemini 3 Pro Image
)

# Никогда не показываются, даже если API пометил их recommended
MODEL_BLACKLIST_IDS: frozenset[str] = frozenset({
    "MODEL_CHAT_20706",
    "MODEL_CHAT_23310",
    "MODEL_GOOGLE_GEMINI_2_5_FLASH",
    "MODEL_GOOGLE_GEMINI_2_5_FLASH_THINKING",
    "MODEL_GOOGLE_GEMINI_2_5_FLASH_LITE",
    "MODEL_GOOGLE_GEMINI_2_5_PRO",
    "MODEL_PLACEHOLDER_M19",
})

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_key(value: str) -> str:
    """'GPT-OSS 120B (Medium)' → 'gptoss120bmedium'."""
    return _NON_ALNUM.sub("", value.lower())


_NORMALIZED_IDS = frozenset(normalize_key(v) for v in RECOMMENDED_MODEL_IDS)
_NORMALIZED_LABELS = frozenset(normalize_key(v) for v in RECOMMENDED_LABELS)


def is_recommended(model_id: str, label: str) -> bool:
    """Модель входит в allow-list (по id или label без учёта регистра и пунктуации)."""
    if model_id in MODEL_BLACKLIST_IDS:
        return False
    return (
        normalize_key(model_id) in _NORMALIZED_IDS
        or normalize_key(label) in _NORMALIZED_LABELS
    )
