"""
Grouping — кластеризация моделей с одинаковым состоянием квоты.

Сохранённый mapping model_id → group_id задаёт состав групп.
Участник, чей fingerprint (fraction, reset) расходится с большинством,
выбрасывается в отдельную группу, mapping обновляется.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from loguru import logger

from quota_waker.telemetry.models import ModelQuotaRecord, QuotaGroup


@dataclass(frozen=True)
class GroupingResult:
    groups: tuple[QuotaGroup, ...]
    mappings: dict[str, str]
    changed: bool


def fingerprint(record: ModelQuotaRecord) -> str:
    """Fraction с точностью 1e-6 + reset в миллисекундах."""
    reset_ms = int(record.reset_time.timestamp() * 1000)
    return f"{record.remaining_fraction:.6f}_{reset_ms}"


def _canonical_fingerprint(members: Sequence[ModelQuotaRecord]) -> str:
    """Самый частый fingerprint. При равенстве — встреченный первым."""
    counts: dict[str, int] = {}
    for member in members:
        fp = fingerprint(member)
        counts[fp] = counts.get(fp, 0) + 1

    best_fp = ""
    best_count = 0
    for fp, count in counts.items():
        if count > best_count:
            best_fp, best_count = fp, count
    return best_fp


def _vote_name(members: Sequence[ModelQuotaRecord], custom_names: dict[str, str]) -> str | None:
    """Имя, набравшее больше голосов участников. При равенстве — первое достигшее максимума."""
    votes: dict[str, int] = {}
    winner: str | None = None
    winner_votes = 0
    for member in members:
        name = custom_names.get(member.model_id)
        if not name:
            continue
        votes[name] = votes.get(name, 0) + 1
        if votes[name] > winner_votes:
            winner, winner_votes = name, votes[name]
    return winner


def build_groups(
    records: Sequence[ModelQuotaRecord],
    mappings: dict[str, str],
    custom_names: dict[str, str],
) -> GroupingResult:
    """
    Собирает группы по mapping'у с консенсусной проверкой.

    Немапленные модели — одиночные группы. Порядок групп — по минимальному
    индексу участника в исходном списке.
    """
    mappings = dict(mappings)
    changed = False
    position = {record.model_id: index for index, record in enumerate(records)}

    # (kind, id): одиночная группа не сливается с чужой группой того же имени
    buckets: dict[tuple[str, str], list[ModelQuotaRecord]] = {}
    for record in records:
        group_id = mappings.get(record.model_id)
        key = ("group", group_id) if group_id else ("single", record.model_id)
        buckets.setdefault(key, []).append(record)

    for key, members in list(buckets.items()):
        if len(members) < 2:
            continue
        canonical = _canonical_fingerprint(members)
        conforming = [m for m in members if fingerprint(m) == canonical]
        if len(conforming) == len(members):
            continue

        buckets[key] = conforming
        for member in members:
            if fingerprint(member) == canonical:
                continue
            mappings.pop(member.model_id, None)
            buckets[("single", member.model_id)] = [member]
            changed = True
            logger.info(f"Model {member.model_id} ejected from group {key[1]}: quota diverged")

    groups: list[tuple[int, QuotaGroup]] = []
    for counter, ((_, group_id), members) in enumerate(buckets.items(), start=1):
        name = _vote_name(members, custom_names)
        if not name:
            name = members[0].label if len(members) == 1 else f"Group {counter}"
        group = QuotaGroup(
            group_id=group_id,
            name=name,
            model_ids=tuple(m.model_id for m in members),
            remaining_fraction=min(m.remaining_fraction for m in members),
            reset_time=members[0].reset_time,
        )
        groups.append((min(position[m.model_id] for m in members), group))

    groups.sort(key=lambda item: item[0])
    return GroupingResult(
        groups=tuple(group for _, group in groups),
        mappings=mappings,
        changed=changed,
    )


# ==================== Auto mapping ====================


def calculate_group_mappings(records: Sequence[ModelQuotaRecord]) -> dict[str, str]:
    """
    Mapping по текущим fingerprint'ам.

    Если все модели схлопнулись в одну группу (например, все квоты полные),
    такой результат неинформативен — используем группировку по семействам.
    """
    by_fingerprint: dict[str, list[str]] = {}
    for record in records:
        by_fingerprint.setdefault(fingerprint(record), []).append(record.model_id)

    if len(by_fingerprint) == 1 and len(records) > 1:
        logger.info("Auto-grouping degenerate (all quotas identical), falling back to family grouping")
        return group_by_family(records)

    return _stable_mapping(by_fingerprint.values())


def _stable_mapping(member_lists) -> dict[str, str]:
    mappings: dict[str, str] = {}
    for model_ids in member_lists:
        group_id = "_".join(sorted(model_ids))
        for model_id in model_ids:
            mappings[model_id] = group_id
    return mappings


def _match_text(value: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[_-]+", " ", value.lower())).strip()


_GEMINI_PRO_ID = re.compile(r"^gemini-\d+(?:\.\d+)?-pro-(high|low)(?:-|$)")
_GEMINI_PRO_LABEL = re.compile(r"^gemini \d+(?:\.\d+)? pro(?: \((high|low)\)| (high|low))\b")
_GEMINI_FLASH_ID = re.compile(r"^gemini-\d+(?:\.\d+)?-flash(?:-|$)")
_GEMINI_FLASH_LABEL = re.compile(r"^gemini \d+(?:\.\d+)? flash\b")
_GEMINI_IMAGE_ID = re.compile(r"^gemini-\d+(?:\.\d+)?-pro-image(?:-|$)")
_GEMINI_IMAGE_LABEL = re.compile(r"^gemini \d+(?:\.\d+)? pro image\b")


def _is_claude(model_id: str, label: str) -> bool:
    return model_id.startswith(("claude-", "model_claude")) or label.startswith("claude ")


# (имя семейства, известные id, matcher по id/label) — порядок проверки важен
_FAMILIES = (
    (
        "Claude",
        frozenset({
            "MODEL_CLAUDE_4_5_SONNET",
            "MODEL_CLAUDE_4_5_SONNET_THINKING",
            "MODEL_PLACEHOLDER_M12",
            "MODEL_PLACEHOLDER_M26",
            "MODEL_PLACEHOLDER_M35",
            "MODEL_OPENAI_GPT_OSS_120B_MEDIUM",
        }),
        _is_claude,
    ),
    (
        "Gemini Pro",
        frozenset({"MODEL_PLACEHOLDER_M8", "MODEL_PLACEHOLDER_M7", "MODEL_PLACEHOLDER_M36", "MODEL_PLACEHOLDER_M37"}),
        lambda i, l: bool(_GEMINI_PRO_ID.match(i) or _GEMINI_PRO_LABEL.match(l)),
    ),
    (
        "Gemini Flash",
        frozenset({"MODEL_PLACEHOLDER_M18"}),
        lambda i, l: bool(_GEMINI_FLASH_ID.match(i) or _GEMINI_FLASH_LABEL.match(l)),
    ),
    (
        "Gemini Image",
        frozenset({"MODEL_PLACEHOLDER_M9"}),
        lambda i, l: bool(_GEMINI_IMAGE_ID.match(i) or _GEMINI_IMAGE_LABEL.match(l)),
    ),
)


def group_by_family(records: Sequence[ModelQuotaRecord]) -> dict[str, str]:
    """Фиксированная группировка по семействам моделей (Claude, Gemini Pro/Flash/Image, Other)."""
    families: dict[str, list[str]] = {}
    for record in records:
        model_id = record.model_id
        id_lower = model_id.lower()
        label = _match_text(record.label or model_id)
        family = "Other"
        for name, ids, matcher in _FAMILIES:
            if model_id in ids or matcher(id_lower, label):
                family = name
                break
        families.setdefault(family, []).append(model_id)
    return _stable_mapping(families.values())
