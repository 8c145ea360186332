import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Tuple

import yaml

from .errors import ConfigError

log = logging.getLogger(__name__)

DEFAULT_TRIGGERS_PATH = Path(__file__).with_name("triggers.yaml")
CATEGORY_ORDER = ("payment", "setup", "command", "stealth", "identity", "greeting")
INTENT_PRECEDENCE = ("payment", "setup", "stealth", "command")

AI_LENGTH_THRESHOLD = 100
AI_HISTORY_THRESHOLD = 10

CURRENCY_AMOUNT = re.compile(
    r"\$\s?(\d+(?:[.,]\d+)?)|(\d+(?:[.,]\d+)?)\s*(?:usd|usdc|dollars?)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class TriggerCategory:
    name: str
    patterns: Tuple[Pattern[str], ...]

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)


@dataclass(frozen=True)
class Analysis:
    primary_trigger: Optional[str]
    triggers: Tuple[str, ...] = field(default_factory=tuple)
    requires_ai: bool = False
    is_complex: bool = False
    priority: int = 0
    intent: str = "general"

    def has(self, category: str) -> bool:
        return category in self.triggers


def extract_payment_amount(text: str) -> Optional[str]:
    """Return the first currency amount exactly as written, e.g. ``12.50``."""
    match = CURRENCY_AMOUNT.search(text)
    if not match:
        return None
    return match.group(1) or match.group(2)


def _read_triggers(path: Path) -> Dict[str, List[str]]:
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse trigger file {path}: {exc}") from exc
    sections: Dict[str, List[str]] = {}
    if isinstance(raw, dict):
        for key, value in raw.items():
            slug = str(key).strip().lower()
            if isinstance(value, (list, tuple)):
                lines = [str(item) for item in value if str(item or "").strip()]
            elif isinstance(value, str) and value.strip():
                lines = [value]
            else:
                lines = []
            if lines:
                sections[slug] = lines
    return sections


def _compile(name: str, sources: List[str]) -> TriggerCategory:
    patterns = []
    for source in sources:
        try:
            patterns.append(re.compile(source, re.IGNORECASE))
        except re.error as exc:
            raise ConfigError(f"invalid {name} trigger {source!r}: {exc}") from exc
    return TriggerCategory(name=name, patterns=tuple(patterns))


class IntentClassifier:
    """Ordered trigger categories; the first matching category wins."""

    def __init__(
        self,
        *,
        default_path: Path = DEFAULT_TRIGGERS_PATH,
        override_path: Optional[Path] = None,
    ) -> None:
        self.default_path = default_path
        self.override_path = override_path
        self.categories = self._load()

    def _load(self) -> List[TriggerCategory]:
        merged = dict(_read_triggers(self.default_path))
        if self.override_path:
            for key, lines in _read_triggers(self.override_path).items():
                merged[key] = lines
        unknown = [key for key in merged if key not in CATEGORY_ORDER]
        if unknown:
            log.warning("Ignoring unknown trigger categories: %s", ", ".join(sorted(unknown)))
        return [_compile(name, merged[name]) for name in CATEGORY_ORDER if merged.get(name)]

    def category(self, name: str) -> Optional[TriggerCategory]:
        for category in self.categories:
            if category.name == name:
                return category
        return None

    def analyze(self, text: str, history_length: int = 0) -> Analysis:
        content = text.strip()
        triggers = tuple(c.name for c in self.categories if c.matches(content))
        primary = triggers[0] if triggers else None

        requires_ai = (
            len(content) > AI_LENGTH_THRESHOLD
            or not triggers
            or history_length > AI_HISTORY_THRESHOLD
        )
        is_complex = bool(
            CURRENCY_AMOUNT.search(content) or "payment" in triggers or "stealth" in triggers
        )
        intent = next((name for name in INTENT_PRECEDENCE if name in triggers), "general")
        return Analysis(
            primary_trigger=primary,
            triggers=triggers,
            requires_ai=requires_ai,
            is_complex=is_complex,
            priority=1 if is_complex else 0,
            intent=intent,
        )
