"""Regex rule tables for language selection and conversational intents.

Rules are plain data: ``(pattern, tag)`` pairs evaluated in order, so a
deployment can swap the tables without touching the conversation logic.
"""
import re
from typing import Iterable, Optional, Sequence, Tuple

Rule = Tuple[str, str]

LANGUAGE_RULES: Sequence[Rule] = (
    (r"\b(français|francais|french|fr)\b", "fr"),
    (r"\b(english|en|anglais)\b", "en"),
)

INTENT_RULES: Sequence[Rule] = (
    (r"\b(lister|liste|affiche|montrer|montre|donne|donnez|afficher|list|show|display)\b.*\b(ressources|resources)\b",
     "list_resources"),
    (r"\b(toutes|tout|liste complète|all)\b.*\b(ressources|resources)\b", "list_resources"),
    (r"\bressources du site\b|\bressources disponibles\b|\bsur ce site\b|\bavailable resources\b",
     "list_resources"),
)

AFFIRMATIVE_RULES: Sequence[Rule] = (
    (r"\b(oui|yes|yeah|yep|ouais|sure|bien sûr|bien sur|d'accord|ok|okay|bien|avec plaisir|please)\b",
     "yes"),
)

BARE_REPLIES = frozenset({"oui", "non", "yes", "no", "ok"})

_COMPILED: dict = {}


def _compiled(pattern: str) -> "re.Pattern[str]":
    rx = _COMPILED.get(pattern)
    if rx is None:
        rx = re.compile(pattern, re.IGNORECASE | re.UNICODE)
        _COMPILED[pattern] = rx
    return rx


def match_rules(text: str, rules: Iterable[Rule]) -> Optional[str]:
    """Return the tag of the first rule whose pattern matches ``text``."""
    norm = text.strip().lower()
    for pattern, tag in rules:
        if _compiled(pattern).search(norm):
            return tag
    return None


def detect_language(text: str, rules: Iterable[Rule] = LANGUAGE_RULES) -> Optional[str]:
    return match_rules(text, rules)


def wants_resource_list(text: str, rules: Iterable[Rule] = INTENT_RULES) -> bool:
    return match_rules(text, rules) == "list_resources"


def is_affirmative(text: str, rules: Iterable[Rule] = AFFIRMATIVE_RULES) -> bool:
    return match_rules(text, rules) == "yes"


def is_substantive(text: str) -> bool:
    norm = text.strip().lower()
    return bool(norm) and norm not in BARE_REPLIES
