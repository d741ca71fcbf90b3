"""URL rule matching against categorized site patterns.

Patterns are restricted globs: ``*`` matches any sequence, everything else
is literal. A pattern must match the whole URL. No network access or
page inspection - pure string matching, safe to run on every navigation.
"""

import logging
import re
from collections.abc import Iterable, Mapping
from functools import lru_cache
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from trafficlight.policies.models import (
    ACADEMIC_PLATFORMS,
    AI_WEBSITES,
    CATEGORY_TIERS,
    Rule,
    RuleSet,
)
from trafficlight.models import Tier

logger = logging.getLogger(__name__)

BUILTIN_PATTERNS: dict[str, list[tuple[str, str]]] = {
    AI_WEBSITES: [
        ("ChatGPT", "*.openai.com/*"),
        ("ChatGPT", "*chatgpt.com/*"),
        ("Claude", "*claude.ai/*"),
        ("Gemini", "*gemini.google.com/*"),
        ("Bard", "*bard.google.com/*"),
        ("Copilot", "*copilot.microsoft.com/*"),
        ("Perplexity", "*perplexity.ai/*"),
        ("Poe", "*poe.com/*"),
        ("Character.AI", "*character.ai/*"),
        ("Jasper", "*jasper.ai/*"),
        ("QuillBot", "*quillbot.com/*"),
        ("DeepSeek", "*chat.deepseek.com/*"),
    ],
    ACADEMIC_PLATFORMS: [
        ("Canvas", "*.instructure.com/*"),
        ("Blackboard", "*.blackboard.com/*"),
        ("Moodle", "*moodle*"),
        ("Google Classroom", "*classroom.google.com/*"),
        ("Turnitin", "*turnitin.com/*"),
        ("Gradescope", "*gradescope.com/*"),
        ("Schoology", "*schoology.com/*"),
        ("Brightspace", "*.brightspace.com/*"),
    ],
}


def _builtin_rules() -> RuleSet:
    return {
        category: tuple(
            Rule(name=name, tier=CATEGORY_TIERS.get(category, Tier.YELLOW), pattern=pattern)
            for name, pattern in patterns
        )
        for category, patterns in BUILTIN_PATTERNS.items()
    }


BUILTIN_RULES: RuleSet = _builtin_rules()


@lru_cache(maxsize=1024)
def compile_pattern(pattern: str) -> Optional[re.Pattern[str]]:
    """Compile a glob pattern into an anchored regex.

    Returns None for patterns that cannot be compiled; such rules never match.
    """
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    try:
        return re.compile(regex, re.DOTALL)
    except re.error as e:
        logger.debug(f"Ignoring unusable pattern {pattern!r}: {e}")
        return None


def normalize_url(url: str) -> str:
    """Give bare-origin URLs the trailing slash browsers report.

    ``https://chat.openai.com`` -> ``https://chat.openai.com/``
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if parts.scheme and parts.netloc and not parts.path:
        return urlunsplit((parts.scheme, parts.netloc, "/", parts.query, parts.fragment))
    return url


def matches(url: str, pattern: str) -> bool:
    """Check whether a glob pattern matches the entire URL."""
    compiled = compile_pattern(pattern)
    if compiled is None:
        return False
    return compiled.fullmatch(url) is not None


def classify_url(url: str, rules: Iterable[Rule]) -> Optional[Rule]:
    """Return the first rule whose pattern fully matches the URL.

    Args:
        url: URL to classify
        rules: Rules in configured order

    Returns:
        First matching Rule, or None if nothing matches
    """
    url = normalize_url(url)
    for rule in rules:
        if matches(url, rule.pattern):
            return rule
    return None


def rules_from_dicts(category: str, items: Iterable[dict]) -> tuple[Rule, ...]:
    """Convert raw rule dicts (from config or storage) into Rules.

    Entries without a string pattern are dropped.
    """
    default_tier = CATEGORY_TIERS.get(category, Tier.YELLOW)
    rules = []
    for item in items:
        if not isinstance(item, Mapping) or not isinstance(item.get("pattern"), str) or not item["pattern"]:
            logger.warning(f"Skipping malformed {category} rule: {item!r}")
            continue
        try:
            rules.append(Rule.from_dict(dict(item), default_tier))
        except ValueError as e:
            logger.warning(f"Skipping {category} rule with bad tier: {e}")
    return tuple(rules)


def build_rule_set(overrides: Optional[Mapping[str, Iterable[dict]]] = None) -> RuleSet:
    """Merge built-in rules with user overrides.

    Overrides replace the built-in list of the same category wholesale;
    categories without an override keep the built-ins.
    """
    rule_set: RuleSet = dict(BUILTIN_RULES)
    for category, items in (overrides or {}).items():
        rule_set[category] = rules_from_dicts(category, items)
    return rule_set


def rule_set_to_dicts(rule_set: RuleSet) -> dict[str, list[dict]]:
    """Serialize a rule set for display or export."""
    return {category: [rule.to_dict() for rule in rules] for category, rules in rule_set.items()}
