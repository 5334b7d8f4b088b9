"""
Label quality and evergreen heuristics.

A canonical label is either a specific event phrase ("Jane Doe Healthcare
Bill"), a bare entity ("Congress"), or a fallback phrase generated from a
headline when upstream only supplied the entity. Evergreen topics are the
perennial names and issues that are always in the news; they are penalized
and kept out of breaking classification unless their volume is extreme.
"""
from __future__ import annotations

import re
from typing import Optional

from ..domain.trend_scoring import LabelAssessment
from .topic_identity_normalization import canonical_topic_key, label_words

LABEL_QUALITIES = ("event_phrase", "entity_only", "fallback_generated")

ACTION_VERBS = frozenset({
    # Legislative
    "vote", "votes", "voted", "voting", "pass", "passes", "passed", "passing",
    "block", "blocks", "blocked", "reject", "rejects", "rejected",
    "approve", "approves", "approved", "sign", "signs", "signed", "signing",
    "veto", "vetoes", "vetoed", "filibuster", "filibustered", "introduce", "introduces", "introduced",
    # Executive
    "fire", "fires", "fired", "resign", "resigns", "resigned",
    "nominate", "nominates", "nominated", "appoint", "appoints", "appointed",
    "order", "orders", "ordered", "pardon", "pardons", "pardoned",
    "revoke", "revokes", "revoked",
    # Judicial
    "rule", "rules", "ruled", "overturn", "overturns", "overturned",
    "uphold", "upholds", "upheld", "strike", "strikes", "struck",
    "dismiss", "dismisses", "dismissed", "deny", "denies", "denied",
    # Enforcement
    "arrest", "arrests", "arrested", "indict", "indicts", "indicted",
    "sue", "sues", "sued", "charge", "charges", "charged",
    "convict", "convicted", "sentence", "sentenced", "raid", "raids", "raided",
    "deport", "deports", "deported", "detain", "detains", "detained",
    # Policy and conflict
    "announce", "announces", "announced", "launch", "launches", "launched",
    "ban", "bans", "banned", "sanction", "sanctioned", "threaten", "threatens", "threatened",
    "warn", "warns", "warned", "propose", "proposes", "proposed",
    "withdraw", "withdraws", "withdrew", "suspend", "suspends", "suspended",
    "cut", "cuts", "attack", "attacks", "attacked", "invade", "invades", "invaded",
    "collapse", "collapses", "collapsed", "halt", "halts", "halted",
    "escalate", "escalates", "escalated", "freeze", "freezes", "froze",
    # General
    "raise", "raises", "raised", "surge", "surges", "surged",
    "win", "wins", "won", "lose", "loses", "lost", "defeat", "defeats", "defeated",
    "confirm", "confirms", "confirmed", "release", "releases", "released",
    "reveal", "reveals", "revealed", "kill", "kills", "killed",
})

EVENT_NOUNS = frozenset({
    "ruling", "trial", "hearing", "verdict", "indictment", "conviction", "lawsuit",
    "injunction", "subpoena", "testimony", "sentencing", "vote", "bill", "election",
    "impeachment", "nomination", "confirmation", "veto", "filibuster", "shutdown",
    "debate", "speech", "summit", "rally", "resignation", "shooting", "protest",
    "crisis", "scandal", "attack", "bombing", "strike", "raid", "ceasefire", "invasion",
    "collapse", "evacuation", "explosion", "sanctions", "tariffs", "investigation",
    "probe", "audit", "deportation", "pardon", "ban", "order", "mandate", "regulation",
    "reform", "act", "amendment", "referendum",
})

_TITLE_WORDS = r"(?:President|Senator|Sen\.?|Rep\.?|Governor|Gov\.?|Mayor|Secretary|Director|Chief|Justice|Judge)"

ENTITY_ONLY_PATTERNS = (
    re.compile(r"^[A-Z][a-z]*$"),
    re.compile(r"^[A-Z][a-z]+\s+[A-Z][a-z]+$"),
    re.compile(rf"^{_TITLE_WORDS}\s+[A-Z][a-z]+$", re.IGNORECASE),
    re.compile(r"^[A-Z]{2,5}$"),
    re.compile(r"^The\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)?$"),
)

_FALLBACK_VERBS = (
    "passes?|blocks?|rejects?|approves?|signs?|fires?|resigns?|announces?|launches?|bans?|"
    "arrests?|indicts?|sues?|orders?|vetoes?|strikes?|rules?|overturns?|upholds?|halts?|"
    "suspends?|cuts?|threatens?|warns?|proposes?|withdraws?|raids?|deports?|detains?|pardons?|"
    "revokes?|nominates?|appoints?|dismisses?|denies?|charges?|attacks?|wins?|loses?|faces?|"
    "confirms?|reveals?|introduces?"
)
_FALLBACK_EVENT_NOUN = re.compile(
    r"\b(vote|bill|ruling|crisis|ban|tariffs?|probe|investigation|hearing|trial|arrest|firing|"
    r"resignation|indictment|verdict|sanctions?|ceasefire|attack|strike|raid|protest|scandal|"
    r"impeachment|shutdown|veto|deportation|pardon|order|mandate|summit|election|debate)\b",
    re.IGNORECASE,
)
FALLBACK_MAX_WORDS = 5
MIN_HEADLINE_LENGTH = 10

_EVERGREEN_LABELS = (
    # Figures always in the news
    "trump", "biden", "harris", "obama", "pelosi", "mcconnell", "schumer",
    "musk", "putin", "netanyahu", "zelensky", "xi jinping", "vance",
    # Institutions
    "white house", "pentagon", "state department", "justice department",
    "congress", "senate", "house", "supreme court", "capitol",
    # Geopolitics
    "gaza", "israel", "ukraine", "russia", "china", "taiwan", "iran",
    "nato", "european union", "middle east",
    # Recurring issues
    "immigration", "border", "economy", "inflation", "healthcare", "climate",
    "taxes", "election", "campaign", "polls", "voting", "tariffs", "trade",
    "democracy", "abortion", "guns",
)
EVERGREEN_TOPIC_KEYS = frozenset(canonical_topic_key(label) for label in _EVERGREEN_LABELS)

EVERGREEN_MIN_30D_RATE = 2.0
EVERGREEN_MIN_7D_RATE = 1.5
EVERGREEN_STABILITY_RATIO = 0.3
EVERGREEN_SINGLE_WORD_MIN_30D_RATE = 1.0
EVERGREEN_SINGLE_WORD_MIN_7D_RATE = 0.8
EVERGREEN_SINGLE_WORD_STABILITY_RATIO = 0.5

SINGLE_WORD_PENALTY = 0.15
# (z-score floor, multiplier) for evergreen topics, highest first
EVERGREEN_SPIKE_PENALTIES = ((8.0, 0.80), (6.0, 0.55), (5.0, 0.35), (4.0, 0.20))
EVERGREEN_QUIET_PENALTY_WITH_HISTORY = 0.05
EVERGREEN_QUIET_PENALTY_NO_HISTORY = 0.08

_LEGISLATION_WORDS = frozenset({"bill", "act", "amendment", "resolution", "law", "referendum"})


def has_verb_or_event_noun(label: str) -> bool:
    words = label_words(label)
    return any(word in ACTION_VERBS or word in EVENT_NOUNS for word in words)


def matches_entity_only_pattern(label: str) -> bool:
    text = (label or "").strip()
    return any(pattern.match(text) for pattern in ENTITY_ONLY_PATTERNS)


def is_event_phrase(label: str) -> bool:
    """2-6 words with at least one action verb or event noun."""
    words = (label or "").split()
    if len(words) < 2 or len(words) > 6:
        return False
    return has_verb_or_event_noun(label)


def is_single_word(label_or_key: str) -> bool:
    key = canonical_topic_key(label_or_key)
    return "_" not in key


def _title_case(words: list[str]) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)


def generate_fallback_label(headline: Optional[str], entity: str) -> Optional[str]:
    """Build an event phrase for ``entity`` from a headline, or None."""
    if not headline or len(headline) < MIN_HEADLINE_LENGTH or not entity:
        return None
    escaped = re.escape(entity.strip())

    patterns = (
        re.compile(rf"({escaped})\s+({_FALLBACK_VERBS})\s+(.+)", re.IGNORECASE),
        re.compile(rf"\b({escaped})\b.*?\b({_FALLBACK_VERBS})\b", re.IGNORECASE),
    )
    for pattern in patterns:
        match = pattern.search(headline)
        if not match:
            continue
        words = match.group(0).split()[:FALLBACK_MAX_WORDS]
        if len(words) >= 3:
            candidate = _title_case(words)
            if is_event_phrase(candidate):
                return candidate

    noun = _FALLBACK_EVENT_NOUN.search(headline)
    if noun:
        return f"{entity.strip()} {noun.group(1).capitalize()}"

    first_entity_word = entity.lower().split()[0]
    if first_entity_word in headline.lower():
        words = [word for word in headline.split() if len(word) > 1][:FALLBACK_MAX_WORDS]
        if len(words) >= 3:
            return _title_case(words)
    return None


def assess_label(label: str, claimed_quality: Optional[str] = None, headline: Optional[str] = None) -> LabelAssessment:
    """Validate an upstream label-quality hint and fall back to a headline-derived phrase.

    Claims of ``event_phrase`` that fail the verb/event-noun check are
    downgraded to ``entity_only``. Entity-only labels get a generated
    fallback phrase when the headline supports one.
    """
    single = is_single_word(label)
    passes = is_event_phrase(label)

    if claimed_quality == "fallback_generated":
        if passes:
            return LabelAssessment(label, "fallback_generated", True, single, label_source="fallback_generated")
        return LabelAssessment(label, "entity_only", False, single, downgraded=True, label_source="fallback_downgraded")

    if passes:
        source = "metadata_event_phrase" if claimed_quality == "event_phrase" else "detected_event_phrase"
        return LabelAssessment(label, "event_phrase", True, single, label_source=source)

    downgraded = claimed_quality == "event_phrase"
    fallback = generate_fallback_label(headline, label)
    if fallback:
        return LabelAssessment(
            fallback,
            "fallback_generated",
            True,
            single,
            downgraded=downgraded,
            label_source="headline_fallback_after_downgrade" if downgraded else "headline_fallback",
        )
    return LabelAssessment(
        label,
        "entity_only",
        False,
        single,
        downgraded=downgraded,
        label_source="event_phrase_downgraded" if downgraded else "entity_only",
    )


def is_evergreen_topic(topic_key: str, avg_hourly_7d: float, avg_hourly_30d: float) -> bool:
    """Explicit evergreen list, or a stable high mention rate across the 7d and 30d windows."""
    key = canonical_topic_key(topic_key)
    if key in EVERGREEN_TOPIC_KEYS:
        return True

    stability = abs(avg_hourly_7d - avg_hourly_30d) / max(avg_hourly_30d, 0.1)
    if (
        avg_hourly_30d >= EVERGREEN_MIN_30D_RATE
        and avg_hourly_7d >= EVERGREEN_MIN_7D_RATE
        and stability < EVERGREEN_STABILITY_RATIO
    ):
        return True
    if (
        is_single_word(key)
        and avg_hourly_30d >= EVERGREEN_SINGLE_WORD_MIN_30D_RATE
        and avg_hourly_7d >= EVERGREEN_SINGLE_WORD_MIN_7D_RATE
        and stability < EVERGREEN_SINGLE_WORD_STABILITY_RATIO
    ):
        return True
    return False


def evergreen_penalty(is_evergreen: bool, z_score: float, has_history: bool, single_word: bool = False) -> float:
    """Multiplier in (0, 1]; 1.0 means no penalty."""
    base = SINGLE_WORD_PENALTY if single_word else 1.0
    if not is_evergreen:
        return base
    for floor, multiplier in EVERGREEN_SPIKE_PENALTIES:
        if z_score > floor:
            return multiplier * base
    quiet = EVERGREEN_QUIET_PENALTY_WITH_HISTORY if has_history else EVERGREEN_QUIET_PENALTY_NO_HISTORY
    return quiet * base


def classify_entity_type(label: str) -> str:
    text = (label or "").strip()
    if is_event_phrase(text):
        words = set(label_words(text))
        return "legislation" if words & _LEGISLATION_WORDS else "event"
    if not matches_entity_only_pattern(text):
        return "topic"
    if re.fullmatch(r"[A-Z]{2,5}", text) or text.startswith("The "):
        return "organization"
    if " " in text:
        return "person"
    return "topic"
