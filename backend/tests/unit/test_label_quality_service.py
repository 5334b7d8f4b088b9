"""Tests for label quality assessment and evergreen heuristics."""

import pytest

from trendwatch.services.label_quality_service import (
    assess_label,
    classify_entity_type,
    evergreen_penalty,
    generate_fallback_label,
    is_event_phrase,
    is_evergreen_topic,
)


@pytest.mark.parametrize(
    "label,expected",
    [
        ("Senate Passes Healthcare Bill", True),
        ("Jane Doe Healthcare Bill", True),
        ("Jane Doe", False),
        ("Tariffs", False),
    ],
)
def test_is_event_phrase(label, expected):
    assert is_event_phrase(label) is expected


def test_claimed_event_phrase_is_kept_when_valid():
    assessment = assess_label("Jane Doe Healthcare Bill", "event_phrase")
    assert assessment.label_quality == "event_phrase"
    assert assessment.label_source == "metadata_event_phrase"
    assert not assessment.downgraded


def test_false_event_phrase_claim_falls_back_to_headline():
    assessment = assess_label("Jane Doe", "event_phrase", headline="Jane Doe blocks Senate healthcare vote")

    assert assessment.downgraded
    assert assessment.label_quality == "fallback_generated"
    assert assessment.label == "Jane Doe Blocks Senate Healthcare"
    assert assessment.label_source == "headline_fallback_after_downgrade"


def test_entity_without_headline_stays_entity_only():
    assessment = assess_label("Jane Doe")
    assert assessment.label_quality == "entity_only"
    assert not assessment.is_event_phrase


def test_fallback_uses_event_noun_when_no_verb_follows_entity():
    assert generate_fallback_label("Crowds gather outside the port during the harbor protest", "Port") == "Port Protest"
    assert generate_fallback_label("short", "Port") is None


def test_evergreen_topics():
    assert is_evergreen_topic("Trump", 0.0, 0.0)
    assert is_evergreen_topic("county budget", 3.0, 3.1)
    assert not is_evergreen_topic("port strike", 0.1, 0.1)


@pytest.mark.parametrize(
    "args,expected",
    [
        ((False, 0.0, True), 1.0),
        ((False, 0.0, True, True), 0.15),
        ((True, 9.0, True), 0.80),
        ((True, 4.5, True), 0.20),
        ((True, 1.0, True), 0.05),
        ((True, 1.0, False), 0.08),
    ],
)
def test_evergreen_penalty(args, expected):
    assert evergreen_penalty(*args) == pytest.approx(expected)


@pytest.mark.parametrize(
    "label,expected",
    [
        ("FBI", "organization"),
        ("Jane Doe", "person"),
        ("Senate Passes Healthcare Bill", "legislation"),
        ("Port Workers Strike", "event"),
        ("minimum wage", "topic"),
    ],
)
def test_classify_entity_type(label, expected):
    assert classify_entity_type(label) == expected
