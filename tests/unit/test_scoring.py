"""Tests for confidence scoring."""

import pytest

from fixtures.builders import make_response
from opscrew.models import AgentPersona, ConfidenceLevel
from opscrew.scoring import HeuristicConfidenceScorer, confidence_level


@pytest.fixture
def scorer():
    return HeuristicConfidenceScorer()


def test_short_reply_without_persona(scorer):
    response = make_response("ok", finish_reason=None)
    assert scorer.score(response, None) == pytest.approx(0.5)


def test_long_complete_reply_scores_high(scorer):
    persona = AgentPersona(max_tokens=1000)
    response = make_response("x" * 600, finish_reason="stop", total_tokens=900)
    # 0.5 + 0.2 + 0.1 (length) + 0.1 (tokens) + 0.1 (stop)
    assert scorer.score(response, persona) == pytest.approx(1.0)


def test_truncated_reply_scores_low(scorer):
    persona = AgentPersona(max_tokens=1000)
    response = make_response("short", finish_reason="length", total_tokens=100)
    # 0.5 - 0.1 (tokens) - 0.2 (length)
    assert scorer.score(response, persona) == pytest.approx(0.2)


@pytest.mark.parametrize(
    "content,finish_reason,total_tokens",
    [
        ("", "length", 0),
        ("y" * 2000, "stop", 5000),
        ("z" * 150, "content_filter", 500),
    ],
)
def test_score_is_bounded(scorer, content, finish_reason, total_tokens):
    response = make_response(content, finish_reason=finish_reason, total_tokens=total_tokens)
    score = scorer.score(response, AgentPersona(max_tokens=1000))
    assert 0.0 <= score <= 1.0


@pytest.mark.parametrize(
    "score,level",
    [
        (0.95, ConfidenceLevel.VERY_HIGH),
        (0.8, ConfidenceLevel.VERY_HIGH),
        (0.7, ConfidenceLevel.HIGH),
        (0.6, ConfidenceLevel.HIGH),
        (0.5, ConfidenceLevel.MEDIUM),
        (0.39, ConfidenceLevel.LOW),
    ],
)
def test_confidence_level_thresholds(score, level):
    assert confidence_level(score) == level
