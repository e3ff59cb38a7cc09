"""Tests for the rule matcher and precomputed responses."""

import json
import re

import pytest

from query_gate.core.rule_engine import (
    DEFAULT_RULES,
    PrecomputedResponse,
    Rule,
    RuleEngine,
    load_precomputed_responses,
)


class TestRuleMatching:
    """Tests for RuleEngine.match / find."""

    def test_greeting(self):
        """A bare greeting is answered by the greeting rule."""
        engine = RuleEngine()
        response = engine.match("Hi")
        assert response is not None
        assert response.startswith("Hello! I'm your Shining Motors AI assistant")

    def test_greeting_tolerates_trailing_punctuation_and_whitespace(self):
        """Unlike a bare ``^hi$`` pattern on the raw text, "Hi!" and " hey. " still greet."""
        engine = RuleEngine()
        assert engine.find("Hi!").rule_name == "greeting"
        assert engine.find("hello!").rule_name == "greeting"
        assert engine.find("  hey.  ").rule_name == "greeting"
        assert engine.find("hi?") is None

    def test_greeting_is_anchored(self):
        """A greeting inside a longer sentence does not match the greeting rule."""
        engine = RuleEngine()
        found = engine.find("hi there, what colours does the roof rack come in")
        assert found is None or found.rule_name != "greeting"

    def test_return_policy(self):
        engine = RuleEngine()
        response = engine.match("What is your return policy?")
        assert "30 days" in response

    def test_case_insensitive(self):
        engine = RuleEngine()
        assert engine.find("RETURN POLICY please").rule_name == "return_policy"

    def test_track_my_order(self):
        engine = RuleEngine()
        assert engine.find("Track my order").rule_name == "order_tracking"

    def test_no_match_returns_none(self):
        engine = RuleEngine()
        assert engine.match("Compare the brake pads from Brembo and EBC") is None

    def test_higher_priority_wins(self):
        """When two rules match, the higher-priority one answers."""
        engine = RuleEngine()
        # "thanks" (3) and "contact support" (10) both match
        found = engine.find("thanks, how do I contact support?")
        assert found.rule_name == "contact_support"

    def test_equal_priority_keeps_configuration_order(self):
        """Ties are resolved by configuration order."""
        first = Rule("first", (re.compile("shared", re.I),), "one", priority=5)
        second = Rule("second", (re.compile("shared", re.I),), "two", priority=5)
        engine = RuleEngine(rules=[first, second])
        assert engine.match("shared words") == "one"

    def test_callable_response(self):
        rule = Rule(
            "echo",
            (re.compile(r"part (\w+)", re.I),),
            lambda m: f"Looking up part {m.group(1)}",
            priority=1,
        )
        engine = RuleEngine(rules=[rule])
        assert engine.match("do you stock part X200") == "Looking up part X200"

    def test_requires_auth_flag_is_reported(self):
        rule = Rule("orders", (re.compile("my orders", re.I),), "...", priority=1, requires_auth=True)
        engine = RuleEngine(rules=[rule])
        assert engine.find("show my orders").requires_auth is True

    def test_all_rules_in_evaluation_order(self):
        engine = RuleEngine()
        priorities = [rule.priority for rule in engine.all_rules()]
        assert priorities == sorted(priorities, reverse=True)
        assert len(engine.all_rules()) == len(DEFAULT_RULES)


class TestPrecomputedResponses:
    """Tests for precomputed responses checked before the rules."""

    def test_precomputed_checked_before_rules(self):
        engine = RuleEngine(
            precomputed=[PrecomputedResponse("return policy", "Custom returns answer", 1)]
        )
        found = engine.find("What is your Return Policy?")
        assert found.precomputed is True
        assert found.response == "Custom returns answer"

    def test_precomputed_priority_order(self):
        engine = RuleEngine(
            precomputed=[
                PrecomputedResponse("brake", "low", 1),
                PrecomputedResponse("brake pads", "high", 5),
            ]
        )
        assert engine.match("need brake pads") == "high"

    def test_load_from_json_skips_inactive(self, tmp_path):
        path = tmp_path / "precomputed.json"
        path.write_text(
            json.dumps(
                [
                    {"pattern": "opening hours", "response": "9 to 5", "priority": 2},
                    {"pattern": "closed", "response": "never", "is_active": False},
                    {"pattern": "", "response": "missing pattern"},
                ]
            )
        )
        entries = load_precomputed_responses(path)
        assert [e.pattern for e in entries] == ["opening hours"]
        assert entries[0].priority == 2


class TestIsLikelyRuleBased:
    """Tests for the advisory pre-check."""

    @pytest.mark.parametrize("query", ["ok", "refund for my wheels please, they wobble"])
    def test_likely(self, query):
        assert RuleEngine().is_likely_rule_based(query)

    def test_unlikely(self):
        assert not RuleEngine().is_likely_rule_based(
            "Compare tyre compounds for autocross in cold weather"
        )
