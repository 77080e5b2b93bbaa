"""
Scoring configuration tests: weight-set validation, decision thresholds,
built-in profiles and the profile registry.
"""
import json

import pytest

from app.core.errors import InvalidWeights, NotFound, OutOfRange
from app.scoring.profiles import (
    F1_MVP,
    UK_STUDENT,
    ProfileRegistry,
    ScoringProfile,
    profile_from_config,
)
from app.scoring.weights import DecisionThresholds, WeightSet


class TestWeightSet:

    def test_valid_set(self):
        ws = WeightSet("speech", {"fluency": 0.5, "clarity": 0.3, "tone": 0.2})
        assert ws["fluency"] == 0.5
        assert ws.combine({"fluency": 100, "clarity": 50, "tone": 0}) == pytest.approx(65.0)

    def test_sum_below_one_rejected(self):
        with pytest.raises(InvalidWeights):
            WeightSet("content", {"a": 0.5, "b": 0.4})

    def test_sum_above_one_rejected(self):
        with pytest.raises(InvalidWeights):
            WeightSet("content", {"a": 0.6, "b": 0.5})

    def test_tolerance(self):
        WeightSet("thirds", {"a": 1 / 3, "b": 1 / 3, "c": 1 / 3})

    def test_negative_weight_rejected(self):
        with pytest.raises(InvalidWeights):
            WeightSet("content", {"a": 1.5, "b": -0.5})

    def test_empty_rejected(self):
        with pytest.raises(InvalidWeights):
            WeightSet("content", {})

    def test_immutable(self):
        source = {"a": 0.5, "b": 0.5}
        ws = WeightSet("pair", source)
        source["a"] = 0.9
        assert ws["a"] == 0.5
        with pytest.raises(TypeError):
            ws.weights["a"] = 0.9

    def test_combine_missing_key(self):
        ws = WeightSet("pair", {"a": 0.5, "b": 0.5})
        with pytest.raises(OutOfRange):
            ws.combine({"a": 50})


class TestDecisionThresholds:

    def test_cutoffs_must_increase(self):
        with pytest.raises(ValueError):
            DecisionThresholds("red", ((80.0, "amber"), (65.0, "green")))

    def test_labels_unique(self):
        with pytest.raises(ValueError):
            DecisionThresholds("red", ((65.0, "red"),))

    def test_labels_worst_to_best(self):
        assert UK_STUDENT.thresholds.labels == ("rejected", "borderline", "accepted")


class TestProfiles:

    def test_builtin_weights(self):
        assert F1_MVP.answer_weights["content"] == 0.7
        assert F1_MVP.content_weights["selfConsistency"] == 0.25
        assert UK_STUDENT.content_weights["specificity"] == 0.20
        assert len(UK_STUDENT.content_weights.keys()) == 7

    def test_answer_weights_must_cover_categories(self):
        with pytest.raises(InvalidWeights):
            ScoringProfile(
                name="broken",
                answer_weights=WeightSet("answer", {"content": 0.8, "speech": 0.2}),
                content_weights=F1_MVP.content_weights,
                speech_weights=F1_MVP.speech_weights,
                body_weights=F1_MVP.body_weights,
                thresholds=F1_MVP.thresholds,
            )

    def test_classification_weights_validated(self):
        with pytest.raises(InvalidWeights):
            profile_from_config("bad", {"classification_weights": {"session": 0.9, "min_dimension": 0.2}})

    def test_from_config(self):
        profile = profile_from_config("ca_student", {
            "content_weights": {"relevance": 0.5, "specificity": 0.5},
            "thresholds": {"floor": "fail", "bands": [[60, "pass"]]},
            "rules": ["brevity"],
        })
        assert profile.thresholds.classify(59) == "fail"
        assert [r.code for r in profile.session_rules] == ["brevity"]
        assert profile.speech_weights["fluency"] == 0.5

    def test_from_config_invalid_weights(self):
        with pytest.raises(InvalidWeights):
            profile_from_config("bad", {"content_weights": {"relevance": 0.5, "specificity": 0.4}})

    def test_from_config_unknown_rule(self):
        with pytest.raises(ValueError):
            profile_from_config("bad", {"rules": ["no_such_rule"]})


class TestProfileRegistry:

    def test_resolve_order(self):
        registry = ProfileRegistry()
        assert registry.resolve().name == "f1_mvp"
        assert registry.resolve(route="uk_student").name == "uk_student"
        assert registry.resolve(route="usa_f1").name == "f1_mvp"
        assert registry.resolve(explicit="uk_student", route="usa_f1").name == "uk_student"

    def test_unknown_profile(self):
        with pytest.raises(NotFound):
            ProfileRegistry().get("mars_student")

    def test_unknown_default(self):
        with pytest.raises(ValueError):
            ProfileRegistry(default="mars_student")

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "profiles.json"
        path.write_text(json.dumps({
            "ca_student": {"thresholds": {"floor": "fail", "bands": [[60, "pass"]]}},
        }))
        registry = ProfileRegistry.load(str(path), default="ca_student")
        assert registry.names == ["ca_student", "f1_mvp", "uk_student"]
        assert registry.resolve().name == "ca_student"
