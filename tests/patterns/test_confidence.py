"""
Unit tests for pattern_guard.patterns.confidence and pattern records.
"""

from __future__ import annotations

import numpy as np
import pytest

from pattern_guard.patterns.confidence import ConfidenceModel, centroid_of, cohesion_of
from pattern_guard.patterns.models import Category, Pattern, make_pattern_id

DAY = 86400.0


class TestConfidenceModel:

    def test_monotone_in_size(self):
        model = ConfidenceModel()
        scores = [model.score(n, 0.9, 0.0) for n in (1, 2, 3, 5, 10)]
        assert scores == sorted(scores)
        assert len(set(scores)) == len(scores)

    def test_monotone_in_cohesion(self):
        model = ConfidenceModel()
        assert model.score(5, 0.95, 0.0) > model.score(5, 0.7, 0.0)

    def test_decays_with_age(self):
        model = ConfidenceModel(half_life_days=10)
        fresh = model.score(5, 0.9, 0.0)
        assert model.score(5, 0.9, 10 * DAY) == pytest.approx(fresh / 2)
        assert model.score(5, 0.9, 20 * DAY) == pytest.approx(fresh / 4)

    def test_bounded(self):
        model = ConfidenceModel()
        assert model.score(0, 0.9, 0.0) == 0.0
        assert 0.0 <= model.score(1000, 1.5, -5.0) <= 1.0

    def test_zero_weight_ignores_factor(self):
        model = ConfidenceModel(recency_weight=0.0)
        assert model.score(5, 0.9, 0.0) == model.score(5, 0.9, 365 * DAY)

    def test_effective_size(self):
        model = ConfidenceModel(degraded_weight=0.25)
        assert model.effective_size([False, True, True]) == pytest.approx(1.5)

    @pytest.mark.parametrize("kwargs", [
        {"size_weight": -1.0},
        {"degraded_weight": -0.1},
        {"size_scale": 0.0},
        {"half_life_days": -3.0},
    ])
    def test_invalid_parameters(self, kwargs):
        with pytest.raises(ValueError):
            ConfidenceModel(**kwargs)

    def test_from_config(self, config):
        config.CONFIDENCE["half_life_days"] = 7.0
        assert ConfidenceModel.from_config(config).half_life_days == 7.0


class TestGeometry:

    def test_centroid_is_unit(self):
        vectors = np.array([[1.0, 0.0], [0.0, 1.0]], dtype=np.float32)
        centroid = centroid_of(vectors)
        assert np.isclose(np.linalg.norm(centroid), 1.0)
        assert np.allclose(centroid, [np.sqrt(0.5), np.sqrt(0.5)])

    def test_cohesion(self):
        same = np.array([[1.0, 0.0], [1.0, 0.0]], dtype=np.float32)
        assert cohesion_of(same, centroid_of(same)) == pytest.approx(1.0)
        opposite = np.array([[1.0, 0.0], [-1.0, 0.0]], dtype=np.float32)
        assert cohesion_of(opposite, np.array([1.0, 0.0], dtype=np.float32)) == 0.0
        assert cohesion_of(np.zeros((0, 2), dtype=np.float32), np.array([1.0, 0.0])) == 0.0


class TestPatternRecord:

    def test_id_is_stable(self):
        assert make_pattern_id("abc") == make_pattern_id("abc")
        assert make_pattern_id("abc").startswith("pat_")
        assert len(make_pattern_id("abc")) == 20

    def test_dict_roundtrip(self):
        pattern = Pattern(
            pattern_id="pat_1", name="database/fetch", category=Category.DATABASE,
            members=["a", "b"], centroid=np.array([0.6, 0.8], dtype=np.float32),
            confidence=0.7, first_seen=1.0, last_seen=2.0, name_locked=True,
        )
        restored = Pattern.from_dict(pattern.to_dict())
        assert restored == pattern
        assert np.allclose(restored.centroid, pattern.centroid)

    def test_summary_hides_centroid(self):
        pattern = Pattern("pat_1", "x", Category.API, members=["a", "b", "c"])
        summary = pattern.summary()
        assert "centroid" not in summary
        assert summary["usage_count"] == 3
        assert summary["category"] == "api"

    def test_active(self):
        assert not Pattern("p", "x", Category.API).active
        assert Pattern("p", "x", Category.API, members=["a"]).active
        assert not Pattern("p", "x", Category.API, members=["a"], archived=True).active
