#!/usr/bin/env python3
"""
Tests for the 168-hour baseline model
"""

from datetime import datetime, timedelta

import pytest

from sqm_controller.baseline import (
    TOTAL_BUCKETS,
    BaselineModel,
    CalibrationSample,
    blended_speed,
    bucket_for,
    calculate_baseline,
)
from sqm_controller.errors import ValidationError

MONDAY = datetime(2024, 1, 15, 18, 30)


def sample(when, download):
    return CalibrationSample.at(when, download_mbps=download, upload_mbps=35, latency_ms=18)


class TestBuckets:
    def test_monday_is_day_zero(self):
        assert bucket_for(MONDAY) == (0, 18)

    def test_sunday_is_day_six(self):
        assert bucket_for(datetime(2024, 1, 21, 23, 59)) == (6, 23)

    def test_sample_carries_bucket(self):
        assert sample(MONDAY, 250).bucket == (0, 18)


class TestStatistics:
    """Per-bucket statistics over retained samples"""

    def test_single_sample(self):
        stats = calculate_baseline(0, 18, [250.0], MONDAY)
        assert stats.mean == stats.median == stats.min == stats.max == 250.0
        assert stats.std_dev == 0.0
        assert stats.sample_count == 1

    def test_median_is_authoritative(self):
        """An outlier moves the mean, not the median"""
        stats = calculate_baseline(0, 18, [250.0, 255.0, 40.0], MONDAY)
        assert stats.median == 250.0
        assert stats.mean < stats.median
        assert stats.min == 40.0 and stats.max == 255.0

    def test_population_std_dev(self):
        stats = calculate_baseline(0, 18, [240.0, 260.0], MONDAY)
        assert stats.std_dev == pytest.approx(10.0)

    def test_no_samples_rejected(self):
        with pytest.raises(ValueError):
            calculate_baseline(0, 18, [], MONDAY)


class TestBlending:
    """Two-tier blend of measurement and baseline"""

    def test_below_threshold_uses_80_20(self):
        """230 < 260 * 0.9 = 234 -> 260*0.8 + 230*0.2"""
        assert blended_speed(230, 260) == pytest.approx(254.0)

    def test_within_threshold_uses_60_40(self):
        """240 >= 234 -> 260*0.6 + 240*0.4"""
        assert blended_speed(240, 260) == pytest.approx(252.0)

    def test_threshold_is_inclusive(self):
        assert blended_speed(234, 260) == pytest.approx(260 * 0.6 + 234 * 0.4)

    def test_custom_weights(self):
        assert blended_speed(100, 200, within_weight=0.5, below_weight=0.7) == pytest.approx(170.0)


class TestBaselineModel:
    def test_empty_model(self, baseline):
        assert len(baseline) == 0
        assert baseline.learning_progress() == 0.0
        assert baseline.lookup(MONDAY) is None
        assert baseline.baseline_speed(MONDAY) is None

    def test_add_sample_populates_bucket(self, baseline):
        stats = baseline.add_sample(sample(MONDAY, 250))
        assert stats.key == "0_18"
        assert baseline.baseline_speed(MONDAY) == 250.0
        assert baseline.get(0, 18).sample_count == 1
        assert baseline.collection_started == MONDAY

    def test_same_hour_next_week_shares_bucket(self, baseline):
        baseline.add_sample(sample(MONDAY, 240))
        baseline.add_sample(sample(MONDAY + timedelta(days=7), 260))
        assert len(baseline) == 1
        assert baseline.get(0, 18).median == 250.0

    def test_retention_drops_oldest(self):
        model = BaselineModel(retention=3)
        for speed in (100, 200, 300, 400):
            model.add_sample(sample(MONDAY, speed))
        stats = model.get(0, 18)
        assert stats.sample_count == 3
        assert stats.min == 200

    def test_invalid_retention(self):
        with pytest.raises(ValueError):
            BaselineModel(retention=0)

    def test_bad_bucket_rejected(self, baseline):
        bad = CalibrationSample(MONDAY, 7, 24, 250.0, 35.0, 18.0)
        with pytest.raises(ValidationError) as exc_info:
            baseline.add_sample(bad)
        assert len(exc_info.value.violations) == 2
        assert len(baseline) == 0

    def test_progress_monotonic_and_bounded(self, baseline):
        """Two passes over every hour of the week: 168 entries at most"""
        start = datetime(2024, 1, 15, 0, 0)
        previous = 0.0
        for hour in range(2 * TOTAL_BUCKETS):
            baseline.add_sample(sample(start + timedelta(hours=hour), 200 + hour % 50))
            progress = baseline.learning_progress()
            assert progress >= previous
            assert len(baseline) <= TOTAL_BUCKETS
            previous = progress
        assert baseline.is_complete()
        assert baseline.learning_progress() == pytest.approx(100.0)
        assert len(baseline.table()) == TOTAL_BUCKETS


class TestPersistence:
    """Flat {"day_hour": speed} export/import"""

    def test_export_is_median_per_slot(self, baseline):
        baseline.add_sample(sample(MONDAY, 240))
        baseline.add_sample(sample(MONDAY, 260))
        baseline.add_sample(sample(MONDAY, 300))
        baseline.add_sample(sample(datetime(2024, 1, 17, 3, 0), 280))
        assert baseline.export_flat() == {"0_18": 260.0, "2_3": 280.0}

    def test_import_export_keeps_medians(self, baseline):
        for offset, speed in enumerate((240, 250, 265, 270, 230)):
            baseline.add_sample(sample(MONDAY + timedelta(hours=offset * 5), speed))
            baseline.add_sample(sample(MONDAY + timedelta(hours=offset * 5, days=7), speed + 10))

        exported = baseline.export_flat()
        restored = BaselineModel()
        restored.import_flat(exported, when=MONDAY)
        assert restored.export_flat() == exported

    def test_import_replaces_table(self, baseline):
        baseline.add_sample(sample(MONDAY, 240))
        baseline.import_flat({"3_12": 180}, when=MONDAY)
        assert baseline.export_flat() == {"3_12": 180.0}

    def test_import_reports_every_problem(self, baseline):
        baseline.add_sample(sample(MONDAY, 240))
        with pytest.raises(ValidationError) as exc_info:
            baseline.import_flat({
                "0_1": 200,
                "bad": 200,
                "9_1": 200,
                "1_30": 200,
                "x_y": 200,
                "2_2": "fast",
                "3_3": -5,
            })
        assert len(exc_info.value.violations) == 6

        # Nothing changed
        assert baseline.export_flat() == {"0_18": 240.0}

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), "nan", "-inf"])
    def test_import_rejects_non_finite_speed(self, baseline, bad):
        baseline.import_flat({"0_1": 200, "0_2": 210}, when=MONDAY)
        with pytest.raises(ValidationError) as exc_info:
            baseline.import_flat({"0_1": 205, "0_18": bad}, when=MONDAY)
        assert len(exc_info.value.violations) == 1
        assert baseline.export_flat() == {"0_1": 200.0, "0_2": 210.0}
