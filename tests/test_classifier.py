"""
Tests for the detection window and accident classifier
"""

import math

import numpy as np
import pytest

from helmet_system.sensors.mpu6050.classifier import AccidentClassifier, DetectionWindow

# Per-axis value giving a 3g total magnitude
SPIKE_AXIS = 3.0 / math.sqrt(3.0)
SPIKE = (SPIKE_AXIS, SPIKE_AXIS, SPIKE_AXIS)
REST = (0.0, 0.0, 1.0)


def fill(window, samples):
    for sample in samples:
        assert window.append(sample)
    return window


class TestDetectionWindow:

    def test_rejects_out_of_order_and_duplicate_timestamps(self, make_sample):
        window = DetectionWindow(capacity=50, max_duration_seconds=2.5)
        assert window.append(make_sample(5))

        assert not window.append(make_sample(4))
        assert not window.append(make_sample(5))
        assert len(window) == 1

    def test_evicts_oldest_by_capacity(self, make_sample):
        window = fill(DetectionWindow(capacity=3, max_duration_seconds=60.0),
                      [make_sample(i) for i in range(5)])

        timestamps = [s.timestamp for s in window.samples()]
        assert len(window) == 3
        assert timestamps == [make_sample(i).timestamp for i in (2, 3, 4)]

    def test_evicts_oldest_by_duration(self, make_sample):
        window = fill(DetectionWindow(capacity=100, max_duration_seconds=0.52),
                      [make_sample(i) for i in range(21)])

        samples = window.samples()
        assert len(samples) == 11
        assert samples[0].timestamp == make_sample(10).timestamp
        assert (samples[-1].timestamp - samples[0].timestamp).total_seconds() <= 0.52

    def test_default_bounds(self, sensor_config, make_sample):
        window = DetectionWindow.from_config(sensor_config)
        fill(window, [make_sample(i) for i in range(80)])

        # 50 ms spacing: the 2.5 s bound and the 50 sample cap are both active
        assert len(window) <= 50
        span = (window.samples()[-1].timestamp - window.samples()[0].timestamp).total_seconds()
        assert span <= 2.5

    def test_magnitudes_use_unfiltered_acceleration(self, make_sample):
        window = fill(DetectionWindow(10, 10.0), [make_sample(0, raw=SPIKE, filtered=REST)])
        assert window.magnitudes() == pytest.approx(np.array([3.0]), abs=1e-9)

    def test_clear(self, make_sample):
        window = fill(DetectionWindow(10, 10.0), [make_sample(i) for i in range(3)])
        window.clear()

        assert len(window) == 0
        assert window.latest() is None
        # Timestamps before the cleared samples are accepted again
        assert window.append(make_sample(0))


class TestAccidentClassifier:

    @pytest.fixture
    def classifier(self, sensor_config):
        return AccidentClassifier(sensor_config)

    @pytest.fixture
    def window(self, sensor_config):
        return DetectionWindow.from_config(sensor_config)

    def _assess(self, classifier, window, samples):
        fill(window, samples)
        return classifier.assess(window, samples[-1])

    def test_resting_stream_is_not_dangerous(self, classifier, window, make_sample):
        result = self._assess(classifier, window, [make_sample(i) for i in range(20)])

        assert not result.is_accident
        assert not result.triggered
        assert result.danger_percentage == 0

    def test_insufficient_data_never_flags_impact(self, classifier, window, make_sample):
        samples = [make_sample(i, raw=SPIKE, filtered=REST) for i in range(2)]
        result = self._assess(classifier, window, samples)

        assert not result.is_accident
        assert result.history_score == 0
        assert result.danger_percentage == 0
        assert result.sample_count == 2

    def test_single_spike_is_rejected(self, classifier, window, make_sample):
        samples = [make_sample(i) for i in range(5)]
        samples.append(make_sample(5, raw=SPIKE, filtered=REST))
        samples += [make_sample(i) for i in range(6, 9)]

        for sample in samples:
            window.append(sample)
            assert not classifier.assess(window, sample).is_accident

    def test_two_consecutive_spikes_are_not_enough(self, classifier, window, make_sample):
        samples = [make_sample(i) for i in range(5)]
        samples += [make_sample(i, raw=SPIKE, filtered=REST) for i in (5, 6)]

        assert not self._assess(classifier, window, samples).is_accident

    def test_sustained_impact_is_an_accident(self, classifier, window, make_sample):
        samples = [make_sample(i) for i in range(5)]
        samples += [make_sample(i, raw=SPIKE, filtered=REST) for i in (5, 6, 7)]
        result = self._assess(classifier, window, samples)

        assert result.is_accident
        assert result.triggered
        assert not result.upside_down
        assert not result.tipped_over
        # 0.6 * (2g / 4g) + 0.25 * std([1]*5 + [3]*3)
        assert result.history_score == 54
        assert result.danger_percentage == 54

    def test_rotation_contributes_to_score(self, classifier, window, make_sample):
        samples = [make_sample(i, gyro=(500.0, 0.0, 0.0)) for i in range(5)]
        result = self._assess(classifier, window, samples)

        assert result.history_score == 15
        assert not result.triggered

    def test_upside_down_overrides_to_full_danger(self, classifier, window, make_sample):
        result = self._assess(classifier, window, [make_sample(0, raw=(0.0, 0.0, -1.0), filtered=(0.0, 0.0, -0.6))])

        assert result.upside_down
        assert not result.tipped_over
        assert result.danger_percentage == 100
        assert result.triggered

    def test_tipped_over_sets_danger_floor(self, classifier, window, make_sample):
        result = self._assess(classifier, window, [make_sample(0, raw=(1.0, 0.0, 0.0), filtered=(1.0, 0.0, 0.1))])

        assert result.tipped_over
        assert not result.upside_down
        assert result.danger_percentage == 80
        assert result.triggered

    def test_tipped_over_keeps_higher_history_score(self, classifier, window, make_sample):
        samples = [
            make_sample(0, gyro=(250.0, 0.0, 0.0)),
            make_sample(1),
            make_sample(2, raw=(0.0, 0.0, 5.0), filtered=REST),
            make_sample(3, raw=(0.0, 0.0, 5.0), filtered=(1.0, 0.0, 0.1)),
        ]
        result = self._assess(classifier, window, samples)

        assert result.tipped_over
        assert result.history_score == 100
        assert result.danger_percentage == 100

    def test_orientation_thresholds_are_strict(self, classifier, window, make_sample):
        result = self._assess(classifier, window, [make_sample(0, raw=(0.0, 0.0, -0.5), filtered=(0.0, 0.0, -0.5))])

        assert not result.upside_down
        assert not result.tipped_over
        assert not result.triggered

    def test_danger_is_bounded(self, classifier, window, make_sample):
        samples = [make_sample(i, raw=(0.0, 0.0, float(i % 2) * 8.0), gyro=(1000.0, 0.0, 0.0)) for i in range(10)]
        result = self._assess(classifier, window, samples)

        assert 0 <= result.danger_percentage <= 100
