"""
Unit tests for the per-anchor RSSI filters and the filter bank.

Tests cover:
- Kalman type A / type B recursion and convergence
- Feedback filter blending and optional Kalman coupling
- Bounded RSSI history
- Filter bank isolation and state round-trip
"""

import math

import numpy as np
import pytest

from rssi_core.localization import (
    AnchorFilterBank,
    AnchorFilterBankConfig,
    AnchorFilterState,
    FeedbackFilter,
    FilterVariant,
    InvalidParameter,
    KalmanTypeA,
    KalmanTypeB,
)
from rssi_core.metrics import get_metrics


# =============================================================================
# Filter Variant Names
# =============================================================================


class TestFilterVariant:
    """Tests for variant name parsing."""

    def test_parse_values(self):
        assert FilterVariant.parse("kalman_a") is FilterVariant.KALMAN_A
        assert FilterVariant.parse("KALMAN_B") is FilterVariant.KALMAN_B
        assert FilterVariant.parse(" feedback ") is FilterVariant.FEEDBACK

    def test_parse_legacy_names(self):
        assert FilterVariant.parse("kalman1") is FilterVariant.KALMAN_A
        assert FilterVariant.parse("kalman2") is FilterVariant.KALMAN_B

    def test_parse_passthrough(self):
        assert FilterVariant.parse(FilterVariant.FEEDBACK) is FilterVariant.FEEDBACK

    def test_parse_unknown_raises(self):
        with pytest.raises(InvalidParameter, match="Unknown filter variant"):
            FilterVariant.parse("median")


# =============================================================================
# Kalman Type A
# =============================================================================


class TestKalmanTypeA:
    """Tests for the history-mean Kalman filter."""

    def test_first_sample(self):
        """First sample: mean = sample, K = 0.5 with P = q = 1."""
        state = AnchorFilterState()
        result = KalmanTypeA(noise=1.0).step(state, -60.0)

        assert result.filtered_rssi_dbm == pytest.approx(-60.0)
        assert result.kalman_gain == pytest.approx(0.5)
        assert result.updated_variance == pytest.approx(0.5)
        assert result.raw_prediction_before_correction == pytest.approx(-60.0)
        assert state.sample_count == 1

    def test_second_sample_corrects_mean(self):
        """estimate = mean + K * (latest - mean)."""
        state = AnchorFilterState()
        kf = KalmanTypeA(noise=1.0)

        kf.step(state, -60.0)
        result = kf.step(state, -70.0)

        # mean = -65, P = 0.5, K = 1/3
        assert result.raw_prediction_before_correction == pytest.approx(-65.0)
        assert result.kalman_gain == pytest.approx(1.0 / 3.0)
        assert result.filtered_rssi_dbm == pytest.approx(-65.0 - 5.0 / 3.0)
        assert result.updated_variance == pytest.approx(1.0 / 3.0)
        assert result.history_variance == pytest.approx(25.0)

    def test_constant_input_is_exact(self):
        """Constant RSSI gives constant output from the first sample."""
        state = AnchorFilterState()
        kf = KalmanTypeA(noise=1.0)

        outputs = [kf.step(state, -55.0).filtered_rssi_dbm for _ in range(20)]

        assert all(v == pytest.approx(-55.0) for v in outputs)

    def test_variance_strictly_decreasing(self):
        """P shrinks every step and stays positive."""
        state = AnchorFilterState()
        kf = KalmanTypeA(noise=1.0)
        rng = np.random.default_rng(42)

        variances = [
            kf.step(state, float(-60.0 + rng.normal(0, 3))).updated_variance
            for _ in range(50)
        ]

        assert all(v > 0 for v in variances)
        assert all(b < a for a, b in zip(variances, variances[1:]))

    def test_converges_to_mean_of_noisy_input(self):
        """Filtered output approaches the true mean of a noisy stream."""
        state = AnchorFilterState(history_window=None)
        kf = KalmanTypeA(noise=1.0)
        rng = np.random.default_rng(7)

        for _ in range(400):
            result = kf.step(state, float(-62.0 + rng.normal(0, 2)))

        assert result.filtered_rssi_dbm == pytest.approx(-62.0, abs=0.5)

    def test_bounded_history_window(self):
        """Only the last history_window samples enter the mean."""
        state = AnchorFilterState(history_window=3)
        kf = KalmanTypeA(noise=1.0)

        for rssi in (-50.0, -60.0, -70.0):
            kf.step(state, rssi)
        result = kf.step(state, -80.0)

        assert list(state.rssi_history) == [-60.0, -70.0, -80.0]
        assert result.raw_prediction_before_correction == pytest.approx(-70.0)
        assert state.sample_count == 4

    def test_non_finite_rssi_leaves_state(self):
        state = AnchorFilterState()
        kf = KalmanTypeA()
        kf.step(state, -60.0)

        with pytest.raises(InvalidParameter):
            kf.step(state, float('nan'))

        assert state.sample_count == 1
        assert list(state.rssi_history) == [-60.0]

    @pytest.mark.parametrize("noise", [0.0, -1.0, float('inf')])
    def test_invalid_noise(self, noise):
        with pytest.raises(InvalidParameter):
            KalmanTypeA(noise=noise)

    def test_as_sequence_layout(self):
        """Legacy 5-slot layout: mean, history var, gain, filtered, variance."""
        state = AnchorFilterState()
        kf = KalmanTypeA(noise=1.0)
        kf.step(state, -60.0)
        result = kf.step(state, -70.0)

        seq = result.as_sequence()

        assert len(seq) == 5
        assert seq[0] == pytest.approx(-65.0)
        assert seq[1] == pytest.approx(25.0)
        assert seq[2] == pytest.approx(1.0 / 3.0)
        assert seq[3] == pytest.approx(result.filtered_rssi_dbm)
        assert seq[4] == pytest.approx(result.updated_variance)


# =============================================================================
# Kalman Type B
# =============================================================================


class TestKalmanTypeB:
    """Tests for the previous-value Kalman filter."""

    def test_starts_from_zero(self):
        """Early outputs are pulled toward the zero initial value."""
        state = AnchorFilterState()
        kf = KalmanTypeB(noise=1.0)

        outputs = [kf.step(state, -60.0).filtered_rssi_dbm for _ in range(3)]

        # With q = 1 the error after n samples is c * q / (q + n)
        assert outputs[0] == pytest.approx(-30.0)
        assert outputs[1] == pytest.approx(-40.0)
        assert outputs[2] == pytest.approx(-45.0)

    def test_converges_on_constant_input(self):
        """|output - c| < 0.1 dB within 1000 samples."""
        state = AnchorFilterState()
        kf = KalmanTypeB(noise=1.0)

        for _ in range(1000):
            result = kf.step(state, -60.0)

        assert abs(result.filtered_rssi_dbm - (-60.0)) < 0.1

    def test_pre_correction_is_previous_output(self):
        state = AnchorFilterState()
        kf = KalmanTypeB(noise=1.0)

        first = kf.step(state, -60.0)
        second = kf.step(state, -60.0)

        assert first.raw_prediction_before_correction == 0.0
        assert second.raw_prediction_before_correction == pytest.approx(first.filtered_rssi_dbm)
        assert second.previous_value_for_next_step == pytest.approx(second.filtered_rssi_dbm)

    def test_variance_matches_type_a(self):
        """Both Kalman variants share the same gain/variance recursion."""
        state_a = AnchorFilterState()
        state_b = AnchorFilterState()
        kf_a = KalmanTypeA(noise=2.0)
        kf_b = KalmanTypeB(noise=2.0)

        for rssi in (-58.0, -64.0, -61.0, -70.0):
            result_a = kf_a.step(state_a, rssi)
            result_b = kf_b.step(state_b, rssi)
            assert result_a.updated_variance == pytest.approx(result_b.updated_variance)
            assert result_a.kalman_gain == pytest.approx(result_b.kalman_gain)


# =============================================================================
# Feedback Filter
# =============================================================================


class TestFeedbackFilter:
    """Tests for the exponential feedback smoother."""

    def test_blends_previous_output(self):
        state = AnchorFilterState()
        fb = FeedbackFilter(alpha=0.5)

        assert fb.step(state, -60.0).filtered_rssi_dbm == pytest.approx(-30.0)
        assert fb.step(state, -60.0).filtered_rssi_dbm == pytest.approx(-45.0)

    def test_output_between_previous_and_sample(self):
        """Every output lies between the previous output and the new sample."""
        state = AnchorFilterState()
        fb = FeedbackFilter(alpha=0.3)
        rng = np.random.default_rng(3)

        previous = 0.0
        for _ in range(100):
            rssi = float(-65.0 + rng.normal(0, 5))
            out = fb.step(state, rssi).filtered_rssi_dbm
            assert min(previous, rssi) - 1e-9 <= out <= max(previous, rssi) + 1e-9
            previous = out

    def test_seed_overrides_previous(self):
        state = AnchorFilterState()
        fb = FeedbackFilter(alpha=0.5)
        fb.step(state, -60.0)

        result = fb.step(state, -70.0, seed=-65.0)

        assert result.raw_prediction_before_correction == pytest.approx(-65.0)
        assert result.filtered_rssi_dbm == pytest.approx(-67.5)

    def test_variance_untouched(self):
        state = AnchorFilterState()
        result = FeedbackFilter(alpha=0.5).step(state, -60.0)

        assert result.updated_variance == 1.0
        assert result.kalman_gain == 0.5

    @pytest.mark.parametrize("alpha", [0.0, 1.0, -0.2, 1.5, float('nan')])
    def test_alpha_out_of_range(self, alpha):
        with pytest.raises(InvalidParameter, match="alpha"):
            FeedbackFilter(alpha=alpha)


# =============================================================================
# Filter State
# =============================================================================


class TestAnchorFilterState:
    """Tests for AnchorFilterState validation and serialization."""

    def test_defaults(self):
        state = AnchorFilterState()

        assert state.sample_count == 0
        assert state.variance_estimate == 1.0
        assert state.previous_filtered_value == 0.0
        assert len(state.rssi_history) == 0

    def test_rejects_non_positive_variance(self):
        with pytest.raises(InvalidParameter):
            AnchorFilterState(variance_estimate=0.0)

    def test_rejects_bad_window(self):
        with pytest.raises(InvalidParameter):
            AnchorFilterState(history_window=0)

    def test_dict_roundtrip(self):
        state = AnchorFilterState(history_window=10)
        kf = KalmanTypeA()
        for rssi in (-60.0, -62.0, -61.0):
            kf.step(state, rssi)

        restored = AnchorFilterState.from_dict(state.to_dict())

        assert restored.sample_count == 3
        assert restored.variance_estimate == pytest.approx(state.variance_estimate)
        assert restored.previous_filtered_value == pytest.approx(state.previous_filtered_value)
        assert list(restored.rssi_history) == [-60.0, -62.0, -61.0]
        assert restored.rssi_history.maxlen == 10


# =============================================================================
# Filter Bank
# =============================================================================


class TestAnchorFilterBank:
    """Tests for AnchorFilterBank."""

    def test_update_runs_all_variants(self):
        bank = AnchorFilterBank()

        results = bank.update("AP1", -60.0)

        assert set(results) == set(FilterVariant)
        assert results[FilterVariant.KALMAN_A].filtered_rssi_dbm == pytest.approx(-60.0)
        assert results[FilterVariant.KALMAN_B].filtered_rssi_dbm == pytest.approx(-30.0)
        assert results[FilterVariant.FEEDBACK].filtered_rssi_dbm == pytest.approx(-30.0)

    def test_anchors_are_independent(self):
        bank = AnchorFilterBank()

        for _ in range(5):
            bank.update("AP1", -50.0)
        result = bank.update("AP2", -70.0)

        assert result[FilterVariant.KALMAN_A].filtered_rssi_dbm == pytest.approx(-70.0)
        assert bank.state("AP2", FilterVariant.KALMAN_A).sample_count == 1
        assert bank.state("AP1", "kalman_a").sample_count == 5
        assert bank.anchor_ids == ["AP1", "AP2"]

    def test_banks_share_nothing(self):
        bank1 = AnchorFilterBank()
        bank2 = AnchorFilterBank()

        bank1.update("AP1", -50.0)

        assert not bank2.has_anchor("AP1")
        assert bank2.state("AP1", FilterVariant.KALMAN_A) is None

    def test_rejected_sample_creates_no_state(self):
        bank = AnchorFilterBank()

        with pytest.raises(InvalidParameter):
            bank.update("AP9", float('inf'))

        assert not bank.has_anchor("AP9")

    def test_uncoupled_feedback_uses_own_output(self):
        bank = AnchorFilterBank(AnchorFilterBankConfig(feedback_alpha=0.5))

        bank.update("AP1", -60.0)
        result = bank.update("AP1", -70.0)

        # -30 + 0.5 * (-70 + 30)
        assert result[FilterVariant.FEEDBACK].filtered_rssi_dbm == pytest.approx(-50.0)

    def test_coupled_feedback_seeds_from_kalman_mean(self):
        config = AnchorFilterBankConfig(feedback_alpha=0.5, couple_feedback_to_kalman=True)
        bank = AnchorFilterBank(config)

        first = bank.update("AP1", -60.0)
        second = bank.update("AP1", -70.0)

        # First sample seeded with 0, then Type A's history mean (-65)
        assert first[FilterVariant.FEEDBACK].filtered_rssi_dbm == pytest.approx(-30.0)
        assert second[FilterVariant.FEEDBACK].filtered_rssi_dbm == pytest.approx(-67.5)

    def test_histories(self):
        bank = AnchorFilterBank(AnchorFilterBankConfig(history_window=2))

        for rssi in (-60.0, -61.0, -62.0):
            bank.update("AP1", rssi)

        assert bank.raw_history("AP1") == [-61.0, -62.0]
        assert len(bank.filtered_history("AP1", FilterVariant.KALMAN_B)) == 2
        assert bank.raw_history("unknown") == []
        assert bank.filtered_history("unknown", FilterVariant.KALMAN_A) == []

    def test_reset(self):
        bank = AnchorFilterBank()
        bank.update("AP1", -60.0)

        bank.reset()

        assert bank.anchor_ids == []
        assert bank.raw_history("AP1") == []

    def test_state_roundtrip_continues_identically(self):
        """A restored bank produces the same outputs as the original."""
        original = AnchorFilterBank()
        for rssi in (-58.0, -63.0, -60.0, -66.0, -59.0):
            original.update("AP1", rssi)
            original.update("AP2", rssi - 10.0)

        restored = AnchorFilterBank()
        restored.load_dict(original.to_dict())

        expected = original.update("AP1", -61.0)
        actual = restored.update("AP1", -61.0)

        for variant in FilterVariant:
            assert actual[variant].filtered_rssi_dbm == pytest.approx(expected[variant].filtered_rssi_dbm)
            assert actual[variant].updated_variance == pytest.approx(expected[variant].updated_variance)

    def test_load_dict_missing_variant_keeps_state(self):
        bank = AnchorFilterBank()
        bank.update("AP1", -60.0)
        blob = {"AP2": {"kalman_a": bank.state("AP1", "kalman_a").to_dict()}}

        with pytest.raises(InvalidParameter, match="missing filter state"):
            bank.load_dict(blob)

        assert bank.anchor_ids == ["AP1"]

    def test_load_dict_malformed(self):
        bank = AnchorFilterBank()

        with pytest.raises(InvalidParameter):
            bank.load_dict({"AP1": {"kalman_a": {"sample_count": 1}}})

    @pytest.mark.parametrize("blob", ["AP1", ["AP1"], {"AP1": "kalman_a"}])
    def test_load_dict_wrong_shape(self, blob):
        bank = AnchorFilterBank()
        bank.update("AP1", -60.0)

        with pytest.raises(InvalidParameter):
            bank.load_dict(blob)

        assert bank.anchor_ids == ["AP1"]

    def test_invalid_config(self):
        with pytest.raises(InvalidParameter):
            AnchorFilterBank(AnchorFilterBankConfig(kalman_noise=0.0))

        with pytest.raises(InvalidParameter):
            AnchorFilterBank(AnchorFilterBankConfig(feedback_alpha=1.0))

    def test_metrics_recorded(self):
        bank = AnchorFilterBank()
        bank.update("AP1", -60.0)
        bank.update("AP1", -61.0)

        metrics = get_metrics()
        assert metrics.get_counter('filter_updates') == 2

        stats = metrics.get_histogram_stats('kalman_gain')
        assert stats['count'] == 2
        assert stats['max'] == pytest.approx(0.5)
        assert math.isfinite(stats['mean'])
