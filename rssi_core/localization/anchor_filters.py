"""
Per-Anchor RSSI Filters.

Three recursive smoothers run side by side on every anchor's RSSI stream:

- KalmanTypeA: scalar Kalman filter correcting the running mean of the
  RSSI history toward the latest sample.
- KalmanTypeB: same gain/variance recursion, but corrects the previous
  filtered value (lag-aware variant).
- FeedbackFilter: exponential (alpha-blended) smoother on its own previous
  output.

All three are computed for each sample so that the display layer can switch
between variants without recomputation; only the selected variant feeds
trilateration.

Gain / variance recursion (A and B):
    K  = P / (P + q)
    P' = (1 - K) * P
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional
import logging
import math

import numpy as np

from rssi_core.errors import InvalidParameter
from rssi_core.metrics import get_metrics

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 500


class FilterVariant(str, Enum):
    """RSSI filter selection."""

    KALMAN_A = "kalman_a"
    KALMAN_B = "kalman_b"
    FEEDBACK = "feedback"

    @classmethod
    def parse(cls, name) -> "FilterVariant":
        """
        Parse a variant name.

        Accepts the enum values as well as the legacy names
        "kalman1", "kalman2" and "feedback".

        Raises:
            InvalidParameter: Unknown name
        """
        if isinstance(name, cls):
            return name

        key = str(name).strip().lower()
        aliases = {
            'kalman1': cls.KALMAN_A,
            'kalman2': cls.KALMAN_B,
        }
        if key in aliases:
            return aliases[key]

        try:
            return cls(key)
        except ValueError:
            raise InvalidParameter(f"Unknown filter variant: {name!r}") from None


@dataclass
class FilterResult:
    """
    Output of one filter step.

    Attributes:
        filtered_rssi_dbm: Filtered RSSI (dBm)
        updated_variance: Variance estimate carried to the next step
        previous_value_for_next_step: Value the next step corrects from
        raw_prediction_before_correction: Pre-correction value (history mean
            for Type A, previous output for Type B / Feedback)
        kalman_gain: Gain applied (alpha for the feedback filter)
        measurement: Raw RSSI sample that was filtered
        history_variance: Population variance of the RSSI history (Type A)
    """

    filtered_rssi_dbm: float
    updated_variance: float
    previous_value_for_next_step: float
    raw_prediction_before_correction: float
    kalman_gain: float = 0.0
    measurement: float = 0.0
    history_variance: Optional[float] = None

    def as_sequence(self) -> List[float]:
        """
        Legacy 5-slot layout.

        Returns:
            [pre-correction mean, history variance, gain, filtered RSSI,
            updated variance]
        """
        return [
            self.raw_prediction_before_correction,
            self.history_variance if self.history_variance is not None else 0.0,
            self.kalman_gain,
            self.filtered_rssi_dbm,
            self.updated_variance,
        ]


@dataclass
class AnchorFilterState:
    """
    Running state of one filter variant for one anchor.

    Attributes:
        sample_count: Samples seen so far
        variance_estimate: Kalman variance P (1.0 before the first sample)
        previous_filtered_value: Last filter output (0.0 before the first sample)
        history_window: Max RSSI history length (None = unbounded)
        rssi_history: Raw RSSI samples, oldest first

    Notes:
        With a bounded window, Type A's mean/variance are taken over the
        last history_window samples only.
    """

    sample_count: int = 0
    variance_estimate: float = 1.0
    previous_filtered_value: float = 0.0
    history_window: Optional[int] = DEFAULT_HISTORY_WINDOW
    rssi_history: Deque[float] = field(default=None)

    def __post_init__(self):
        if self.history_window is not None and self.history_window < 1:
            raise InvalidParameter(f"history_window must be >= 1: {self.history_window}")

        if self.sample_count < 0:
            raise InvalidParameter(f"sample_count cannot be negative: {self.sample_count}")

        if not self.variance_estimate > 0:
            raise InvalidParameter(f"Variance must be positive: {self.variance_estimate}")

        self.rssi_history = deque(self.rssi_history or (), maxlen=self.history_window)

    def record(self, rssi: float):
        """Append a raw sample to the history and bump the count."""
        self.rssi_history.append(rssi)
        self.sample_count += 1

    def to_dict(self) -> dict:
        return {
            'sample_count': self.sample_count,
            'variance_estimate': self.variance_estimate,
            'previous_filtered_value': self.previous_filtered_value,
            'history_window': self.history_window,
            'rssi_history': list(self.rssi_history),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AnchorFilterState":
        return cls(
            sample_count=int(data['sample_count']),
            variance_estimate=float(data['variance_estimate']),
            previous_filtered_value=float(data['previous_filtered_value']),
            history_window=data.get('history_window', DEFAULT_HISTORY_WINDOW),
            rssi_history=[float(v) for v in data.get('rssi_history', [])],
        )


def _check_noise(noise: float):
    if not (math.isfinite(noise) and noise > 0):
        raise InvalidParameter(f"Kalman noise must be > 0: {noise}")


def _check_rssi(rssi: float):
    if not math.isfinite(rssi):
        raise InvalidParameter(f"RSSI must be finite: {rssi}")


class KalmanTypeA:
    """
    Scalar Kalman filter around the RSSI history mean.

        mean = mean(history)
        x'   = mean + K * (latest - mean)
    """

    def __init__(self, noise: float = 1.0):
        _check_noise(noise)
        self.noise = noise

    def step(self, state: AnchorFilterState, rssi: float) -> FilterResult:
        """
        Advance the filter by one sample.

        Args:
            state: Anchor state (mutated)
            rssi: Latest raw RSSI (dBm)

        Returns:
            FilterResult for this sample
        """
        _check_rssi(rssi)
        state.record(rssi)

        history = np.asarray(state.rssi_history, dtype=float)
        mean = float(np.mean(history))
        history_variance = float(np.var(history))

        prior = state.variance_estimate
        gain = prior / (prior + self.noise)
        estimate = mean + gain * (rssi - mean)
        variance = (1.0 - gain) * prior

        state.variance_estimate = variance
        state.previous_filtered_value = estimate

        return FilterResult(
            filtered_rssi_dbm=estimate,
            updated_variance=variance,
            previous_value_for_next_step=estimate,
            raw_prediction_before_correction=mean,
            kalman_gain=gain,
            measurement=rssi,
            history_variance=history_variance,
        )


class KalmanTypeB:
    """
    Scalar Kalman filter around the previous filtered value.

        x' = previous + K * (latest - previous)

    previous starts at 0.0, so early outputs are pulled toward zero until the
    variance has shrunk.
    """

    def __init__(self, noise: float = 1.0):
        _check_noise(noise)
        self.noise = noise

    def step(self, state: AnchorFilterState, rssi: float) -> FilterResult:
        _check_rssi(rssi)
        state.record(rssi)

        previous = state.previous_filtered_value
        prior = state.variance_estimate
        gain = prior / (prior + self.noise)
        estimate = previous + gain * (rssi - previous)
        variance = (1.0 - gain) * prior

        state.variance_estimate = variance
        state.previous_filtered_value = estimate

        return FilterResult(
            filtered_rssi_dbm=estimate,
            updated_variance=variance,
            previous_value_for_next_step=estimate,
            raw_prediction_before_correction=previous,
            kalman_gain=gain,
            measurement=rssi,
        )


class FeedbackFilter:
    """
    Exponential feedback smoother.

        x' = previous + alpha * (latest - previous)

    alpha near 1 tracks fast (noisy), near 0 smooths heavily.
    """

    def __init__(self, alpha: float = 0.5):
        if not (math.isfinite(alpha) and 0.0 < alpha < 1.0):
            raise InvalidParameter(f"Feedback alpha must be in (0, 1): {alpha}")
        self.alpha = alpha

    def step(
        self,
        state: AnchorFilterState,
        rssi: float,
        seed: Optional[float] = None,
    ) -> FilterResult:
        """
        Advance the smoother by one sample.

        Args:
            state: Anchor state (mutated)
            rssi: Latest raw RSSI (dBm)
            seed: Overrides the carried previous output when given

        Returns:
            FilterResult for this sample
        """
        _check_rssi(rssi)
        if seed is not None:
            _check_rssi(seed)
        state.record(rssi)

        previous = state.previous_filtered_value if seed is None else seed
        estimate = previous + self.alpha * (rssi - previous)
        state.previous_filtered_value = estimate

        return FilterResult(
            filtered_rssi_dbm=estimate,
            updated_variance=state.variance_estimate,
            previous_value_for_next_step=estimate,
            raw_prediction_before_correction=previous,
            kalman_gain=self.alpha,
            measurement=rssi,
        )


@dataclass
class AnchorFilterBankConfig:
    """
    Configuration for the per-anchor filter bank.

    Attributes:
        kalman_noise: Noise tunable q for both Kalman variants (> 0)
        feedback_alpha: Blend factor for the feedback filter, in (0, 1)
        history_window: RSSI history length per anchor (None = unbounded)
        couple_feedback_to_kalman: Seed the feedback filter from Type A's
            pre-correction mean instead of its own previous output
    """

    kalman_noise: float = 1.0
    feedback_alpha: float = 0.5
    history_window: Optional[int] = DEFAULT_HISTORY_WINDOW
    couple_feedback_to_kalman: bool = False

    def validate(self):
        """Raise InvalidParameter if any field is out of range."""
        _check_noise(self.kalman_noise)
        if not (math.isfinite(self.feedback_alpha) and 0.0 < self.feedback_alpha < 1.0):
            raise InvalidParameter(f"Feedback alpha must be in (0, 1): {self.feedback_alpha}")
        if self.history_window is not None and self.history_window < 1:
            raise InvalidParameter(f"history_window must be >= 1: {self.history_window}")


class AnchorFilterBank:
    """
    Holds every anchor's filter state and advances it one sample at a time.

    Usage:
        bank = AnchorFilterBank(AnchorFilterBankConfig(kalman_noise=1.0))
        results = bank.update("AP1", -61.0)
        rssi = results[FilterVariant.KALMAN_A].filtered_rssi_dbm

    State is owned by the bank instance; two banks never share anything.
    """

    def __init__(self, config: Optional[AnchorFilterBankConfig] = None):
        self.config = config or AnchorFilterBankConfig()
        self.config.validate()
        self.metrics = get_metrics()

        self.kalman_a = KalmanTypeA(self.config.kalman_noise)
        self.kalman_b = KalmanTypeB(self.config.kalman_noise)
        self.feedback = FeedbackFilter(self.config.feedback_alpha)

        self._states: Dict[str, Dict[FilterVariant, AnchorFilterState]] = {}
        self._raw_history: Dict[str, Deque[float]] = {}
        self._filtered_history: Dict[str, Dict[FilterVariant, Deque[float]]] = {}

    @property
    def anchor_ids(self) -> List[str]:
        """Anchors that have reported at least once, in first-seen order."""
        return list(self._states)

    def has_anchor(self, anchor_id: str) -> bool:
        return anchor_id in self._states

    def state(self, anchor_id: str, variant: FilterVariant) -> Optional[AnchorFilterState]:
        """Current state of one variant for one anchor (None if never seen)."""
        states = self._states.get(anchor_id)
        if states is None:
            return None
        return states[FilterVariant.parse(variant)]

    def update(self, anchor_id: str, rssi: float) -> Dict[FilterVariant, FilterResult]:
        """
        Feed one RSSI sample through all three variants.

        Args:
            anchor_id: Anchor identifier
            rssi: Raw RSSI (dBm)

        Returns:
            Dict of FilterVariant -> FilterResult

        Raises:
            InvalidParameter: Non-finite RSSI (no state is touched)
        """
        _check_rssi(rssi)

        states = self._states_for(anchor_id)
        first_sample = states[FilterVariant.KALMAN_A].sample_count == 0

        result_a = self.kalman_a.step(states[FilterVariant.KALMAN_A], rssi)
        result_b = self.kalman_b.step(states[FilterVariant.KALMAN_B], rssi)

        seed = None
        if self.config.couple_feedback_to_kalman:
            seed = 0.0 if first_sample else result_a.raw_prediction_before_correction
        result_fb = self.feedback.step(states[FilterVariant.FEEDBACK], rssi, seed=seed)

        results = {
            FilterVariant.KALMAN_A: result_a,
            FilterVariant.KALMAN_B: result_b,
            FilterVariant.FEEDBACK: result_fb,
        }

        self._raw_history[anchor_id].append(rssi)
        for variant, result in results.items():
            self._filtered_history[anchor_id][variant].append(result.filtered_rssi_dbm)

        self.metrics.increment('filter_updates')
        self.metrics.record_histogram('kalman_gain', result_a.kalman_gain)

        logger.debug(
            f"{anchor_id}: rssi={rssi:.1f} kfA={result_a.filtered_rssi_dbm:.2f} "
            f"kfB={result_b.filtered_rssi_dbm:.2f} fb={result_fb.filtered_rssi_dbm:.2f} "
            f"P={result_a.updated_variance:.4f}"
        )

        return results

    def raw_history(self, anchor_id: str) -> List[float]:
        """Raw RSSI samples for an anchor, oldest first."""
        return list(self._raw_history.get(anchor_id, ()))

    def filtered_history(self, anchor_id: str, variant: FilterVariant) -> List[float]:
        """Filtered RSSI outputs of one variant for an anchor, oldest first."""
        histories = self._filtered_history.get(anchor_id)
        if histories is None:
            return []
        return list(histories[FilterVariant.parse(variant)])

    def reset(self):
        """Forget all anchors."""
        self._states.clear()
        self._raw_history.clear()
        self._filtered_history.clear()
        self.metrics.increment('filter_bank_resets')

    def to_dict(self) -> dict:
        """Serialize all anchor states (histories for charting are not kept)."""
        return {
            anchor_id: {variant.value: state.to_dict() for variant, state in states.items()}
            for anchor_id, states in self._states.items()
        }

    def load_dict(self, data: dict):
        """
        Replace all anchor states from a to_dict() blob.

        Raises:
            InvalidParameter: Malformed blob (current state is kept)
        """
        self.restore(self.parse_dict(data))

    @staticmethod
    def parse_dict(data: dict) -> Dict[str, Dict[FilterVariant, AnchorFilterState]]:
        """
        Decode a to_dict() blob without touching any bank.

        Returns:
            anchor_id -> {FilterVariant -> AnchorFilterState}

        Raises:
            InvalidParameter: Malformed blob or a variant missing for an anchor
        """
        try:
            loaded = {
                anchor_id: {
                    FilterVariant.parse(name): AnchorFilterState.from_dict(state)
                    for name, state in states.items()
                }
                for anchor_id, states in data.items()
            }
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidParameter(f"Malformed filter bank state: {e}") from e

        for anchor_id, states in loaded.items():
            missing = set(FilterVariant) - set(states)
            if missing:
                raise InvalidParameter(
                    f"{anchor_id}: missing filter state for {sorted(v.value for v in missing)}"
                )

        return loaded

    def restore(self, states: Dict[str, Dict[FilterVariant, AnchorFilterState]]):
        """Replace all anchor states with already decoded ones."""
        self.reset()
        for anchor_id, anchor_states in states.items():
            self._states[anchor_id] = anchor_states
            self._init_histories(anchor_id)

    def _states_for(self, anchor_id: str) -> Dict[FilterVariant, AnchorFilterState]:
        states = self._states.get(anchor_id)
        if states is None:
            states = {
                variant: AnchorFilterState(history_window=self.config.history_window)
                for variant in FilterVariant
            }
            self._states[anchor_id] = states
            self._init_histories(anchor_id)
            logger.info(f"Filter state created for anchor {anchor_id}")
        return states

    def _init_histories(self, anchor_id: str):
        window = self.config.history_window
        self._raw_history[anchor_id] = deque(maxlen=window)
        self._filtered_history[anchor_id] = {
            variant: deque(maxlen=window) for variant in FilterVariant
        }
