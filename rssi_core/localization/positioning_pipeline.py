"""
RSSI Positioning Pipeline.

Wires the estimation stages for each scan cycle:

1. Filter every tracked anchor's RSSI through all three filter variants
2. Convert filtered RSSI to distance (path-loss model)
3. Trilaterate with the selected variant's distances
4. Optionally refine with the EKF
5. Clamp to the map bounds

Usage:
    pipeline = PositioningPipeline(config)

    result = pipeline.process(samples, t_cycle)
    if result.has_position:
        print(f"Position: {result.position.position}")
    else:
        print("NO_FIX")

All filter and EKF state is owned by the pipeline instance; independent
sessions use independent pipelines.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence
import logging
import math
import time

from rssi_core.errors import InvalidParameter, SingularCovariance, SingularGeometry
from rssi_core.localization.anchor_filters import (
    AnchorFilterBank,
    AnchorFilterBankConfig,
    AnchorFilterState,
    DEFAULT_HISTORY_WINDOW,
    FilterVariant,
)
from rssi_core.localization.anchor_geometry import AnchorGeometry, MapBounds
from rssi_core.localization.ekf_refiner import EKFRefiner, EKFRefinerConfig, EKFState
from rssi_core.localization.path_loss import PathLossModel, signal_level
from rssi_core.localization.trilateration import Trilateration, TrilaterationConfig
from rssi_core.metrics import get_metrics
from rssi_core.proto.position_estimate import (
    AnchorReading,
    CycleResult,
    FixType,
    PositionEstimate,
    VariantReading,
    create_no_fix,
)
from rssi_core.proto.sample import AccessPointRecord, RssiSample

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    """
    Session configuration for the positioning pipeline.

    Attributes:
        anchors: Exactly 3 tracked anchors with map coordinates
        map_bounds: Bounding box positions are clamped to
        path_loss_exponent: n in the path-loss model (> 0)
        kalman_noise: q for both Kalman variants (> 0)
        feedback_alpha: Feedback filter blend factor, in (0, 1)
        filter_variant: Variant feeding trilateration (fixed per session)
        ekf_enabled: Run the EKF refinement stage
        reference_rssi_dbm: RSSI at 1 m
        history_window: Per-anchor RSSI history length (None = unbounded)
        couple_feedback_to_kalman: Seed feedback from Type A's mean
        round_position: Round to whole map units before clamping
        singular_epsilon: Trilateration determinant threshold
        ekf_process_noise: EKF Q diagonal
        ekf_measurement_noise: EKF R diagonal
        ekf_initial_covariance: EKF P diagonal at seeding
    """

    anchors: List[AnchorGeometry]
    map_bounds: MapBounds
    path_loss_exponent: float = 2.5
    kalman_noise: float = 1.0
    feedback_alpha: float = 0.5
    filter_variant: FilterVariant = FilterVariant.KALMAN_A
    ekf_enabled: bool = False
    reference_rssi_dbm: float = -40.0
    history_window: Optional[int] = DEFAULT_HISTORY_WINDOW
    couple_feedback_to_kalman: bool = False
    round_position: bool = False
    singular_epsilon: float = 1e-9
    ekf_process_noise: float = 0.001
    ekf_measurement_noise: float = 0.1
    ekf_initial_covariance: float = 1.0

    def __post_init__(self):
        self.filter_variant = FilterVariant.parse(self.filter_variant)

    def validate(self):
        """
        Check every tunable.

        Raises:
            InvalidParameter: First problem found
        """
        if len(self.anchors) != 3:
            raise InvalidParameter(f"Need exactly 3 anchors, got {len(self.anchors)}")

        anchor_ids = [a.anchor_id for a in self.anchors]
        if len(set(anchor_ids)) != 3:
            raise InvalidParameter(f"Duplicate anchor IDs: {anchor_ids}")

        if not (math.isfinite(self.path_loss_exponent) and self.path_loss_exponent > 0):
            raise InvalidParameter(
                f"Path-loss exponent must be > 0: {self.path_loss_exponent}"
            )

        self.filter_bank_config().validate()
        self.trilateration_config().validate()
        self.ekf_config().validate()

        PathLossModel(self.reference_rssi_dbm)

    def filter_bank_config(self) -> AnchorFilterBankConfig:
        return AnchorFilterBankConfig(
            kalman_noise=self.kalman_noise,
            feedback_alpha=self.feedback_alpha,
            history_window=self.history_window,
            couple_feedback_to_kalman=self.couple_feedback_to_kalman,
        )

    def trilateration_config(self) -> TrilaterationConfig:
        return TrilaterationConfig(singular_epsilon=self.singular_epsilon)

    def ekf_config(self) -> EKFRefinerConfig:
        return EKFRefinerConfig(
            dimension=2,
            process_noise=self.ekf_process_noise,
            measurement_noise=self.ekf_measurement_noise,
            initial_covariance=self.ekf_initial_covariance,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """
        Build a config from plain dictionaries.

        Args:
            data: Dict with "anchors" (list of {anchor_id, x, y} or a mapping
                anchor_id -> {x, y}), "map_bounds" ({min_x, max_x, min_y,
                max_y}) and any scalar field of this class

        Raises:
            InvalidParameter: Missing or malformed entries
        """
        data = dict(data)
        try:
            raw_anchors = data.pop('anchors')
            raw_bounds = data.pop('map_bounds')
        except KeyError as e:
            raise InvalidParameter(f"Missing configuration key: {e}") from None

        try:
            if isinstance(raw_anchors, dict):
                anchors = [
                    AnchorGeometry(anchor_id, float(pos['x']), float(pos['y']))
                    for anchor_id, pos in raw_anchors.items()
                ]
            else:
                anchors = [
                    AnchorGeometry(a['anchor_id'], float(a['x']), float(a['y']))
                    for a in raw_anchors
                ]
            bounds = MapBounds(**{k: float(v) for k, v in raw_bounds.items()})
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidParameter(f"Malformed geometry configuration: {e}") from e

        known = set(cls.__dataclass_fields__) - {'anchors', 'map_bounds'}
        unknown = set(data) - known
        if unknown:
            raise InvalidParameter(f"Unknown configuration keys: {sorted(unknown)}")

        return cls(anchors=anchors, map_bounds=bounds, **data)


class PositioningPipeline:
    """
    Per-session RSSI -> position pipeline.

    Pipeline stages:
    1. Sample validation (whole cycle rejected on a bad sample)
    2. Filter bank update for tracked anchors; AP records for the rest
    3. Path-loss distances for every variant
    4. Trilateration (selected variant)
    5. EKF refinement (optional)
    6. Rounding (optional) and clamping

    Features:
    - Anchors missing from a cycle keep their last filtered value
    - NO_FIX until all 3 anchors have reported at least once
    - Filter / EKF state export for external persistence
    """

    def __init__(self, config: PipelineConfig):
        """
        Initialize pipeline.

        Args:
            config: Session configuration

        Raises:
            InvalidParameter: Invalid configuration
        """
        config.validate()
        self.config = config
        self.metrics = get_metrics()

        self.path_loss = PathLossModel(config.reference_rssi_dbm)
        self.filter_bank = AnchorFilterBank(config.filter_bank_config())
        self.trilateration = Trilateration(config.trilateration_config())
        self.ekf = EKFRefiner(config.ekf_config()) if config.ekf_enabled else None

        self._anchors: Dict[str, AnchorGeometry] = {a.anchor_id: a for a in config.anchors}
        self._readings: Dict[str, AnchorReading] = {}
        self._cycle_count = 0

        logger.info(
            f"Positioning pipeline created: anchors={list(self._anchors)}, "
            f"filter={config.filter_variant.value}, n={config.path_loss_exponent}, "
            f"ekf={'on' if config.ekf_enabled else 'off'}"
        )

    @property
    def tracked_anchor_ids(self) -> List[str]:
        return list(self._anchors)

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    def reading(self, anchor_id: str) -> Optional[AnchorReading]:
        """Last reading of a tracked anchor (None if it never reported)."""
        return self._readings.get(anchor_id)

    def process(
        self,
        samples: Iterable[RssiSample],
        t_cycle: Optional[float] = None,
    ) -> CycleResult:
        """
        Process one scan cycle.

        Args:
            samples: Samples of this scan, any order
            t_cycle: Cycle time (defaults to the latest sample timestamp,
                then wall clock)

        Returns:
            CycleResult with position (FIX_2D / REFINED / NO_FIX), per-anchor
            readings and AP records

        Raises:
            InvalidParameter: Malformed sample (no state advanced)
            SingularGeometry: Anchors collinear (filters advanced, no position)
            SingularCovariance: EKF update failed (EKF state kept)
        """
        samples = list(samples)
        raw_distances = self._validate_samples(samples)

        if t_cycle is None:
            t_cycle = max(s.timestamp for s in samples) if samples else time.time()

        self._cycle_count += 1
        self.metrics.increment('scan_cycles')
        self.metrics.increment('samples_in', len(samples))

        for reading in self._readings.values():
            reading.is_fresh = False

        access_points = []
        for sample, raw_distance in zip(samples, raw_distances):
            is_tracked = sample.anchor_id in self._anchors

            if is_tracked:
                self._update_anchor(sample, raw_distance)
            else:
                self.metrics.increment('untracked_samples')

            access_points.append(AccessPointRecord(
                anchor_id=sample.anchor_id,
                ssid=sample.ssid,
                rssi_dbm=sample.rssi_dbm,
                frequency_mhz=sample.frequency_mhz,
                capabilities=sample.capabilities,
                raw_distance_m=raw_distance,
                signal_level=signal_level(sample.rssi_dbm),
                is_tracked=is_tracked,
            ))

        access_points.sort(key=lambda ap: ap.rssi_dbm, reverse=True)

        position = self._solve(t_cycle)

        return CycleResult(
            position=position,
            readings=dict(self._readings),
            access_points=access_points,
        )

    def _validate_samples(self, samples: Sequence[RssiSample]) -> List[float]:
        """
        Check the whole cycle before any state moves.

        Returns:
            Raw path-loss distance per sample, same order

        Raises:
            InvalidParameter: Bad sample or unusable distance
        """
        raw_distances = []
        for sample in samples:
            try:
                if not isinstance(sample, RssiSample):
                    raise InvalidParameter(f"Not an RssiSample: {sample!r}")

                if not math.isfinite(sample.rssi_dbm):
                    raise InvalidParameter(
                        f"{sample.anchor_id}: non-finite RSSI {sample.rssi_dbm}"
                    )

                d = self.path_loss.distance(sample.rssi_dbm, self.config.path_loss_exponent)
                # Trilateration squares the ranges
                if not math.isfinite(d * d):
                    raise InvalidParameter(
                        f"{sample.anchor_id}: RSSI {sample.rssi_dbm} dBm gives an "
                        f"unusable distance {d:.3e}"
                    )
            except InvalidParameter:
                self.metrics.increment_drop('malformed_sample')
                raise

            raw_distances.append(d)

        return raw_distances

    def _update_anchor(self, sample: RssiSample, raw_distance: float):
        results = self.filter_bank.update(sample.anchor_id, sample.rssi_dbm)

        variants = {
            variant.value: VariantReading(
                filtered_rssi_dbm=result.filtered_rssi_dbm,
                distance_m=self.path_loss.distance(
                    result.filtered_rssi_dbm, self.config.path_loss_exponent
                ),
                variance=result.updated_variance,
            )
            for variant, result in results.items()
        }

        self._readings[sample.anchor_id] = AnchorReading(
            anchor_id=sample.anchor_id,
            rssi_dbm=sample.rssi_dbm,
            raw_distance_m=raw_distance,
            sample_count=self.filter_bank.state(sample.anchor_id, FilterVariant.KALMAN_A).sample_count,
            t_last=sample.timestamp,
            variants=variants,
            is_fresh=True,
        )

    def _solve(self, t_cycle: float) -> PositionEstimate:
        variant = self.config.filter_variant.value
        anchors = self.config.anchors

        missing = [a.anchor_id for a in anchors if a.anchor_id not in self._readings]
        if missing:
            self.metrics.increment_drop('insufficient_anchors')
            logger.debug(f"No fix yet, waiting for anchors {missing}")
            return create_no_fix(t_cycle, variant)

        distances = [self._readings[a.anchor_id].distance(variant) for a in anchors]

        try:
            raw_x, raw_y = self.trilateration.solve(anchors, distances)
        except SingularGeometry:
            self.metrics.increment_drop('singular_geometry')
            logger.warning("Trilateration failed: singular anchor geometry")
            raise

        residual = Trilateration.residual(anchors, distances, (raw_x, raw_y))
        self.metrics.record_histogram('trilateration_residual_m', residual)

        x, y = raw_x, raw_y
        fix_type = FixType.FIX_2D
        pos_std = None

        if self.ekf is not None:
            try:
                state = self.ekf.refine((raw_x, raw_y))
            except SingularCovariance:
                logger.warning("EKF refinement rejected: singular innovation covariance")
                raise
            x, y = float(state.mean[0]), float(state.mean[1])
            pos_std = state.position_std
            fix_type = FixType.REFINED

        if self.config.round_position:
            x, y = float(round(x)), float(round(y))

        clamped_x, clamped_y = self.config.map_bounds.clamp(x, y)
        clamped = (clamped_x, clamped_y) != (x, y)
        if clamped:
            self.metrics.increment('positions_clamped')

        self.metrics.increment('position_estimates')

        logger.debug(
            f"Cycle {self._cycle_count}: d={['%.2f' % d for d in distances]} "
            f"raw=({raw_x:.2f}, {raw_y:.2f}) -> ({clamped_x:.2f}, {clamped_y:.2f})"
        )

        return PositionEstimate(
            x=clamped_x,
            y=clamped_y,
            t_solve=t_cycle,
            fix_type=fix_type,
            filter_variant=variant,
            anchor_ids=[a.anchor_id for a in anchors],
            distances={a.anchor_id: d for a, d in zip(anchors, distances)},
            raw_position=(raw_x, raw_y),
            residual_m=residual,
            pos_std=pos_std,
            clamped=clamped,
        )

    def export_state(self) -> dict:
        """
        Serialize filter and EKF state for external persistence.

        Returns:
            Plain dict (JSON-compatible)
        """
        ekf_state = self.ekf.state if self.ekf is not None else None
        return {
            'filter_bank': self.filter_bank.to_dict(),
            'ekf': ekf_state.to_dict() if ekf_state is not None else None,
        }

    def load_state(self, blob: dict):
        """
        Restore state produced by export_state().

        Everything is checked before anything is replaced; on error the
        current session state is kept as is.

        Raises:
            InvalidParameter: Malformed blob
        """
        if not isinstance(blob, dict):
            raise InvalidParameter(f"Pipeline state must be a dict, got {type(blob).__name__}")

        try:
            ekf_blob = blob.get('ekf')
            ekf_state = EKFState.from_dict(ekf_blob) if ekf_blob is not None else None
            bank_blob = blob['filter_bank']
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidParameter(f"Malformed pipeline state: {e}") from e

        if self.ekf is not None and ekf_state is not None:
            expected = self.ekf.config.dimension
            if ekf_state.dimension != expected:
                raise InvalidParameter(
                    f"EKF state has dimension {ekf_state.dimension}, expected {expected}"
                )

        loaded = AnchorFilterBank.parse_dict(bank_blob)
        readings = {}
        for anchor_id in self._anchors:
            reading = self._reading_from_state(anchor_id, loaded.get(anchor_id))
            if reading is not None:
                readings[anchor_id] = reading

        self.filter_bank.restore(loaded)
        if self.ekf is not None:
            self.ekf.reset(ekf_state)
        self._readings = readings

    def _reading_from_state(
        self,
        anchor_id: str,
        states: Optional[Dict[FilterVariant, AnchorFilterState]],
    ) -> Optional[AnchorReading]:
        """
        Rebuild a (stale) reading from restored filter state.

        Raises:
            InvalidParameter: Restored values give unusable distances
        """
        if states is None or any(state.sample_count == 0 for state in states.values()):
            return None

        n = self.config.path_loss_exponent
        history = states[FilterVariant.KALMAN_A].rssi_history
        last_rssi = history[-1] if history else states[FilterVariant.KALMAN_A].previous_filtered_value

        return AnchorReading(
            anchor_id=anchor_id,
            rssi_dbm=last_rssi,
            raw_distance_m=self.path_loss.distance(last_rssi, n),
            sample_count=states[FilterVariant.KALMAN_A].sample_count,
            t_last=0.0,
            variants={
                variant.value: VariantReading(
                    filtered_rssi_dbm=state.previous_filtered_value,
                    distance_m=self.path_loss.distance(state.previous_filtered_value, n),
                    variance=state.variance_estimate,
                )
                for variant, state in states.items()
            },
            is_fresh=False,
        )

    def reset(self):
        """Reset all session state (filters, EKF, readings)."""
        self.filter_bank.reset()
        if self.ekf is not None:
            self.ekf.reset()
        self._readings.clear()
        self._cycle_count = 0
        self.metrics.increment('pipeline_resets')


def create_default_pipeline(
    pipeline_config: dict,
    anchor_config: dict,
    map_config: dict,
) -> PositioningPipeline:
    """
    Create a positioning pipeline from config.py style dictionaries.

    Args:
        pipeline_config: Scalar tunables (PIPELINE_CONFIG)
        anchor_config: anchor_id -> {"x", "y"} (ANCHOR_CONFIG)
        map_config: {"min_x", "max_x", "min_y", "max_y"} (MAP_CONFIG)

    Returns:
        Configured PositioningPipeline
    """
    config = PipelineConfig.from_dict({
        **pipeline_config,
        'anchors': anchor_config,
        'map_bounds': map_config,
    })
    return PositioningPipeline(config)
