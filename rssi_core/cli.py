"""
RSSI scan replay.

Reads recorded scan cycles (JSON lines) and runs them through the
positioning pipeline, printing one line per cycle. A line that cannot be
parsed or is rejected by the pipeline is logged and skipped.

Input format, one cycle per line:
    {"t": 12.5, "samples": [{"anchor_id": "b6:e6:2d:23:84:90", "rssi_dbm": -58}, ...]}
"""

import json
import logging
import argparse
from typing import Iterator, List, Optional, Tuple

from rssi_core import config
from rssi_core.errors import PositioningError
from rssi_core.localization import create_default_pipeline, PositioningPipeline
from rssi_core.metrics import get_metrics
from rssi_core.proto import CycleResult, RssiSample

logger = logging.getLogger(__name__)


def parse_cycle(line: str, line_no: int = 0) -> Tuple[float, List[RssiSample]]:
    """
    Parse one JSON line into (t, samples).

    Raises:
        ValueError: Malformed line (json.JSONDecodeError and InvalidParameter
            are both ValueErrors)
    """
    record = json.loads(line)
    if not isinstance(record, dict) or not isinstance(record.get('samples'), list):
        raise ValueError(f"line {line_no}: expected an object with a 'samples' list")

    try:
        t = float(record.get('t', 0.0))
    except (TypeError, ValueError):
        raise ValueError(f"line {line_no}: bad cycle time {record.get('t')!r}") from None

    samples = [RssiSample.from_dict(s, timestamp=t) for s in record['samples']]
    return t, samples


def iter_lines(path: str) -> Iterator[Tuple[int, str]]:
    """Yield (line_no, text) for every non-empty line of a file."""
    with open(path, 'r', encoding='utf-8') as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if line:
                yield line_no, line


def format_result(cycle: int, result: CycleResult) -> str:
    """One-line summary of a cycle."""
    position = result.position
    if not result.has_position:
        return f"[{cycle:4d}] t={position.t_solve:.2f} NO_FIX"

    distances = " ".join(f"{d:6.2f}" for d in position.distances.values())
    return (
        f"[{cycle:4d}] t={position.t_solve:.2f} {position.fix_type.name:7s} "
        f"x={position.x:7.2f} y={position.y:7.2f} d=[{distances}]"
    )


def build_pipeline(args: argparse.Namespace) -> PositioningPipeline:
    """Pipeline from the config defaults overridden by command-line flags."""
    pipeline_config = dict(config.PIPELINE_CONFIG)

    if args.filter:
        pipeline_config["filter_variant"] = args.filter
    if args.n is not None:
        pipeline_config["path_loss_exponent"] = args.n
    if args.noise is not None:
        pipeline_config["kalman_noise"] = args.noise
    if args.alpha is not None:
        pipeline_config["feedback_alpha"] = args.alpha
    if args.ekf:
        pipeline_config["ekf_enabled"] = True

    return create_default_pipeline(pipeline_config, config.ANCHOR_CONFIG, config.MAP_CONFIG)


def run(args: argparse.Namespace) -> int:
    """
    Replay a recording.

    Returns:
        Process exit code
    """
    try:
        pipeline = build_pipeline(args)
    except PositioningError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    cycles = 0
    fixes = 0
    rejected = 0
    for line_no, line in iter_lines(args.file):
        cycles += 1
        try:
            t, samples = parse_cycle(line, line_no)
            result = pipeline.process(samples, t_cycle=t)
        except (PositioningError, ValueError) as e:
            # Rejected cycle; keep replaying
            rejected += 1
            logger.warning(f"Cycle {cycles} (line {line_no}) rejected: {e}")
            continue

        if result.has_position:
            fixes += 1
        print(format_result(cycles, result))

    print(f"Cycles: {cycles}, fixes: {fixes}, rejected: {rejected}")
    if args.metrics:
        get_metrics().print_summary()

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point."""
    parser = argparse.ArgumentParser(description='Replay RSSI scans through the positioning pipeline')
    parser.add_argument('file', type=str,
                        help='JSON-lines recording of scan cycles')
    parser.add_argument('--filter', '-f', type=str, default=None,
                        help='filter variant: kalman_a | kalman_b | feedback')
    parser.add_argument('--n', type=float, default=None,
                        help='path-loss exponent')
    parser.add_argument('--noise', '-q', type=float, default=None,
                        help='Kalman noise q')
    parser.add_argument('--alpha', '-a', type=float, default=None,
                        help='feedback filter alpha')
    parser.add_argument('--ekf', action='store_true',
                        help='enable EKF refinement')
    parser.add_argument('--metrics', '-m', action='store_true',
                        help='print a metrics summary at the end')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='enable debug logging')

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, config.LOGGING_CONFIG["level"]),
        format=config.LOGGING_CONFIG["format"]
    )
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    return run(args)
