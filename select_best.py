#!/usr/bin/env python3
"""
BurstPick - Best Frame Selection CLI

Scores one or more burst directories, prints the winning frame of each and
optionally records feedback, exports training samples, or resets the
learned profile.

Usage:
    python select_best.py bursts/0001 bursts/0002
    python select_best.py bursts/0001 --feedback positive --export
    python select_best.py --reset
"""

import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from burst_loader import BurstLoader
from config_loader import ConfigLoader, reload_config
from depth_assessor import DepthAssessor
from feature_extractor import FeatureExtractor
from feedback_export import FeedbackExporter
from frame_models import FrameBundle
from frame_selector import FrameSelector
from personalization_engine import PersonalizationEngine
from personalization_store import JsonProfileStore
from pipeline_robustness import GracefulDegradation, setup_structured_logging
from quality_scorer import QualityScorer

logger = logging.getLogger("burstpick")


# =============================================================================
# LOGGING SETUP
# =============================================================================

def setup_logging(debug: bool = False) -> logging.Logger:
    """Console logging for the CLI; stage file logs are added in main()."""
    logger.setLevel(logging.DEBUG)

    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
        console_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        logger.addHandler(console_handler)

    return logger


# =============================================================================
# WIRING
# =============================================================================

def build_selector(
    config: ConfigLoader,
    use_ml: bool = False,
    degradation: Optional[GracefulDegradation] = None
) -> FrameSelector:
    """Construct the selector and its collaborators from configuration."""
    degradation = degradation or GracefulDegradation()

    predictor = None
    if use_ml:
        from ml_quality_scorer import MLQualityScorer
        predictor = MLQualityScorer()

    pers_config = config.get_personalization_config()
    engine = PersonalizationEngine(
        store=JsonProfileStore(pers_config.profile_path, pers_config.weight_bound),
        config=pers_config,
    )

    scorer = QualityScorer(
        config=config.get_quality_config(),
        predictor=predictor,
        extractor=FeatureExtractor(config.get_feature_config()),
        degradation=degradation,
    )

    return FrameSelector(
        scorer=scorer,
        engine=engine,
        depth_assessor=DepthAssessor(config.get_depth_config()),
        config=config.get_selector_config(),
        degradation=degradation,
    )


def print_result(burst_dir: Path, bundle: FrameBundle, selector: FrameSelector, explain: bool) -> None:
    best = bundle.selected_index
    print(f"\n{burst_dir}: {bundle.frame_count} frames, scene={bundle.scene_hints.scene_type.value}")
    for score in selector.last_scores:
        marker = "★" if score.index == best else " "
        print(
            f"  {marker} [{score.index}] {score.final:.3f} "
            f"(base {score.baseline:.3f} {score.source}, {score.adjustment:+.3f})"
        )
    if explain and best is not None:
        explanation = selector.explain(bundle[best], bundle.scene_hints)
        print("\n" + explanation.breakdown)
        for factor in explanation.factors:
            print(f"    - {factor}")


# =============================================================================
# MAIN
# =============================================================================

def main(
    burst_dirs: list[Path],
    config_path: Optional[Path] = None,
    use_ml: bool = False,
    feedback: Optional[str] = None,
    feedback_frame: Optional[int] = None,
    export: bool = False,
    save_images: bool = True,
    reset: bool = False,
    explain: bool = False,
    show_progress: bool = True,
) -> list[FrameBundle]:
    """
    Score bursts and apply optional feedback/export.

    Args:
        burst_dirs: Directories holding one burst each.
        config_path: config.yaml location (default ./config.yaml).
        use_ml: Use the Aesthetic Predictor V2.5 as the baseline scorer.
        feedback: "positive" or "negative" rating for each burst.
        feedback_frame: Frame index to rate (default: the selected frame).
        export: Write feedback samples for each scored burst.
        save_images: Write thumbnails alongside exported samples.
        reset: Reset the personalization profile before scoring.
        explain: Print a scoring breakdown for each winner.

    Returns:
        Scored bundles in input order.
    """
    config = reload_config(config_path)

    log_cfg = config.get_logging_config()
    setup_structured_logging(Path(log_cfg.get("dir", "./logs")), int(log_cfg.get("max_days", 30)))

    degradation = GracefulDegradation()
    selector = build_selector(config, use_ml, degradation)
    exporter = FeedbackExporter(config.get_export_config()) if export else None
    loader = BurstLoader(depth_assessor=DepthAssessor(config.get_depth_config()))
    bundles = []

    try:
        if reset:
            selector.engine.reset()
            logger.info("🔄 Personalization profile reset")

        iterator = tqdm(burst_dirs, desc="Scoring bursts") if show_progress else burst_dirs
        for burst_dir in iterator:
            burst_dir = Path(burst_dir)
            try:
                items, session = loader.load(burst_dir)
            except NotADirectoryError as e:
                logger.error(str(e))
                continue

            if not items:
                logger.warning(f"No readable frames in {burst_dir}")
                continue

            start = datetime.now()
            bundle = selector.build_bundle(items, session, capture_start_time=start)
            selector.score_and_select(bundle)
            bundles.append(bundle)
            print_result(burst_dir, bundle, selector, explain)

            if feedback is not None:
                index = feedback_frame if feedback_frame is not None else bundle.selected_index
                if not 0 <= index < len(bundle):
                    logger.error(f"Frame {index} out of range for {burst_dir}")
                else:
                    recorded = selector.record_feedback(bundle, index, feedback == "positive")
                    if recorded:
                        logger.info(f"👍 Recorded {feedback} feedback for frame {index}")

            if exporter is not None:
                exporter.export_selection(bundle, save_images=save_images)

        stats = selector.engine.statistics()
        logger.info(stats.summary)
        if degradation.has_failures():
            logger.info(f"Degraded steps: {json.dumps(degradation.get_summary())}")

    finally:
        selector.engine.close()

    return bundles


def cli(argv: Optional[list[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        description="BurstPick - select the best frame of a capture burst"
    )
    parser.add_argument(
        "bursts",
        nargs="*",
        type=Path,
        help="Burst directories to score"
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=None,
        help="Path to config.yaml (default: ./config.yaml)"
    )
    parser.add_argument(
        "--ml",
        action="store_true",
        help="Use Aesthetic Predictor V2.5 as the baseline (requires the ml extra)"
    )
    parser.add_argument(
        "--feedback",
        choices=["positive", "negative"],
        default=None,
        help="Rate the selected frame (or --frame) of every burst"
    )
    parser.add_argument(
        "--frame",
        type=int,
        default=None,
        help="Frame index to rate with --feedback (default: selected frame)"
    )
    parser.add_argument(
        "--export",
        action="store_true",
        help="Export feedback samples (train.csv + manifest) for each burst"
    )
    parser.add_argument(
        "--no-images",
        action="store_true",
        help="Do not write thumbnails with --export"
    )
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Reset the learned personalization profile"
    )
    parser.add_argument(
        "--explain",
        action="store_true",
        help="Print a scoring breakdown for each selected frame"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    args = parser.parse_args(argv)
    setup_logging(args.debug)

    if not args.bursts and not args.reset:
        parser.error("no burst directories given")

    bundles = main(
        burst_dirs=args.bursts,
        config_path=args.config,
        use_ml=args.ml,
        feedback=args.feedback,
        feedback_frame=args.frame,
        export=args.export,
        save_images=not args.no_images,
        reset=args.reset,
        explain=args.explain,
    )
    return 0 if bundles or not args.bursts else 1


if __name__ == "__main__":
    sys.exit(cli())
