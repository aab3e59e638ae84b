"""SmartSight: eye disease screening from a photo.

Command-line entry point. Analyzes one image through the remote service, the
on-device model or the offline fallback, and prints the result.

Usage:
    python main.py eye.jpg
    python main.py eye.jpg --tiers local,offline --json
    python main.py --model-info
"""

import argparse
import json
import logging
import sys

from core.errors import InputError
from core.eye_analyzer import EyeAnalyzer
from core.outcome_classifier import URGENCY_GUIDANCE
from core.utils import AnalysisConfig, PredictionResult, configure_logging, parse_tier_order


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Screen an eye photo for cataract, DR and glaucoma.")
    parser.add_argument("image", nargs="?", default="", help="Image path, file:// URI or data: URI.")
    parser.add_argument("--api-url", help="Base URL of the prediction service.")
    parser.add_argument("--model-path", help="TorchScript model file for on-device inference.")
    parser.add_argument("--tiers", help="Tier order, e.g. remote,local,offline.")
    parser.add_argument("--no-health-probe", action="store_true", help="Skip the /health probe.")
    parser.add_argument("--seed", type=int, help="Seed for the offline fallback.")
    parser.add_argument("--model-info", action="store_true",
                        help="Show the on-device model and whether it is installed, then exit.")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging.")
    return parser


def config_from_args(args: argparse.Namespace) -> AnalysisConfig:
    config = AnalysisConfig()
    if args.api_url:
        config.api_base_url = args.api_url
    if args.model_path:
        config.model_path = args.model_path
    if args.tiers:
        config.tier_order = parse_tier_order(args.tiers)
    if args.no_health_probe:
        config.probe_health = False
    if args.seed is not None:
        config.offline_seed = args.seed
    return config


def model_info_record(analyzer: EyeAnalyzer) -> dict:
    """Registry entry plus where the artifact is expected and whether it is there."""
    info = analyzer.get_model_info()
    path = analyzer.model_path
    available = analyzer.is_model_available()
    return {
        "name": analyzer.config.model_name,
        "display_name": info.display_name if info else "",
        "version": info.version if info else "",
        "input_size": info.input_size if info else analyzer.config.input_size,
        "classes": info.classes if info else [],
        "path": str(path) if path else "",
        "available": available,
        "size_mb": round(path.stat().st_size / (1024 * 1024), 1) if available else 0.0,
    }


def print_model_info(record: dict) -> None:
    print(f"Model:      {record['display_name'] or record['name']}")
    if record["version"]:
        print(f"Version:    {record['version']}")
    print(f"Input:      {record['input_size']}x{record['input_size']}")
    print(f"Path:       {record['path'] or '(none)'}")
    if record["available"]:
        print(f"Installed:  yes ({record['size_mb']:.1f} MB)")
    else:
        print("Installed:  no (on-device tier will fall through)")


def print_result(result: PredictionResult) -> None:
    print(f"Result:     {result.label.value}")
    print(f"Confidence: {result.confidence_score * 100:.1f}% ({result.confidence.value})")
    print(f"Urgency:    {result.urgency.value}")
    print(f"Source:     {result.source.value}")
    if result.is_offline:
        print("Note: offline analysis, not produced by a trained model.")
    print()
    for label, prob in result.probabilities.ranked():
        print(f"  {label.value:<22} {prob * 100:5.1f}%")
    print()
    print(URGENCY_GUIDANCE[result.urgency])
    print(result.disclaimer)


def main(argv=None) -> int:
    """Application entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    analyzer = EyeAnalyzer(config)
    try:
        if args.model_info:
            record = model_info_record(analyzer)
            if args.json:
                print(json.dumps(record, indent=2))
            else:
                print_model_info(record)
            return 0

        try:
            result = analyzer.analyze(args.image)
        except InputError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2

        if args.json:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print_result(result)
        return 0
    finally:
        analyzer.close()


if __name__ == "__main__":
    sys.exit(main())
