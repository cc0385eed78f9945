#!/usr/bin/env python3
"""
Medicine Photo Analyzer for MediTrust
=====================================
Runs the authentication pipeline on a photo from the command line.

Usage:
    python -m meditrust.analyze_image <image_path> [--json] [--reference-db <path>]

Examples:
    python -m meditrust.analyze_image tablet.jpg
    python -m meditrust.analyze_image tablet.jpg --json
    python -m meditrust.analyze_image blister.png --reference-db catalogue.json
"""

import argparse
import json
import logging
import mimetypes
import os
import sys
from typing import List, Optional

from meditrust.config import AnalysisConfig
from meditrust.services.analysis import AnalysisResult, analyze_medicine_image
from meditrust.services.errors import MediTrustError
from meditrust.services.reference import load_reference_database

logger = logging.getLogger(__name__)

SEVERITY_MARKERS = {"high": "🔴", "medium": "🟠", "low": "🟡"}


def print_banner():
    """Print MediTrust banner."""
    print("""
╔═══════════════════════════════════════════════════════════════╗
║              MediTrust Medicine Authentication                ║
║            Counterfeit Detection from a Single Photo          ║
╚═══════════════════════════════════════════════════════════════╝
    """)


def print_summary(result: AnalysisResult, image_path: str):
    """Human readable verdict."""
    print(f"📄 Image: {image_path}")
    print(f"🔑 SHA-256: {result.image_sha256}")
    print()
    print("=" * 60)
    if result.authentic:
        print(f"✅ Likely authentic ({result.confidence}% confidence)")
    else:
        print(f"❌ Potential counterfeit ({result.confidence}% confidence)")
    print("=" * 60)

    if result.matched_medicine is not None:
        m = result.matched_medicine
        print(f"💊 Matched: {m.name} ({m.manufacturer}, batch {m.batch_number})")
    else:
        print("💊 No reference medicine matched")
    print()

    print("🔍 Features:")
    for key, score in result.features.items():
        mark = "✓" if score.match else "✗"
        print(f"   {mark} {key:<10} {score.score:>3}  {score.details}")
    print()

    if result.discrepancies:
        print("⚠️  Discrepancies:")
        for d in result.discrepancies:
            marker = SEVERITY_MARKERS.get(d.severity.value, "•")
            print(f"   {marker} [{d.severity.value}] {d.type}: {d.description}")
        print()

    print("📋 Recommendations:")
    for recommendation in result.recommendations:
        print(f"   • {recommendation}")
    print()


def analyze_file(
    image_path: str,
    as_json: bool = False,
    reference_db: Optional[str] = None,
    timeout: Optional[float] = None
) -> bool:
    """
    Analyze one photo and print the result.

    Args:
        image_path: Path to the photo
        as_json: Print the result as JSON instead of a summary
        reference_db: Optional JSON catalogue replacing the built-in one
        timeout: Optional deadline override in seconds

    Returns:
        True if a verdict was produced, False otherwise
    """
    if not os.path.exists(image_path):
        print(f"❌ Error: Input file '{image_path}' not found", file=sys.stderr)
        return False

    content_type, _ = mimetypes.guess_type(image_path)

    try:
        config = AnalysisConfig.from_env()
        if timeout is not None:
            config = config.with_overrides(timeout_seconds=timeout)
        database = load_reference_database(path=reference_db)

        with open(image_path, "rb") as f:
            image_bytes = f.read()

        result = analyze_medicine_image(
            image_bytes, content_type, database=database, config=config
        )
    except (MediTrustError, ValueError, OSError) as e:
        print(f"❌ Error analyzing image: {e}", file=sys.stderr)
        return False

    if as_json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        print_summary(result, image_path)
    return True


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="MediTrust - check a medicine photo against known-authentic references",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Analyze a tablet photo:
    python -m meditrust.analyze_image tablet.jpg

  Machine readable output:
    python -m meditrust.analyze_image tablet.jpg --json

  Use a custom reference catalogue:
    python -m meditrust.analyze_image tablet.jpg --reference-db catalogue.json
        """
    )

    parser.add_argument(
        "image_path",
        help="Path to the medicine photo (JPEG, PNG, WEBP, ...)"
    )

    parser.add_argument(
        "--json",
        dest="as_json",
        action="store_true",
        help="Print the full result as JSON"
    )

    parser.add_argument(
        "-r", "--reference-db",
        dest="reference_db",
        default=None,
        help="JSON reference catalogue (default: built-in catalogue)"
    )

    parser.add_argument(
        "-t", "--timeout",
        type=float,
        default=None,
        help="Analysis deadline in seconds"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose output"
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else os.getenv("MEDITRUST_LOG_LEVEL", "WARNING").upper(),
        format="%(levelname)s %(name)s: %(message)s"
    )

    if not args.as_json:
        print_banner()

    success = analyze_file(
        image_path=args.image_path,
        as_json=args.as_json,
        reference_db=args.reference_db,
        timeout=args.timeout
    )

    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
