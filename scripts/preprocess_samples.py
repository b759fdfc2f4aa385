#!/usr/bin/env python3
"""Run the captcha preprocessing over a folder of sample images.

Writes every variant next to the others and a JSON report with per-variant
sizes and timings.  With --classify the full solver runs against Gemini
(needs GEMINI_API_KEY).

Usage:
    python scripts/preprocess_samples.py --images tests/images --output tests/output
    python scripts/preprocess_samples.py --images samples --classify --strategy per_variant
"""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import os
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
load_dotenv(Path(__file__).resolve().parents[1] / ".env")

from xvps_renew.solver.captcha_solver import CaptchaSolver, Solved, SolverStrategy
from xvps_renew.solver.image_transforms import ChallengeImage, save_variants, transform
from xvps_renew.solver.vision_classifier import GeminiClassifier

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp"}


def process_image(path: Path, output_dir: Path, solver: CaptchaSolver | None) -> dict:
    mime_type = mimetypes.guess_type(path.name)[0] or "image/png"
    image = ChallengeImage(data=path.read_bytes(), mime_type=mime_type)

    t0 = time.time()
    variants = transform(image)
    elapsed = time.time() - t0
    save_variants(variants, output_dir, path.stem)

    entry = {
        "image": path.name,
        "original_size": len(image.data),
        "transform_seconds": round(elapsed, 3),
        "variants": {v.name: len(v.data) for v in variants},
    }

    if solver is not None:
        t0 = time.time()
        outcome = solver.solve(image)
        entry["solve_seconds"] = round(time.time() - t0, 2)
        if isinstance(outcome, Solved):
            entry["solved"] = {
                "code": outcome.code,
                "method": outcome.method,
                "confidence": outcome.confidence,
            }
        else:
            entry["failed"] = outcome.reason
    return entry


def main():
    parser = argparse.ArgumentParser(description="Preprocess captcha samples")
    parser.add_argument("--images", required=True, help="Directory of sample images")
    parser.add_argument("--output", default="output", help="Where variants are written")
    parser.add_argument("--classify", action="store_true", help="Also run the solver")
    parser.add_argument(
        "--strategy", default=SolverStrategy.ENSEMBLE.value,
        choices=[s.value for s in SolverStrategy],
    )
    args = parser.parse_args()

    images_dir = Path(args.images)
    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    images = sorted(p for p in images_dir.iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS)
    if not images:
        logger.warning(f"No images found in {images_dir}")
        return

    solver = None
    if args.classify:
        solver = CaptchaSolver(
            GeminiClassifier(api_key=os.environ.get("GEMINI_API_KEY")),
            strategy=SolverStrategy(args.strategy),
        )

    results = []
    for path in images:
        logger.info(f"Processing {path.name}")
        try:
            results.append(process_image(path, output_dir, solver))
        except Exception as e:
            logger.error(f"  {path.name} failed: {e}")
            results.append({"image": path.name, "error": str(e)})

    ok = [r for r in results if "error" not in r]
    report = {
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
        "summary": {
            "total_images": len(results),
            "processed": len(ok),
            "failed": len(results) - len(ok),
            "avg_transform_seconds": (
                round(sum(r["transform_seconds"] for r in ok) / len(ok), 3) if ok else None
            ),
        },
        "results": results,
    }
    if solver is not None:
        report["summary"]["solved"] = sum(1 for r in ok if "solved" in r)

    report_path = output_dir / "preprocess-report.json"
    with open(report_path, "w") as f:
        json.dump(report, f, indent=2)

    print(f"\n{'='*50}")
    for k, v in report["summary"].items():
        print(f"  {k}: {v}")
    print(f"{'='*50}")
    print(f"Report: {report_path}")


if __name__ == "__main__":
    main()
