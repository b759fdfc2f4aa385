"""Ensemble-first, per-variant-fallback CAPTCHA solver.

``CaptchaSolver.solve`` turns one challenge image into a 6-digit code:

1. Ensemble: every preprocessing variant goes to the classifier in a single
   request.  The reply is accepted only if its one distinct run of 6+
   digits is exactly 6 long.
2. Per-variant fallback: one request per variant.  The first 6-digit run in
   each reply is scored (1.0 if the reply is exactly that run, 0.8 if it is
   buried in extra text) and the best score wins; ties keep the earlier
   variant.

Classifier errors and timeouts never escape ``solve``; they either push the
solver to the fallback or end in ``Failed``.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence, Union

from xvps_renew.solver.image_transforms import ChallengeImage, TransformVariant, transform
from xvps_renew.solver.prompts import (
    CODE_LENGTH,
    format_ensemble_prompt,
    format_single_image_prompt,
)
from xvps_renew.solver.vision_classifier import ClassificationResponse, Classifier

logger = logging.getLogger(__name__)

ENSEMBLE_METHOD = "ensemble"
EXACT_CONFIDENCE = 1.0
EMBEDDED_CONFIDENCE = 0.8

NO_CODE_REASON = "no variant yielded a 6-digit code"
TIMEOUT_REASON = "classification timeout"

# ASCII only: \d would also accept other scripts' digits.
_CODE_RUN = re.compile(r"[0-9]{6}")
_LONG_DIGIT_RUN = re.compile(r"[0-9]{6,}")


class SolverStrategy(Enum):
    ENSEMBLE = "ensemble"
    PER_VARIANT = "per_variant"


@dataclass(frozen=True)
class Solved:
    code: str
    method: str
    confidence: float


@dataclass(frozen=True)
class Failed:
    reason: str


SolveOutcome = Union[Solved, Failed]


@dataclass
class ClassificationResult:
    source_variant: str  # variant name or "ensemble"
    raw_text: str
    extracted_code: Optional[str]
    confidence: float


class ClassificationTimeout(Exception):
    pass


def extract_ensemble_code(text: str) -> Optional[str]:
    """The code in *text* if it offers exactly one candidate, else None.

    Every run of 6+ digits counts as a candidate, so a longer run next to
    the code (or on its own) makes the reply ambiguous.
    """
    runs = set(_LONG_DIGIT_RUN.findall(text))
    if len(runs) != 1:
        return None
    code = runs.pop()
    return code if len(code) == CODE_LENGTH else None


def score_response(source_variant: str, text: str) -> ClassificationResult:
    """Score one per-variant reply (first 6-digit run only)."""
    match = _CODE_RUN.search(text)
    if not match:
        return ClassificationResult(source_variant, text, None, 0.0)
    code = match.group(0)
    confidence = EXACT_CONFIDENCE if text.strip() == code else EMBEDDED_CONFIDENCE
    return ClassificationResult(source_variant, text, code, confidence)


def _response_text(response: ClassificationResponse) -> str:
    text = getattr(response, "text", None)
    if not isinstance(text, str):
        raise TypeError(f"malformed classifier response: {response!r}")
    return text


class CaptchaSolver:
    """Turns a ChallengeImage into a SolveOutcome.

    Args:
        classifier: anything with ``classify(variants, instruction)``.
        notifier: optional sink for diagnostic image uploads.
        strategy: ENSEMBLE (ensemble call, then fallback) or PER_VARIANT
            (fallback only).
        classify_timeout: seconds to wait for one classifier call; None
            waits forever.
        pipeline: image -> variants, ``transform`` by default.
    """

    def __init__(
        self,
        classifier: Classifier,
        notifier=None,
        strategy: SolverStrategy = SolverStrategy.ENSEMBLE,
        classify_timeout: float | None = 60.0,
        pipeline: Callable[[ChallengeImage], list[TransformVariant]] = transform,
    ):
        self.classifier = classifier
        self.notifier = notifier
        self.strategy = strategy
        self.classify_timeout = classify_timeout
        self.pipeline = pipeline
        self.results: list[ClassificationResult] = []

    def solve(self, image: ChallengeImage) -> SolveOutcome:
        t0 = time.time()
        self.results = []

        variants = self.pipeline(image)
        logger.info("Prepared %d captcha variants: %s",
                    len(variants), ", ".join(v.name for v in variants))
        self._queue_diagnostics(image, variants)

        if self.strategy == SolverStrategy.ENSEMBLE:
            outcome = self._solve_ensemble(variants)
            if outcome is None:
                logger.info("Ensemble call inconclusive, falling back to per-variant calls")
                outcome = self._solve_per_variant(variants)
        else:
            outcome = self._solve_per_variant(variants)

        elapsed = time.time() - t0
        if isinstance(outcome, Solved):
            logger.info("Captcha solved: %s (method=%s, confidence=%.2f, %.1fs)",
                        outcome.code, outcome.method, outcome.confidence, elapsed)
        else:
            logger.warning("Captcha not solved: %s (%.1fs)", outcome.reason, elapsed)
        return outcome

    def _classify(
        self, variants: Sequence[TransformVariant], instruction: str,
    ) -> ClassificationResponse:
        if self.classify_timeout is None:
            return self.classifier.classify(variants, instruction)

        # Daemon thread, not a pool worker: pool workers are joined at
        # interpreter exit, so a hung call would keep the process alive.
        future: Future = Future()

        def call():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(self.classifier.classify(variants, instruction))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=call, name="classify", daemon=True).start()
        try:
            return future.result(timeout=self.classify_timeout)
        except FutureTimeout:
            raise ClassificationTimeout(
                f"no classifier reply within {self.classify_timeout:.0f}s"
            ) from None

    def _solve_ensemble(self, variants: list[TransformVariant]) -> Optional[Solved]:
        instruction = format_ensemble_prompt([v.name for v in variants])
        try:
            text = _response_text(self._classify(variants, instruction))
        except ClassificationTimeout as e:
            logger.warning("Ensemble classification timed out: %s", e)
            return None
        except Exception as e:
            logger.warning("Ensemble classification failed: %s", e)
            return None

        code = extract_ensemble_code(text)
        self.results.append(ClassificationResult(
            ENSEMBLE_METHOD, text, code, EXACT_CONFIDENCE if code else 0.0,
        ))
        if code is None:
            logger.info("Ensemble reply has no single unambiguous code: %.80r", text)
            return None
        return Solved(code=code, method=ENSEMBLE_METHOD, confidence=EXACT_CONFIDENCE)

    def _solve_per_variant(self, variants: list[TransformVariant]) -> SolveOutcome:
        instruction = format_single_image_prompt()
        best: ClassificationResult | None = None
        timeouts = 0

        for variant in variants:
            try:
                text = _response_text(self._classify([variant], instruction))
            except ClassificationTimeout as e:
                timeouts += 1
                logger.warning("Variant %s timed out: %s", variant.name, e)
                continue
            except Exception as e:
                logger.warning("Variant %s failed: %s", variant.name, e)
                continue

            result = score_response(variant.name, text)
            self.results.append(result)
            if result.extracted_code is None:
                logger.info("Variant %s: no 6-digit code in %.80r", variant.name, text)
                continue

            logger.info("Variant %s: %s (confidence %.1f)",
                        variant.name, result.extracted_code, result.confidence)
            if best is None or result.confidence > best.confidence:
                best = result

        if best is not None:
            return Solved(
                code=best.extracted_code,
                method=best.source_variant,
                confidence=best.confidence,
            )
        if variants and timeouts == len(variants):
            return Failed(TIMEOUT_REASON)
        return Failed(NO_CODE_REASON)

    def _queue_diagnostics(self, image: ChallengeImage, variants: list[TransformVariant]):
        if self.notifier is None:
            return
        try:
            self.notifier.submit(self._upload_diagnostics, image, variants)
        except Exception as e:
            logger.warning("Could not queue captcha diagnostics: %s", e)

    def _upload_diagnostics(self, image: ChallengeImage, variants: list[TransformVariant]):
        ext = image.mime_type.split("/")[-1]
        self.notifier.send_bytes(
            f"captcha_original.{ext}", image.data, "Captcha: original", image.mime_type,
        )
        for v in variants:
            if v.name == "original":
                continue
            self.notifier.send_bytes(
                f"captcha_{v.name}.png", v.data, f"Captcha: {v.name}", v.mime_type,
            )
