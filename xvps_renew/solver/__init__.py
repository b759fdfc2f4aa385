"""CAPTCHA preprocessing, classification and ensemble solving."""

from __future__ import annotations

from xvps_renew.solver.captcha_solver import (
    CaptchaSolver,
    ClassificationResult,
    Failed,
    SolveOutcome,
    Solved,
    SolverStrategy,
)
from xvps_renew.solver.image_transforms import (
    VARIANT_NAMES,
    ChallengeImage,
    TransformVariant,
    transform,
)
from xvps_renew.solver.vision_classifier import ClassificationResponse, GeminiClassifier

__all__ = [
    "CaptchaSolver",
    "ChallengeImage",
    "ClassificationResponse",
    "ClassificationResult",
    "Failed",
    "GeminiClassifier",
    "SolveOutcome",
    "Solved",
    "SolverStrategy",
    "TransformVariant",
    "VARIANT_NAMES",
    "transform",
]
