"""Instructions sent to the vision model with CAPTCHA images."""

from __future__ import annotations

CODE_LENGTH = 6

ENSEMBLE_PROMPT = """\
The {count} images above are the SAME captcha challenge, each shown under a \
different image processing (original, binarized, inverted, thresholded, \
edge-detected): {variant_list}.

The captcha answer is a fixed-length numeric code of exactly {length} digits \
(0-9). Use all the versions together to decide on ONE answer: where a digit \
is unclear in one version, check the others.

Reply with the {length} digits only. No spaces, no words, no punctuation.
"""

SINGLE_IMAGE_PROMPT = """\
This image is a captcha containing a numeric code of exactly {length} digits \
(0-9). Ignore background noise and interference lines.

Reply with the {length} digits only. No spaces, no words, no punctuation.
"""


def format_ensemble_prompt(variant_names: list[str]) -> str:
    return ENSEMBLE_PROMPT.format(
        count=len(variant_names),
        variant_list=", ".join(variant_names),
        length=CODE_LENGTH,
    )


def format_single_image_prompt() -> str:
    return SINGLE_IMAGE_PROMPT.format(length=CODE_LENGTH)
