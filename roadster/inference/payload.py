"""Locate and normalize predictions in arbitrarily-shaped upstream responses.

Workflow responses nest predictions at varying depths (``outputs[0].predictions``,
``outputs[0].model.predictions`` …) while direct detection returns them at the
top level, so the container is found structurally instead of by path.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional

from roadster.core.models import BoundingBoxPrediction
from roadster.core.utils import read_object, to_finite_number

MAX_SEARCH_DEPTH = 7
PREDICTIONS_KEY = "predictions"
PLACEHOLDER_LABEL = "object"


def _holds_predictions(value: dict) -> bool:
    return isinstance(value.get(PREDICTIONS_KEY), list)


def find_predictions_container(value: Any, depth: int = 0) -> Optional[dict]:
    """Depth-first search for the first dict with a list-valued ``predictions``."""
    if depth > MAX_SEARCH_DEPTH or not isinstance(value, (dict, list)):
        return None

    if isinstance(value, list):
        for item in value:
            found = find_predictions_container(item, depth + 1)
            if found is not None:
                return found
        return None

    if _holds_predictions(value):
        return value

    for nested in value.values():
        found = find_predictions_container(nested, depth + 1)
        if found is not None:
            return found
    return None


def normalize_inference_payload(payload: Any) -> dict:
    """Return the predictions container, carrying the top-level ``image`` along."""
    if not isinstance(payload, dict):
        return {"raw": payload}

    found = find_predictions_container(payload)
    if found is None:
        return payload

    if "image" not in found and isinstance(payload.get("image"), dict):
        return {**found, "image": payload["image"]}
    return found


@dataclass
class ExtractedPayload:
    container: dict
    width: Optional[float]
    height: Optional[float]

    @property
    def raw_predictions(self) -> Any:
        return self.container.get(PREDICTIONS_KEY)


def extract_predictions(payload: Any) -> ExtractedPayload:
    container = normalize_inference_payload(payload)
    image = read_object(container.get("image"))
    return ExtractedPayload(
        container=container,
        width=to_finite_number(image.get("width")),
        height=to_finite_number(image.get("height")),
    )


def _label(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return PLACEHOLDER_LABEL


def normalize_predictions(
    raw_predictions: Any,
    require_position: bool = False,
) -> list[BoundingBoxPrediction]:
    """Keep predictions with finite positive size; blank labels get a placeholder.

    With ``require_position`` (camera-side live boxes) finite ``x``/``y`` are
    also required and confidence in ``[0, 1]`` is scaled to percent.
    """
    if not isinstance(raw_predictions, list):
        return []

    results: list[BoundingBoxPrediction] = []
    for item in raw_predictions:
        if not isinstance(item, dict):
            continue

        width = to_finite_number(item.get("width"))
        height = to_finite_number(item.get("height"))
        if width is None or height is None or width <= 0 or height <= 0:
            continue
        if not math.isfinite(width * height):
            continue

        x = to_finite_number(item.get("x"))
        y = to_finite_number(item.get("y"))
        if require_position and (x is None or y is None):
            continue

        confidence = to_finite_number(item.get("confidence"))
        if require_position and confidence is not None and confidence <= 1:
            confidence *= 100

        results.append(
            BoundingBoxPrediction(
                label=_label(item.get("class")),
                width=width,
                height=height,
                x=x if x is not None else 0.0,
                y=y if y is not None else 0.0,
                confidence=confidence,
            )
        )
    return results
