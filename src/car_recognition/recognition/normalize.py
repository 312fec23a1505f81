from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Final

from ..errors import ErrorCode, app_error
from ..types import Car, PredictionCandidate

_YEAR_RE: Final[re.Pattern[str]] = re.compile(r"[0-9]{4}")


def parse_label(label: str) -> tuple[str, str, str | None]:
    """Split a classifier label into make, model and optional year.

    `"Toyota Corolla 2020"` gives `("Toyota", "Corolla", "2020")`; a label
    whose last token is not four digits has no year.
    """
    parts = label.split(" ")
    make = parts[0]
    if len(parts) > 1 and _YEAR_RE.fullmatch(parts[-1]):
        return make, " ".join(parts[1:-1]), parts[-1]
    return make, " ".join(parts[1:]), None


def normalize_confidence(raw: float) -> float:
    # Heuristic: out-of-range upstream scores are assumed to top out near 2.
    if 0.0 <= raw <= 1.0:
        return raw
    return max(0.0, min(raw / 2.0, 1.0))


def to_car(candidate: PredictionCandidate) -> Car:
    make, model, year = parse_label(candidate.label)
    return Car(
        make=make,
        model=model,
        year=year,
        confidence=normalize_confidence(candidate.confidence),
    )


def _candidate(raw: object) -> PredictionCandidate:
    if not isinstance(raw, Mapping):
        raise app_error(ErrorCode.upstream_error, "Malformed prediction in API response")
    label = raw.get("class")
    conf = raw.get("confidence")
    if not isinstance(label, str) or isinstance(conf, bool) or not isinstance(conf, int | float):
        raise app_error(ErrorCode.upstream_error, "Malformed prediction in API response")
    return PredictionCandidate(label=label, confidence=float(conf))


def candidates_from_response(
    body: Mapping[str, object],
) -> tuple[PredictionCandidate | None, list[PredictionCandidate]]:
    top_raw = body.get("top_prediction")
    top = _candidate(top_raw) if top_raw else None
    preds_raw = body.get("predictions")
    preds = [_candidate(p) for p in preds_raw] if isinstance(preds_raw, list) else []
    return top, preds


def normalize_predictions(body: Mapping[str, object]) -> list[Car]:
    """Turn an upstream response body into the ranked car list.

    The top prediction comes first. Entries of `predictions` that exactly
    repeat it (same label and raw confidence) are dropped; the rest keep the
    upstream order.
    """
    top, preds = candidates_from_response(body)
    cars: list[Car] = []
    if top is not None:
        cars.append(to_car(top))
    for p in preds:
        if top is not None and p.label == top.label and p.confidence == top.confidence:
            continue
        cars.append(to_car(p))
    return cars
