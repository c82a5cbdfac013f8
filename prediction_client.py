# prediction_client.py
"""
HTTP client for the Titanic survival model service.

Provides:
- predict (GET {base_url}/predict?{query} -> probability)
- survival_message (probability -> one of three chat messages)
- ceteris_paribus_url / break_down_url (plot image URLs, no request made)

The service answers /predict with a JSON body like {"result": [0.73]}.
"""
from __future__ import annotations

import enum
import logging
import math
from typing import Optional

import requests

logger = logging.getLogger("prediction_client")

DIED_BELOW = 0.4
SURVIVED_FROM = 0.6


class PredictionError(RuntimeError):
    """The prediction service could not be reached or sent an unusable answer."""


class SurvivalBand(str, enum.Enum):
    DIED = "died"
    TOSS_UP = "toss_up"
    SURVIVED = "survived"


def classify(probability: float) -> SurvivalBand:
    if probability < DIED_BELOW:
        return SurvivalBand.DIED
    if probability < SURVIVED_FROM:
        return SurvivalBand.TOSS_UP
    return SurvivalBand.SURVIVED


def survival_message(probability: float) -> str:
    band = classify(probability)
    if band is SurvivalBand.DIED:
        return f"I'm sorry. It looks like you would've died on Titanic. Your chance of survival equals {probability}"
    if band is SurvivalBand.TOSS_UP:
        return f"Your chance of survival equals {probability}. It's close to a toss of a coin!"
    return f"Good news! You would've survived the disaster. Your chance of survival equals {probability}"


class PredictionClient:
    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def predict_url(self, query: str) -> str:
        return f"{self.base_url}/predict?{query}"

    def ceteris_paribus_url(self, query: str, variable: str) -> str:
        return f"{self.base_url}/ceteris_paribus?{query}variable={variable}"

    def break_down_url(self, query: str) -> str:
        return f"{self.base_url}/break_down?{query}"

    def probability(self, query: str) -> float:
        url = self.predict_url(query)
        logger.info("Prediction request %s", url)
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Prediction request failed: %s", exc)
            raise PredictionError("prediction service unreachable") from exc
        if not response.ok:
            logger.error("Prediction failed - status=%s body=%s", response.status_code, response.text)
            raise PredictionError(f"prediction service returned {response.status_code}")
        try:
            probability = float(response.json()["result"][0])
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.error("Unexpected prediction body: %s", response.text)
            raise PredictionError("prediction service sent an unreadable result") from exc
        if not (math.isfinite(probability) and 0.0 <= probability <= 1.0):
            logger.error("Prediction out of range: %s", response.text)
            raise PredictionError(f"prediction service sent {probability}, not a probability")
        return probability

    def predict(self, query: str) -> str:
        probability = self.probability(query)
        message = survival_message(probability)
        logger.info(message)
        return message
