# variables.py
"""
Registry of the Titanic model's predictive variables.

Provides:
- Feature (canonical name, storage key, label, description)
- FEATURES (fixed order used when building prediction queries)
- display_label / storage_key_of / canonical_name_of / description lookups

Two features are stored under a different key than the one users say:
gender -> gender_value and class -> class_value. Every other feature uses the
same name for both.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

UNSET = "X"


@dataclass(frozen=True)
class Feature:
    canonical_name: str
    storage_key: str
    display_label: str
    description: str


FEATURES: Tuple[Feature, ...] = (
    Feature("age", "age", "Age", "Age in years."),
    Feature("gender", "gender_value", "Gender", 'Gender either "male" or "female"'),
    Feature("fare", "fare", "Fare", "Ticket fare in pounds."),
    Feature(
        "class",
        "class_value",
        "Class",
        'Passenger class. One of ("1st", "2nd", "3rd", "deck crew", "engineering crew", '
        '"restaurant staff" or "victualling crew")',
    ),
    Feature("parch", "parch", "Number of parents/children", "Number of Parent/Child aboard"),
    Feature("sibsp", "sibsp", "Number of siblings/spouse", "Number of Sibling/Spouse aboard"),
    Feature(
        "embarked",
        "embarked",
        "Place of embarkment",
        'Where did the passenger embark. One of ("Belfast", "Cherbourg", "Queenstown", "Southampton")',
    ),
)

FEATURE_NAMES: Tuple[str, ...] = tuple(f.canonical_name for f in FEATURES)
STORAGE_KEYS: Tuple[str, ...] = tuple(f.storage_key for f in FEATURES)

_BY_NAME: Dict[str, Feature] = {f.canonical_name: f for f in FEATURES}
_BY_KEY: Dict[str, Feature] = {f.storage_key: f for f in FEATURES}

EMBARKMENT_PLACES = ["Belfast", "Cherbourg", "Queenstown", "Southampton"]
PASSENGER_CLASSES = ["1st", "2nd", "3rd"]
CREW_CLASSES = ["deck crew", "engineering crew", "restaurant staff", "victualling crew"]


def get_feature(name: Optional[str]) -> Optional[Feature]:
    """Look a feature up by canonical name or storage key."""
    if not name:
        return None
    return _BY_NAME.get(name) or _BY_KEY.get(name)


def storage_key_of(name: str) -> str:
    feature = _BY_NAME.get(name)
    return feature.storage_key if feature else name


def canonical_name_of(key: str) -> str:
    feature = _BY_KEY.get(key)
    return feature.canonical_name if feature else key


def display_label(name: str) -> str:
    feature = _BY_NAME.get(name)
    return feature.display_label if feature else name


def description(name: str) -> str:
    feature = _BY_NAME.get(name)
    if feature is None:
        return f"unknown variable {name}"
    return feature.description
