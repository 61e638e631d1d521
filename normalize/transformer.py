# normalize/transformer.py
import math
import re
from typing import Callable, Dict, List, Optional, Tuple

EMPTY_MARKERS = {"", "null", "none", "nan", "n/a", "na"}

# Stored encoding of the gender measurement
GENDER_CODES = {
    "male": "0",
    "m": "0",
    "0": "0",
    "female": "1",
    "f": "1",
    "1": "1",
}
GENDER_CLASSIFIER_CODES = {"0": "M", "1": "F"}
GENDER_LABELS = {"0": "Male", "1": "Female"}


def clean_cell(value) -> Optional[str]:
    """
    Normalize a raw cell to stripped text.
    Empty, null and NaN cells come back as None.
    """
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    text = str(value).strip()
    if text.lower() in EMPTY_MARKERS:
        return None
    return text


def encode_gender(value) -> str:
    """Map a gender literal (male/m/0, female/f/1) to the stored 0/1 code."""
    text = clean_cell(value)
    if text is None:
        raise ValueError("gender is empty")
    if text.endswith(".0"):
        text = text[:-2]
    code = GENDER_CODES.get(text.lower())
    if code is None:
        raise ValueError(f"Invalid gender. Expected 'male' or 'female', got: {value}")
    return code


def parse_numeric(value) -> str:
    """Validate a numeric cell and return its canonical text."""
    text = clean_cell(value)
    if text is None:
        raise ValueError("value is empty")
    try:
        number = float(text)
    except ValueError:
        raise ValueError(f"'{text}' is not a number")
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"'{text}' is not a finite number")
    return text


def normalize_value(demographic_field: Optional[str], value) -> str:
    """Canonical stored text for a measurement value."""
    if demographic_field == "gender":
        return encode_gender(value)
    if demographic_field is not None:
        text = clean_cell(value)
        if text is None:
            raise ValueError(f"{demographic_field} is empty")
        return text
    return parse_numeric(value)


def demographic_to_classifier(demographic_field: str, stored: str):
    """Re-express a stored demographic value in the classifier's vocabulary."""
    if demographic_field == "gender":
        return GENDER_CLASSIFIER_CODES.get(str(stored), stored)
    return stored


def demographic_to_label(demographic_field: str, stored: str) -> str:
    """Human-readable form of a stored demographic value for prompt text."""
    if demographic_field == "gender":
        return GENDER_LABELS.get(str(stored), str(stored))
    return str(stored)


# Classifier response key variants, tried in this order
def snake_lower(name: str) -> str:
    return re.sub(r"\s+", "_", name.lower())


def plain_lower(name: str) -> str:
    return name.lower()


def exact(name: str) -> str:
    return name


def without_spaces(name: str) -> str:
    return re.sub(r"\s+", "", name)


KEY_VARIANTS: Tuple[Callable[[str], str], ...] = (
    snake_lower,
    plain_lower,
    exact,
    without_spaces,
)


def candidate_keys(name: str) -> List[str]:
    return [variant(name) for variant in KEY_VARIANTS]


def match_classification(name: str, response: Dict) -> Optional[str]:
    """
    Find the classification for a measurement in a classifier response.
    Returns None when no key variant has a classification.
    """
    for key in candidate_keys(name):
        entry = response.get(key)
        if isinstance(entry, dict) and entry.get("classification"):
            return str(entry["classification"])
    return None
