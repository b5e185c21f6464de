"""
Incubation Window Resolver

Maps condition labels to incubation periods (days). The largest period
among a report's labels sizes every hop's lookback window.

The built-in table can be replaced by a JSON file of the form
    {"conditions": [{"id": "HIV", "incubationDays": 30}, ...]}
pointed to by EXPOSURE_INCUBATION_CONFIG_PATH.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Union

from .config import get_propagation_settings

logger = logging.getLogger(__name__)

DEFAULT_INCUBATION_DAYS = 30

DEFAULT_INCUBATION_TABLE: Dict[str, int] = {
    "HIV": 30,
    "SYPHILIS": 90,
    "GONORRHEA": 14,
    "CHLAMYDIA": 21,
    "HPV": 180,
    "HERPES": 21,
    "OTHER": 30,
}

LabelsInput = Union[str, Iterable[str], None]


# =============================================================================
# TABLE LOADING
# =============================================================================

def load_incubation_table(path: Optional[str] = None) -> Dict[str, int]:
    """
    Load the incubation table from a JSON file.

    Falls back to the built-in table when no path is given or the file
    is missing or malformed. Entries with a non-positive or non-integer
    period are dropped.
    """
    if not path:
        return dict(DEFAULT_INCUBATION_TABLE)

    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read incubation config {path}: {e}; using defaults")
        return dict(DEFAULT_INCUBATION_TABLE)

    conditions = raw.get("conditions") if isinstance(raw, dict) else None
    if not isinstance(conditions, list):
        logger.warning(f"Incubation config {path} has no 'conditions' list; using defaults")
        return dict(DEFAULT_INCUBATION_TABLE)

    table: Dict[str, int] = {}
    for item in conditions:
        if not isinstance(item, dict):
            continue
        label = item.get("id")
        days = item.get("incubationDays")
        if not isinstance(label, str) or not label.strip():
            continue
        if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
            logger.warning(f"Ignoring invalid incubation period for {label!r}: {days!r}")
            continue
        table[label.strip().upper()] = days

    if not table:
        logger.warning(f"Incubation config {path} has no valid entries; using defaults")
        return dict(DEFAULT_INCUBATION_TABLE)

    logger.info(f"Loaded {len(table)} incubation periods from {path}")
    return table


@lru_cache()
def get_incubation_table() -> Dict[str, int]:
    """Cached incubation table for the configured source."""
    return load_incubation_table(get_propagation_settings().incubation_config_path)


# =============================================================================
# LABEL PARSING
# =============================================================================

def normalize_label(label: str) -> str:
    return label.strip().upper()


def parse_condition_labels(labels: LabelsInput) -> List[str]:
    """
    Parse condition labels into a clean list.

    Accepts a JSON-array string, any iterable of strings, or None.
    Non-string items and blank labels are dropped. Malformed JSON
    yields an empty list.
    """
    if labels is None:
        return []

    if isinstance(labels, str):
        try:
            decoded = json.loads(labels)
        except ValueError:
            return []
        if not isinstance(decoded, list):
            return []
        labels = decoded

    return [item.strip() for item in labels if isinstance(item, str) and item.strip()]


def is_known_label(label: str, table: Optional[Dict[str, int]] = None) -> bool:
    table = table if table is not None else get_incubation_table()
    return normalize_label(label) in table


def incubation_days_for(label: str, table: Optional[Dict[str, int]] = None) -> int:
    """Incubation period for one label, or the default when unknown."""
    table = table if table is not None else get_incubation_table()
    return table.get(normalize_label(label), DEFAULT_INCUBATION_DAYS)


def max_incubation_days(
    labels: LabelsInput,
    table: Optional[Dict[str, int]] = None,
) -> int:
    """
    Largest incubation period among the given labels.

    Args:
        labels: List of labels or a JSON-array string
        table: Optional override table (defaults to the configured one)

    Returns:
        Max period in days; the default for empty, malformed or
        unrecognized input
    """
    parsed = parse_condition_labels(labels)
    if not parsed:
        return DEFAULT_INCUBATION_DAYS

    table = table if table is not None else get_incubation_table()
    longest = max(incubation_days_for(label, table) for label in parsed)

    if longest <= 0:
        return DEFAULT_INCUBATION_DAYS
    return longest


def label_set(labels: LabelsInput) -> Set[str]:
    """Normalized labels; a bare label string counts as a single label."""
    if isinstance(labels, str) and not labels.lstrip().startswith("["):
        labels = [labels]
    return {normalize_label(label) for label in parse_condition_labels(labels)}


def labels_match(entry_labels: LabelsInput, wanted: LabelsInput) -> bool:
    """
    Case-insensitive overlap test used to filter notifications.

    No filter matches everything. An entry with no recorded labels
    (anonymous disclosure) also matches, since its condition is unknown.
    """
    wanted_set = label_set(wanted)
    if not wanted_set:
        return True

    entry_set = label_set(entry_labels)
    if not entry_set:
        return True

    return bool(entry_set & wanted_set)


def overlapping_labels(first: LabelsInput, second: LabelsInput) -> List[str]:
    """Labels of `first` that also appear in `second` (case-insensitive)."""
    second_set = label_set(second)
    return [label for label in parse_condition_labels(first) if normalize_label(label) in second_set]
