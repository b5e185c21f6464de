"""
Chain Visualization Model

The payload a notified user sees: the ordered list of people between the
reporter and themselves, with each person's test status. When several
non-equivalent paths reach the same recipient, every path is kept in
`paths` alongside the primary `nodes`.

Upstream identities are never revealed. Only the recipient's direct
contact keeps a display name (the name the recipient gave them); every
other upstream node carries a localization marker instead.
"""

from __future__ import annotations

import copy
import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

SOMEONE_MARKER = "@@chain_someone@@"
YOU_MARKER = "@@chain_you@@"


class TestStatus(str, enum.Enum):
    """Test status shown for each chain member."""
    POSITIVE = "POSITIVE"
    NEGATIVE = "NEGATIVE"
    UNKNOWN = "UNKNOWN"


class PrivacyLevel(str, enum.Enum):
    """What a reporter chooses to disclose to notified users."""
    FULL = "FULL"
    STI_ONLY = "STI_ONLY"
    DATE_ONLY = "DATE_ONLY"
    ANONYMOUS = "ANONYMOUS"

    @property
    def discloses_labels(self) -> bool:
        return self in (PrivacyLevel.FULL, PrivacyLevel.STI_ONLY)

    @property
    def discloses_date(self) -> bool:
        return self in (PrivacyLevel.FULL, PrivacyLevel.DATE_ONLY)


# =============================================================================
# NODES
# =============================================================================

@dataclass
class ChainNode:
    """One person in a displayed chain."""
    display_name: str
    test_status: TestStatus = TestStatus.UNKNOWN
    date: Optional[int] = None
    is_current_user: bool = False
    tested_positive_for: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "display_name": self.display_name,
            "test_status": self.test_status.value,
            "is_current_user": self.is_current_user,
        }
        if self.date is not None:
            data["date"] = self.date
        if self.tested_positive_for:
            data["tested_positive_for"] = list(self.tested_positive_for)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainNode":
        try:
            status = TestStatus(data.get("test_status", TestStatus.UNKNOWN.value))
        except ValueError:
            status = TestStatus.UNKNOWN
        return cls(
            display_name=data.get("display_name", SOMEONE_MARKER),
            test_status=status,
            date=data.get("date"),
            is_current_user=bool(data.get("is_current_user", False)),
            tested_positive_for=data.get("tested_positive_for"),
        )


@dataclass
class ChainVisualization:
    """Primary node list plus every distinct contributing path."""
    nodes: List[ChainNode]
    paths: List[List[ChainNode]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [node.to_dict() for node in self.nodes],
            "paths": [[node.to_dict() for node in path] for path in self.paths],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ChainVisualization":
        if not data:
            return cls(nodes=[], paths=[])
        nodes = [ChainNode.from_dict(item) for item in data.get("nodes", [])]
        paths = [
            [ChainNode.from_dict(item) for item in path]
            for path in data.get("paths", [])
        ]
        return cls(nodes=nodes, paths=paths)

    def copy(self) -> "ChainVisualization":
        return copy.deepcopy(self)


def build_display_chain(
    upstream: List[ChainNode],
    exposure_date: Optional[int],
) -> List[ChainNode]:
    """
    Turn the internal upstream chain into what the recipient sees.

    `upstream` runs reporter-first and ends with the recipient's direct
    contact. The direct contact keeps its name; everyone before it is
    masked. A trailing node represents the recipient.
    """
    display: List[ChainNode] = []
    last = len(upstream) - 1
    for index, node in enumerate(upstream):
        display.append(ChainNode(
            display_name=node.display_name if index == last else SOMEONE_MARKER,
            test_status=node.test_status,
            date=node.date,
            is_current_user=False,
            tested_positive_for=node.tested_positive_for,
        ))
    display.append(ChainNode(
        display_name=YOU_MARKER,
        test_status=TestStatus.UNKNOWN,
        date=exposure_date,
        is_current_user=True,
    ))
    return display


# =============================================================================
# PATH EQUIVALENCE
# =============================================================================

def normalize_path(path: List[str]) -> List[str]:
    """
    Canonical form for comparing paths.

    Endpoints stay in place; intermediaries are sorted, so that a group
    event (A->B->C->D vs A->C->B->D) normalizes to the same sequence.
    """
    if len(path) <= 2:
        return list(path)
    return [path[0], *sorted(path[1:-1]), path[-1]]


def paths_equivalent(first: List[str], second: List[str]) -> bool:
    if len(first) != len(second):
        return False
    return normalize_path(first) == normalize_path(second)


def contains_equivalent_path(paths: List[List[str]], candidate: List[str]) -> bool:
    return any(paths_equivalent(existing, candidate) for existing in paths)
