"""Tests for windows, chain display construction, path equivalence and merge."""

from engine.chain import (
    SOMEONE_MARKER,
    YOU_MARKER,
    ChainNode,
    ChainVisualization,
    PrivacyLevel,
    TestStatus as Status,
    build_display_chain,
    normalize_path,
    paths_equivalent,
)
from engine.merge import build_record, merge_draft
from engine.records import NotificationDraft
from engine.windows import MILLIS_PER_DAY, hop_window, retention_boundary

from tests.conftest import NOW

DAY = MILLIS_PER_DAY


class TestHopWindow:

    def test_looks_back_from_anchor(self):
        window = hop_window(NOW, 30, retention_boundary(NOW, 180))
        assert window.start == NOW - 30 * DAY
        assert window.end == NOW

    def test_clamped_by_retention(self):
        window = hop_window(NOW, 365, retention_boundary(NOW, 180))
        assert window.start == NOW - 180 * DAY

    def test_bounds_inclusive(self):
        window = hop_window(NOW, 30, 0)
        assert window.contains(NOW)
        assert window.contains(NOW - 30 * DAY)
        assert not window.contains(NOW - 30 * DAY - 1)
        assert not window.contains(NOW + 1)

    def test_anchor_before_retention_is_empty(self):
        window = hop_window(NOW - 200 * DAY, 30, retention_boundary(NOW, 180))
        assert window.is_empty


class TestPrivacyLevel:

    def test_disclosure(self):
        assert PrivacyLevel.FULL.discloses_labels and PrivacyLevel.FULL.discloses_date
        assert PrivacyLevel.STI_ONLY.discloses_labels and not PrivacyLevel.STI_ONLY.discloses_date
        assert not PrivacyLevel.DATE_ONLY.discloses_labels and PrivacyLevel.DATE_ONLY.discloses_date
        assert not PrivacyLevel.ANONYMOUS.discloses_labels and not PrivacyLevel.ANONYMOUS.discloses_date


class TestBuildDisplayChain:

    def test_masks_all_but_direct_contact(self):
        upstream = [
            ChainNode("Reporter", Status.POSITIVE, date=1),
            ChainNode("Middle"),
            ChainNode("Direct"),
        ]
        nodes = build_display_chain(upstream, exposure_date=5)

        assert [n.display_name for n in nodes] == [SOMEONE_MARKER, SOMEONE_MARKER, "Direct", YOU_MARKER]
        assert nodes[0].test_status == Status.POSITIVE
        assert nodes[-1].is_current_user
        assert nodes[-1].date == 5
        assert not any(n.is_current_user for n in nodes[:-1])

    def test_hop_one_shows_reporter_name(self):
        nodes = build_display_chain([ChainNode("Reporter", Status.POSITIVE)], exposure_date=None)
        assert [n.display_name for n in nodes] == ["Reporter", YOU_MARKER]

    def test_serialization_round_trip(self):
        chain = ChainVisualization(
            nodes=[ChainNode("A", Status.POSITIVE, tested_positive_for=["HIV"]), ChainNode(YOU_MARKER, is_current_user=True)],
            paths=[[ChainNode("A", Status.POSITIVE)]],
        )
        restored = ChainVisualization.from_dict(chain.to_dict())
        assert restored == chain

    def test_unknown_status_reads_as_unknown(self):
        node = ChainNode.from_dict({"display_name": "x", "test_status": "bogus"})
        assert node.test_status == Status.UNKNOWN


class TestPathEquivalence:

    def test_group_event_permutation_is_equivalent(self):
        assert paths_equivalent(["a", "b", "c", "d"], ["a", "c", "b", "d"])

    def test_different_endpoints_not_equivalent(self):
        assert not paths_equivalent(["a", "b", "d"], ["x", "b", "d"])

    def test_different_lengths_not_equivalent(self):
        assert not paths_equivalent(["a", "b", "d"], ["a", "b", "c", "d"])

    def test_different_intermediaries_not_equivalent(self):
        assert not paths_equivalent(["a", "b", "d"], ["a", "c", "d"])

    def test_normalize_short_paths_untouched(self):
        assert normalize_path(["b", "a"]) == ["b", "a"]


def _draft(path, hop, labels=None, exposure_at=None):
    nodes = [ChainNode(name) for name in path[:-1]] + [ChainNode(YOU_MARKER, is_current_user=True)]
    return NotificationDraft(
        report_id="r1",
        recipient_id="recipient",
        hop_depth=hop,
        chain_path=list(path),
        nodes=nodes,
        condition_labels=labels,
        exposure_at=exposure_at,
    )


class TestMerge:

    def test_build_record_has_single_path(self):
        record = build_record(_draft(["r", "b", "x"], 2), NOW)
        assert record.chain_paths == [["r", "b", "x"]]
        assert len(record.chain.paths) == 1
        assert record.received_at == record.updated_at == NOW
        assert not record.is_read

    def test_equivalent_path_is_noop(self):
        record = build_record(_draft(["r", "b", "c", "x"], 3), NOW)
        assert merge_draft(record, _draft(["r", "c", "b", "x"], 3), NOW + 1) is False
        assert record.updated_at == NOW
        assert len(record.chain_paths) == 1

    def test_longer_path_is_appended_only(self):
        record = build_record(_draft(["r", "b", "x"], 2), NOW)
        assert merge_draft(record, _draft(["r", "c", "d", "x"], 3), NOW + 1)
        assert record.hop_depth == 2
        assert record.chain_path == ["r", "b", "x"]
        assert len(record.chain_paths) == 2
        assert len(record.chain.paths) == 2

    def test_shorter_path_becomes_primary(self):
        record = build_record(_draft(["r", "c", "d", "x"], 3), NOW)
        assert merge_draft(record, _draft(["r", "b", "x"], 2), NOW + 1)
        assert record.hop_depth == 2
        assert record.chain_path == ["r", "b", "x"]
        assert [n.display_name for n in record.chain.nodes] == ["r", "b", YOU_MARKER]

    def test_merge_keeps_first_disclosure_and_read_state(self):
        record = build_record(_draft(["r", "c", "d", "x"], 3, labels=["HIV"], exposure_at=111), NOW)
        record.is_read = True
        merge_draft(record, _draft(["r", "b", "x"], 2, labels=None, exposure_at=None), NOW + 1)
        assert record.condition_labels == ["HIV"]
        assert record.exposure_at == 111
        assert record.is_read is True
        assert record.received_at == NOW
        assert record.updated_at == NOW + 1
