"""Tests for snapshot diffs."""

from __future__ import annotations

import pytest

from tabvault.sync.diff import apply_diff, compute_diff, decode_diff, encode_diff, reproduces
from tabvault.sync.errors import ReadCorruptionError


class TestComputeApply:
    """Tests for compute_diff() / apply_diff()."""

    def test_added_and_deleted(self, make_vault, make_tab):
        prev = make_vault(5)
        curr = prev[1:] + [make_tab(50), make_tab(51)]
        diff = compute_diff(prev, curr)
        assert [t.id for t in diff.added] == ["tab-50", "tab-51"]
        assert diff.deleted == ["tab-0"]
        assert diff.timestamp > 0

    def test_apply_reproduces(self, make_vault, make_tab):
        prev = make_vault(5)
        curr = [prev[0], prev[2], prev[4], make_tab(9)]
        diff = compute_diff(prev, curr)
        assert apply_diff(prev, diff) == curr
        assert reproduces(prev, curr, diff)

    def test_empty(self, sample_vault):
        assert compute_diff(sample_vault, sample_vault).is_empty

    def test_edit_in_place_not_reproduced(self, make_vault):
        """Id diffs cannot see edits, so reproduces() rejects them."""
        prev = make_vault(3)
        curr = [t.model_copy(deep=True) for t in prev]
        curr[1].title = "renamed"
        diff = compute_diff(prev, curr)
        assert diff.is_empty
        assert not reproduces(prev, curr, diff)

    def test_reorder_not_reproduced(self, make_vault):
        prev = make_vault(3)
        curr = list(reversed(prev))
        assert not reproduces(prev, curr, compute_diff(prev, curr))

    def test_apply_does_not_share_items(self, make_vault, make_tab):
        prev = make_vault(2)
        diff = compute_diff(prev, prev + [make_tab(7)])
        applied = apply_diff(prev, diff)
        applied[-1].title = "changed"
        assert diff.added[0].title != "changed"


class TestEncodeDecode:
    """Tests for the stored diff record."""

    def test_roundtrip(self, make_vault, make_tab):
        prev = make_vault(4, with_group=True)
        curr = prev[1:] + [make_tab(77)]
        diff = compute_diff(prev, curr)
        record = encode_diff(diff, "base-sum")

        decoded, base = decode_diff(record.model_dump(by_alias=True))
        assert base == "base-sum"
        assert decoded.added == diff.added
        assert decoded.deleted == diff.deleted
        assert decoded.timestamp == diff.timestamp

    def test_stored_with_camel_case(self, make_vault):
        record = encode_diff(compute_diff([], make_vault(1)), "b")
        assert set(record.model_dump(by_alias=True)) == {
            "payload", "checksum", "baseChecksum", "payloadChecksum",
        }

    def test_checksum_mismatch(self, make_vault):
        value = encode_diff(compute_diff([], make_vault(2)), "b").model_dump(by_alias=True)
        value["checksum"] = "0" * 64
        with pytest.raises(ReadCorruptionError):
            decode_diff(value)

    def test_damaged_payload(self, make_vault):
        value = encode_diff(compute_diff([], make_vault(2)), "b").model_dump(by_alias=True)
        value["payload"] = value["payload"][:-10]
        with pytest.raises(ReadCorruptionError):
            decode_diff(value)

    def test_every_flipped_payload_character(self, make_vault):
        value = encode_diff(compute_diff([], make_vault(3)), "b").model_dump(by_alias=True)
        payload = value["payload"]
        for i, ch in enumerate(payload):
            value["payload"] = payload[:i] + ("A" if ch != "A" else "B") + payload[i + 1:]
            with pytest.raises(ReadCorruptionError):
                decode_diff(value)

    @pytest.mark.parametrize("value", [None, "diff", {"payload": "x"}])
    def test_malformed_record(self, value):
        with pytest.raises(ReadCorruptionError):
            decode_diff(value)
