"""Tests for document segmentation."""

import random

import pytest

from freight_tender.segmenter import (
    DocumentSegmenter,
    get_block_type_at_position,
    is_in_header,
    segment_document,
)


TENDER = (
    "Load # 556677\n"
    "Total Lbs: 22,176\n"
    "\n"
    "Pickup\n"
    "Acme Cold Storage\n"
    "Dallas, TX 75201\n"
    "Ref 88812\n"
    "\n"
    "Delivery\n"
    "Fresh Mart DC\n"
    "Chicago, IL 60601\n"
    "Ref 99001\n"
)


class TestSegmentation:
    """Header and stop block detection."""

    def test_header_ends_at_first_trigger(self):
        """The header runs up to the first stop trigger."""
        result = segment_document(TENDER)

        assert result.header_end == TENDER.index("Pickup")
        assert result.segments[0].type == "header"
        assert result.segments[0].start_index == 0

    def test_pickup_and_delivery_blocks(self):
        """Each marker opens a block that runs to the next marker."""
        result = segment_document(TENDER)
        types = [s.type for s in result.segments]

        assert types == ["header", "pickup", "delivery"]
        pickup = result.segments[1]
        delivery = result.segments[2]
        assert pickup.end_index == delivery.start_index
        assert delivery.end_index == len(TENDER)
        assert "Dallas" in pickup.text
        assert "Chicago" in delivery.text

    def test_no_triggers_single_header(self):
        """Text without trigger keywords is one header segment."""
        text = "Load # 12345 weight 40000 lbs reefer"
        result = segment_document(text)

        assert result.header_end == len(text)
        assert len(result.segments) == 1
        assert result.segments[0].type == "header"

    def test_close_markers_merge(self):
        """Markers within 20 characters produce a single boundary."""
        text = "Ref 1234\nShipper / Origin: Acme\nConsignee: Fresh Mart"
        result = segment_document(text)

        starts = [s.start_index for s in result.segments if s.type != "header"]
        assert all(b - a > 20 for a, b in zip(starts, starts[1:]))
        assert all(s.end_index > s.start_index for s in result.segments)

    def test_empty_text(self):
        """Empty text has no segments."""
        result = segment_document("")

        assert result.header_end == 0
        assert result.segments == []


class TestBlockTypes:
    """Position lookups."""

    def test_block_type_at_positions(self):
        """Positions resolve to the block that contains them."""
        assert get_block_type_at_position(TENDER, TENDER.index("556677")) == "header"
        assert get_block_type_at_position(TENDER, TENDER.index("88812")) == "pickup"
        assert get_block_type_at_position(TENDER, TENDER.index("99001")) == "delivery"

    def test_is_in_header(self):
        assert is_in_header(TENDER, 0)
        assert not is_in_header(TENDER, TENDER.index("Chicago"))

    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_random_words_without_triggers(self, seed):
        """Random text made of non-trigger words stays one header segment."""
        rng = random.Random(seed)
        words = ["load", "weight", "reefer", "pallets", "12345", "lbs", "cases", "notes"]
        text = " ".join(rng.choice(words) for _ in range(60))

        result = DocumentSegmenter().segment(text)

        assert result.header_end == len(text)
        assert [s.type for s in result.segments] == ["header"]
