"""
Finding Deduplication Tests
===========================

Tests for:
- Grouping by (region, title) after case folding
- Best confidence / best image resolution
- "Observed in images" labels
"""

import pytest

from scan_review.dedup import (
    deduplicate_findings,
    finding_key,
    format_image_range,
    image_positions,
)
from scan_review.schemas import Confidence, RawFinding, ReviewStatus


def raw(title, region, confidence, image_id, description=None):
    return RawFinding(
        title=title,
        region=region,
        confidence=Confidence(confidence),
        source_image_id=image_id,
        description=description or f"{title} in {region}.",
    )


ORDER = ["img-1", "img-2", "img-3", "img-4", "img-5"]


# =============================================================================
# Grouping
# =============================================================================

class TestGrouping:
    """Findings merge on exact (region, title) after lowercasing"""

    def test_duplicate_across_two_images_yields_one_finding(self):
        findings = deduplicate_findings(
            [
                raw("Endometrioma", "Left Ovary", "Medium", "img-1"),
                raw("Endometrioma", "Left Ovary", "Medium", "img-2"),
            ],
            ORDER,
        )

        assert len(findings) == 1
        assert findings[0].source_image_ids == ["img-1", "img-2"]

    def test_case_is_folded(self):
        findings = deduplicate_findings(
            [
                raw("Endometrioma", "Left Ovary", "Low", "img-1"),
                raw("ENDOMETRIOMA", "left ovary", "Low", "img-2"),
            ],
            ORDER,
        )

        assert len(findings) == 1
        # Display text comes from the first raw finding
        assert findings[0].region == "Left Ovary"
        assert findings[0].title == "Endometrioma"

    def test_differently_worded_titles_stay_separate(self):
        findings = deduplicate_findings(
            [
                raw("Cyst", "Left Ovary", "Low", "img-1"),
                raw("Ovarian Cyst", "Left Ovary", "Low", "img-2"),
            ],
            ORDER,
        )

        assert len(findings) == 2

    def test_same_title_different_region_stays_separate(self):
        findings = deduplicate_findings(
            [
                raw("Cyst", "Left Ovary", "Low", "img-1"),
                raw("Cyst", "Right Ovary", "Low", "img-1"),
            ],
            ORDER,
        )

        assert [f.region for f in findings] == ["Left Ovary", "Right Ovary"]

    def test_surrounding_whitespace_is_not_folded(self):
        findings = deduplicate_findings(
            [
                raw("Cyst", "Left Ovary", "Low", "img-1"),
                raw("Cyst ", "Left Ovary", "Low", "img-2"),
            ],
            ORDER,
        )

        assert len(findings) == 2

    def test_key_cannot_collide_through_hyphen(self):
        # "a-b" + "c" must not equal "a" + "b-c"
        assert finding_key("a-b", "c") != finding_key("a", "b-c")

    def test_output_in_first_seen_order(self):
        findings = deduplicate_findings(
            [
                raw("Adhesion", "Pouch of Douglas", "Low", "img-1"),
                raw("Cyst", "Left Ovary", "High", "img-1"),
                raw("Adhesion", "Pouch of Douglas", "High", "img-2"),
            ],
            ORDER,
        )

        assert [f.title for f in findings] == ["Adhesion", "Cyst"]

    def test_empty_input(self):
        assert deduplicate_findings([], ORDER) == []

    def test_same_image_reported_twice_counted_once(self):
        findings = deduplicate_findings(
            [
                raw("Cyst", "Left Ovary", "Low", "img-1"),
                raw("Cyst", "Left Ovary", "Medium", "img-1"),
            ],
            ORDER,
        )

        assert findings[0].source_image_ids == ["img-1"]
        assert findings[0].likelihood == Confidence.MEDIUM


# =============================================================================
# Confidence
# =============================================================================

class TestConfidence:
    """Likelihood is the max merged confidence; ties keep the first image"""

    def test_confidence_order(self):
        assert Confidence.HIGH.outranks(Confidence.MEDIUM)
        assert Confidence.MEDIUM.outranks(Confidence.LOW)
        assert not Confidence.MEDIUM.outranks(Confidence.MEDIUM)
        assert not Confidence.LOW.outranks(Confidence.HIGH)

    @pytest.mark.parametrize("levels,expected", [
        (["Low", "High", "Medium"], "High"),
        (["Medium", "Low"], "Medium"),
        (["Low", "Low"], "Low"),
        (["High", "Low", "Low"], "High"),
    ])
    def test_likelihood_is_max(self, levels, expected):
        raws = [raw("Cyst", "Left Ovary", level, ORDER[i]) for i, level in enumerate(levels)]

        findings = deduplicate_findings(raws, ORDER)

        assert findings[0].likelihood == Confidence(expected)

    def test_strictly_greater_moves_best_image(self):
        findings = deduplicate_findings(
            [
                raw("Cyst", "Left Ovary", "Medium", "img-1"),
                raw("Cyst", "Left Ovary", "High", "img-2"),
            ],
            ORDER,
        )

        finding = findings[0]
        assert finding.likelihood == Confidence.HIGH
        assert finding.best_image_id == "img-2"
        assert set(finding.source_image_ids) == {"img-1", "img-2"}

    def test_tie_keeps_first_seen_image(self):
        findings = deduplicate_findings(
            [
                raw("Cyst", "Left Ovary", "High", "img-3"),
                raw("Cyst", "Left Ovary", "High", "img-1"),
            ],
            ORDER,
        )

        assert findings[0].best_image_id == "img-3"

    def test_best_image_always_a_source(self):
        findings = deduplicate_findings(
            [
                raw("Cyst", "Left Ovary", "Low", "img-2"),
                raw("Cyst", "Left Ovary", "High", "img-4"),
                raw("Cyst", "Left Ovary", "Medium", "img-5"),
            ],
            ORDER,
        )

        assert findings[0].best_image_id in findings[0].source_image_ids


# =============================================================================
# Provenance labels
# =============================================================================

class TestImageRangeLabel:
    """Observed-in labels from 1-based image positions"""

    def test_single_position_has_no_label(self):
        assert format_image_range([2]) == ""

    def test_two_positions_listed(self):
        assert format_image_range([1, 3]) == "1, 3"

    def test_three_positions_render_as_range(self):
        assert format_image_range([1, 2, 4]) == "1-4"

    def test_positions_drop_unknown_and_sort(self):
        assert image_positions(["img-4", "ghost", "img-1"], ORDER) == [1, 4]

    def test_range_annotation_in_description(self):
        findings = deduplicate_findings(
            [
                raw("Cyst", "Left Ovary", "Low", "img-4", description="Thin-walled cyst."),
                raw("Cyst", "Left Ovary", "Low", "img-1"),
                raw("Cyst", "Left Ovary", "Low", "img-2"),
            ],
            ORDER,
        )

        assert findings[0].description == "Cyst: Thin-walled cyst. (Observed in images: 1-4)"

    def test_single_image_description_has_no_annotation(self):
        findings = deduplicate_findings(
            [raw("Cyst", "Left Ovary", "Low", "img-2", description="Thin-walled cyst.")],
            ORDER,
        )

        assert findings[0].description == "Cyst: Thin-walled cyst."

    def test_unknown_image_collapses_to_no_annotation(self):
        findings = deduplicate_findings(
            [
                raw("Cyst", "Left Ovary", "Low", "img-2", description="Cyst."),
                raw("Cyst", "Left Ovary", "Low", "not-uploaded"),
            ],
            ORDER,
        )

        assert findings[0].description == "Cyst: Cyst."
        assert findings[0].source_image_ids == ["img-2", "not-uploaded"]


# =============================================================================
# Output shape
# =============================================================================

class TestCanonicalFindingShape:

    def test_defaults(self):
        findings = deduplicate_findings(
            [
                raw("Cyst", "Left Ovary", "Low", "img-1"),
                raw("Adhesion", "Pouch of Douglas", "Low", "img-1"),
            ],
            ORDER,
            run_id="run1",
        )

        assert [f.id for f in findings] == ["finding-run1-0", "finding-run1-1"]
        assert all(f.review_status == ReviewStatus.PENDING for f in findings)
        assert all(f.coordinates is None for f in findings)

    def test_ids_differ_between_runs(self):
        raws = [raw("Cyst", "Left Ovary", "Low", "img-1")]

        first = deduplicate_findings(raws, ORDER)
        second = deduplicate_findings(raws, ORDER)

        assert first[0].id != second[0].id
