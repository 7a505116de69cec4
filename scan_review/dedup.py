"""
Deduplication Utils
===================

Merge raw per-image findings into canonical findings.

Two raw findings are the same finding when region and title match after case
folding. No fuzzy matching: differently worded titles for the same lesion
stay separate.
"""

import logging
import uuid
from typing import List, Dict, Optional, Sequence
from dataclasses import dataclass, field

from .schemas import RawFinding, CanonicalFinding, Confidence, ReviewStatus

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "\x1f"


def finding_key(region: str, title: str) -> str:
    """Group key for a (region, title) pair"""
    return f"{region.lower()}{KEY_SEPARATOR}{title.lower()}"


def image_positions(image_ids: Sequence[str], image_order: Sequence[str]) -> List[int]:
    """
    1-based positions of `image_ids` within `image_order`.

    Ids missing from `image_order` are dropped; result is sorted and distinct.
    """
    index = {image_id: i + 1 for i, image_id in enumerate(image_order)}
    return sorted({index[i] for i in image_ids if i in index})


def format_image_range(positions: Sequence[int]) -> str:
    """
    Compact label for the images a finding was observed in.

    [2] -> ""          (single image, no annotation)
    [1, 3] -> "1, 3"
    [1, 2, 4] -> "1-4"  (first-last, even when not contiguous)
    """
    if len(positions) < 2:
        return ""
    if len(positions) == 2:
        return f"{positions[0]}, {positions[1]}"
    return f"{positions[0]}-{positions[-1]}"


@dataclass
class _FindingGroup:
    """Running state for one (region, title) group"""
    region: str
    title: str
    description: str
    best_confidence: Confidence
    best_image_id: str
    image_ids: List[str] = field(default_factory=list)

    def merge(self, raw: RawFinding) -> None:
        # Ties keep the first-seen image
        if raw.confidence.outranks(self.best_confidence):
            self.best_confidence = raw.confidence
            self.best_image_id = raw.source_image_id
        if raw.source_image_id not in self.image_ids:
            self.image_ids.append(raw.source_image_id)


def deduplicate_findings(
    raw_findings: Sequence[RawFinding],
    image_order: Sequence[str],
    run_id: Optional[str] = None
) -> List[CanonicalFinding]:
    """
    Group raw findings by (region, title) and emit one canonical finding per group.

    Args:
        raw_findings: Findings in the order they were observed
        image_order: Image ids in upload order (for the "Observed in" label)
        run_id: Prefix for finding ids (random when omitted)

    Returns:
        Canonical findings in first-seen order of their group
    """
    if not raw_findings:
        return []

    run_id = run_id or uuid.uuid4().hex[:8]
    groups: Dict[str, _FindingGroup] = {}

    for raw in raw_findings:
        key = finding_key(raw.region, raw.title)
        group = groups.get(key)
        if group is None:
            groups[key] = _FindingGroup(
                region=raw.region,
                title=raw.title,
                description=raw.description,
                best_confidence=raw.confidence,
                best_image_id=raw.source_image_id,
                image_ids=[raw.source_image_id],
            )
        else:
            group.merge(raw)

    findings = []
    for index, group in enumerate(groups.values()):
        description = f"{group.title}: {group.description}"
        label = format_image_range(image_positions(group.image_ids, image_order))
        if label:
            description += f" (Observed in images: {label})"

        findings.append(CanonicalFinding(
            id=f"finding-{run_id}-{index}",
            region=group.region,
            title=group.title,
            likelihood=group.best_confidence,
            description=description,
            coordinates=None,
            review_status=ReviewStatus.PENDING,
            source_image_ids=list(group.image_ids),
            best_image_id=group.best_image_id,
        ))

    logger.info(f"Dedup: {len(findings)} unique findings (from {len(raw_findings)} raw)")
    return findings
