"""
Categorical alignment between a target and a candidate.

Secondary quality indicator from type/subtype agreement. It only breaks
ties between candidates with the same name distance.
"""

from typing import Optional

from ..cache.models import Alignment


class AlignmentAssessor:
    """Assess type/subtype agreement."""

    def assess(
        self,
        target_type: Optional[str],
        target_subtype: Optional[str],
        candidate_type: Optional[str],
        candidate_subtype: Optional[str],
    ) -> Alignment:
        """Return EXACT when both fields agree, PARTIAL for one, NONE otherwise.

        Missing values never count as agreement.
        """
        type_match = bool(target_type) and target_type == candidate_type
        subtype_match = bool(target_subtype) and target_subtype == candidate_subtype

        if type_match and subtype_match:
            return Alignment.EXACT
        if type_match or subtype_match:
            return Alignment.PARTIAL
        return Alignment.NONE
