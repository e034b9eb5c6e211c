"""
Group mapping suggestions.

Scores a provider group against every local group by name similarity and
member overlap, and recommends either linking to the best local group or
creating a new one. The suggester is pure: identical inputs always yield
an identical suggestion, so pending suggestions can be regenerated on
every full sync.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from gcontact_import.sync.group import (
    LocalGroup,
    MappingSuggestion,
    RemoteGroup,
    SuggestedAction,
)
from gcontact_import.utils import normalize_group_name

logger = logging.getLogger(__name__)

# A local group becomes a candidate above either threshold
CANDIDATE_NAME_THRESHOLD = 0.7
CANDIDATE_OVERLAP_THRESHOLD = 0.5

# The best candidate is suggested above either threshold
MAP_NAME_THRESHOLD = 0.8
MAP_OVERLAP_THRESHOLD = 0.6

CREATE_NEW_CONFIDENCE = 0.9
REASON_NO_SIMILAR = "No similar existing group found"
REASON_NO_GROUPS = "No existing groups found"


def name_score(remote_name: str, local_name: str) -> float:
    """
    Levenshtein similarity of two group names in [0, 1].

    Names are trimmed and lowercased first. Two empty names score 1.0.
    """
    a = normalize_group_name(remote_name)
    b = normalize_group_name(local_name)
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / longest


def member_overlap(remote_ids: Iterable[str], local_ids: Iterable[str]) -> float:
    """Jaccard index of two member id sets; 0.0 when both are empty."""
    remote = set(remote_ids)
    local = set(local_ids)
    union = remote | local
    if not union:
        return 0.0
    return len(remote & local) / len(union)


@dataclass(frozen=True)
class _Candidate:
    group: LocalGroup
    name_score: float
    member_overlap: float

    @property
    def combined(self) -> float:
        return self.name_score + self.member_overlap


class GroupMappingSuggester:
    """
    Recommends a mapping for a provider group.

    Usage:
        suggester = GroupMappingSuggester()
        suggestion = suggester.suggest(remote_group, local_groups)
        if suggestion.action == SuggestedAction.MAP_TO_EXISTING:
            print(suggestion.target_group_id, suggestion.reason)
    """

    def score(self, remote: RemoteGroup, local: LocalGroup) -> _Candidate:
        return _Candidate(
            group=local,
            name_score=name_score(remote.name, local.name),
            member_overlap=member_overlap(
                remote.member_external_ids, local.member_external_ids
            ),
        )

    def best_candidate(
        self, remote: RemoteGroup, local_groups: Sequence[LocalGroup]
    ) -> _Candidate | None:
        """
        Pick the highest scoring candidate local group.

        Ties on the combined score go to the smallest local group id.
        """
        candidates = [
            c
            for c in (self.score(remote, g) for g in local_groups)
            if c.name_score > CANDIDATE_NAME_THRESHOLD
            or c.member_overlap > CANDIDATE_OVERLAP_THRESHOLD
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda c: (-c.combined, c.group.id))

    def suggest(
        self, remote: RemoteGroup, local_groups: Sequence[LocalGroup]
    ) -> MappingSuggestion:
        """
        Suggest what to do with a provider group.

        Args:
            remote: Provider group, with member ids populated
            local_groups: The user's local groups with linked member ids

        Returns:
            MappingSuggestion with action, target, confidence and reason
        """
        if not local_groups:
            return MappingSuggestion(
                action=SuggestedAction.CREATE_NEW,
                target_group_id=None,
                confidence=CREATE_NEW_CONFIDENCE,
                reason=REASON_NO_GROUPS,
            )

        best = self.best_candidate(remote, local_groups)
        if best is not None and (
            best.name_score > MAP_NAME_THRESHOLD
            or best.member_overlap > MAP_OVERLAP_THRESHOLD
        ):
            suggestion = MappingSuggestion(
                action=SuggestedAction.MAP_TO_EXISTING,
                target_group_id=best.group.id,
                confidence=best.combined / 2,
                reason=(
                    f"Similar name ({best.name_score:.0%} match) and "
                    f"{best.member_overlap:.0%} member overlap"
                ),
                name_score=best.name_score,
                member_overlap=best.member_overlap,
            )
        else:
            suggestion = MappingSuggestion(
                action=SuggestedAction.CREATE_NEW,
                target_group_id=None,
                confidence=CREATE_NEW_CONFIDENCE,
                reason=REASON_NO_SIMILAR,
            )

        logger.debug(
            f"Suggested {suggestion.action.value} for group '{remote.name}' "
            f"({remote.external_id}): {suggestion.reason}"
        )
        return suggestion
