"""
Risk Classifier

Maps a ranked match list to a coarse risk level. Only adverse-tagged
matches count; a registry confirmation never raises risk above low, even
at a 100% match rate.
"""

from dataclasses import dataclass
from typing import FrozenSet, Iterable

from screening_models import MatchCandidate, MatchTag, RiskLevel

DEFAULT_ADVERSE_TAGS = frozenset({
    MatchTag.SANCTIONED, MatchTag.DEBARRED, MatchTag.CRIMINAL, MatchTag.WATCHLIST
})


@dataclass(frozen=True)
class RiskPolicy:
    """Compliance-tunable thresholds for the risk levels"""
    critical: int = 95
    high: int = 90
    medium: int = 80
    adverse_tags: FrozenSet[MatchTag] = DEFAULT_ADVERSE_TAGS

    @classmethod
    def from_config(cls, risk_config) -> 'RiskPolicy':
        """Build a policy from the `risk` config section."""
        return cls(
            critical=risk_config.critical,
            high=risk_config.high,
            medium=risk_config.medium,
            adverse_tags=frozenset(MatchTag(t) for t in risk_config.adverse_tags),
        )


DEFAULT_POLICY = RiskPolicy()


def classify_risk(matches: Iterable[MatchCandidate], policy: RiskPolicy = DEFAULT_POLICY) -> RiskLevel:
    """Risk level of a final match list.

    Args:
        matches: Ranked, filtered candidates
        policy: Thresholds and adverse tags

    Returns:
        RiskLevel from the highest adverse match rate
    """
    adverse = [m.match_rate for m in matches if m.tag in policy.adverse_tags]
    if not adverse:
        return RiskLevel.LOW

    top = max(adverse)
    if top >= policy.critical:
        return RiskLevel.CRITICAL
    if top >= policy.high:
        return RiskLevel.HIGH
    if top >= policy.medium:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW
