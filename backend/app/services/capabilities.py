"""
Capability planning.

Decides which analysis jobs a media item fans out into, which of them are
mandatory, which ones must wait for others, and the fixed order in which
their text is merged by the aggregator.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Tuple

from app.models.jobs import Capability
from app.models.media import MediaKind
from app.models.user import ServiceTier


@dataclass(frozen=True)
class CapabilityRequirement:
    capability: Capability
    mandatory: bool


# Text analysis consumes the text produced by these capabilities, so it
# becomes claimable only once they are all terminal.
CAPABILITY_DEPENDENCIES: Dict[Capability, FrozenSet[Capability]] = {
    Capability.TEXT_ANALYSIS: frozenset({
        Capability.TEXT_DETECTION,
        Capability.TRANSCRIPTION,
    }),
}

# Aggregation order: visual labels → detected text → transcript → entities/sentiment.
# Celebrity names are visual labels too; they follow object labels.
AGGREGATION_ORDER: Tuple[Capability, ...] = (
    Capability.OBJECT_DETECTION,
    Capability.CELEBRITY_DETECTION,
    Capability.TEXT_DETECTION,
    Capability.TRANSCRIPTION,
    Capability.TEXT_ANALYSIS,
)

ANALYSIS_CAPABILITIES: FrozenSet[Capability] = frozenset(AGGREGATION_ORDER)

# Celery queue names per capability
QUEUE_NAMES: Dict[Capability, str] = {
    Capability.OBJECT_DETECTION: "image-analysis",
    Capability.TEXT_DETECTION: "image-analysis",
    Capability.CELEBRITY_DETECTION: "image-analysis",
    Capability.TRANSCRIPTION: "transcription",
    Capability.TEXT_ANALYSIS: "text-analysis",
    Capability.EMBEDDING: "embedding-generation",
}

_TIERS_WITH_CELEBRITIES = (ServiceTier.PREMIUM, ServiceTier.ULTIMATE)

# Image and video work for these run on separate queues and are claimed
# separately, so long video jobs never occupy the image workers.
KIND_SPLIT_CAPABILITIES: FrozenSet[Capability] = frozenset({
    Capability.OBJECT_DETECTION,
    Capability.CELEBRITY_DETECTION,
})


def queue_for(capability: Capability, kind: MediaKind = MediaKind.IMAGE) -> str:
    if kind == MediaKind.VIDEO and capability in KIND_SPLIT_CAPABILITIES:
        return "video-analysis"
    return QUEUE_NAMES[capability]


@dataclass(frozen=True)
class Lane:
    """A drainable slice of the job table: one capability, narrowed to a media kind where split."""

    capability: Capability
    kind: Optional[MediaKind] = None

    @property
    def name(self) -> str:
        if self.kind is None:
            return self.capability.value
        return f"{self.capability.value}.{self.kind.value}"

    @property
    def queue(self) -> str:
        return queue_for(self.capability, self.kind or MediaKind.IMAGE)


def lane_for(capability: Capability, kind: Optional[MediaKind] = None) -> Lane:
    return Lane(capability, kind if capability in KIND_SPLIT_CAPABILITIES else None)


def all_lanes() -> List[Lane]:
    lanes = []
    for capability in Capability:
        if capability in KIND_SPLIT_CAPABILITIES:
            lanes.extend(Lane(capability, kind) for kind in MediaKind)
        else:
            lanes.append(Lane(capability))
    return lanes


def lane_concurrency(lane: Lane, concurrency: Dict[str, int]) -> int:
    """Workers allowed on a lane: "capability.kind" entry, else the capability's, else 1."""
    return int(concurrency.get(lane.name, concurrency.get(lane.capability.value, 1)))


def plan_capabilities(kind: MediaKind, tier: ServiceTier) -> List[CapabilityRequirement]:
    """
    Required analysis capabilities for a media kind and owner tier.

    Images: object labels, detected text, text analysis (+ celebrities on paid tiers).
    Videos: object labels, transcript, text analysis (+ celebrities on paid tiers).
    """
    plan = [CapabilityRequirement(Capability.OBJECT_DETECTION, mandatory=True)]

    if kind == MediaKind.IMAGE:
        plan.append(CapabilityRequirement(Capability.TEXT_DETECTION, mandatory=True))
    else:
        plan.append(CapabilityRequirement(Capability.TRANSCRIPTION, mandatory=True))

    if tier in _TIERS_WITH_CELEBRITIES:
        plan.append(CapabilityRequirement(Capability.CELEBRITY_DETECTION, mandatory=False))

    plan.append(CapabilityRequirement(Capability.TEXT_ANALYSIS, mandatory=True))
    return plan


def dependencies_of(capability: Capability) -> FrozenSet[Capability]:
    return CAPABILITY_DEPENDENCIES.get(capability, frozenset())
