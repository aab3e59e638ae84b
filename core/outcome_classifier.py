"""Map a winning class and its probability to a confidence tier and urgency."""

from typing import Dict, Tuple

from core.utils import ClassLabel, ConfidenceTier, UrgencyBucket

HIGH_CONFIDENCE = 0.85
MEDIUM_CONFIDENCE = 0.60


URGENCY_GUIDANCE: Dict[UrgencyBucket, str] = {
    UrgencyBucket.HEALTHY: "No signs of eye disease detected. Continue routine eye check-ups.",
    UrgencyBucket.MONITOR: "Possible signs detected or result uncertain. Schedule an eye examination.",
    UrgencyBucket.CRITICAL: "Signs of eye disease detected. Consult an eye care professional promptly.",
}


def confidence_tier(confidence: float) -> ConfidenceTier:
    """Bucket a probability into High / Medium / Low."""
    if confidence >= HIGH_CONFIDENCE:
        return ConfidenceTier.HIGH
    elif confidence >= MEDIUM_CONFIDENCE:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


def urgency_for(label: ClassLabel, tier: ConfidenceTier) -> UrgencyBucket:
    # Uncertain results land in MONITOR either way: an unsure "Normal" is not
    # reported as healthy and an unsure disease is not reported as critical.
    if label == ClassLabel.NORMAL:
        return UrgencyBucket.HEALTHY if tier == ConfidenceTier.HIGH else UrgencyBucket.MONITOR
    if tier == ConfidenceTier.HIGH:
        return UrgencyBucket.CRITICAL
    return UrgencyBucket.MONITOR


def classify(label: ClassLabel, confidence: float) -> Tuple[ConfidenceTier, UrgencyBucket]:
    tier = confidence_tier(confidence)
    return tier, urgency_for(label, tier)
