"""
Retention rules applied to deletion candidates.

Each candidate is checked against the rules in a fixed order and the first
rule that protects it wins:

1. include_name: include patterns are set and none occurs in the repository
2. exclude_name: an exclude pattern occurs in the repository
3. min_age: the image was created less than min_age_days ago

Images whose age cannot be determined stay eligible for deletion.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from regclean.image_ref import ImageRef
from regclean.metadata_cache import ImageMetadata

logger = logging.getLogger(__name__)

INCLUDE_NAME = "include_name"
EXCLUDE_NAME = "exclude_name"
MIN_AGE = "min_age"

MetadataLookup = Callable[[str, str], ImageMetadata]


@dataclass
class RetentionFilterConfig:
    min_age_days: int = 0
    exclude_name_patterns: List[str] = field(default_factory=list)
    include_name_patterns: List[str] = field(default_factory=list)


@dataclass
class FilterResult:
    """Surviving candidates and how many each rule protected"""

    candidates: List[ImageRef] = field(default_factory=list)
    stats: Dict[str, int] = field(default_factory=lambda: {INCLUDE_NAME: 0, EXCLUDE_NAME: 0, MIN_AGE: 0})

    @property
    def filtered_count(self) -> int:
        return sum(self.stats.values())


def protecting_rule(
    ref: ImageRef,
    config: RetentionFilterConfig,
    metadata_lookup: MetadataLookup,
    cutoff: datetime,
) -> Optional[str]:
    """Name of the first rule that keeps ref, or None if it may be deleted"""
    name = ref.repository

    if config.include_name_patterns and not any(p in name for p in config.include_name_patterns):
        return INCLUDE_NAME

    if config.exclude_name_patterns and any(p in name for p in config.exclude_name_patterns):
        return EXCLUDE_NAME

    try:
        metadata = metadata_lookup(ref.repository, ref.tag)
    except Exception as e:
        logger.warning(f"Unable to determine age of {ref}, treating it as eligible: {e}")
        return None

    if metadata.created_at > cutoff:
        return MIN_AGE
    return None


def filter_candidates(
    candidates: Sequence[ImageRef],
    config: RetentionFilterConfig,
    metadata_lookup: MetadataLookup,
    now: Optional[datetime] = None,
) -> FilterResult:
    """Apply retention rules, keeping the input order of survivors"""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=config.min_age_days)

    logger.debug(
        f"Filters: exclude_name={config.exclude_name_patterns} "
        f"include_name={config.include_name_patterns} min_age={config.min_age_days}"
    )

    result = FilterResult()
    for ref in candidates:
        rule = protecting_rule(ref, config, metadata_lookup, cutoff)
        if rule is None:
            result.candidates.append(ref)
            continue
        result.stats[rule] += 1
        if rule == MIN_AGE:
            logger.debug(f"Image {ref} is younger than {config.min_age_days} days, skipping")
        else:
            logger.debug(f"Image {ref.repository} filtered by {rule.split('_')[0]} filter, skipping")

    logger.debug(
        f"Filter stats: exclude_name={result.stats[EXCLUDE_NAME]} "
        f"include_name={result.stats[INCLUDE_NAME]} min_age={result.stats[MIN_AGE]}"
    )
    return result
