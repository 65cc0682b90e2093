"""Split registry images into unreferenced (delete candidates) and in-use"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from regclean.image_ref import ImageRef, dedupe

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    """Outcome of comparing registry contents with cluster usage"""

    to_delete: List[ImageRef] = field(default_factory=list)
    to_keep: List[ImageRef] = field(default_factory=list)
    filtered_count: int = 0


def reconcile(cluster_refs: Iterable[ImageRef], registry_refs: Iterable[ImageRef]) -> ReconciliationResult:
    """Registry images not running anywhere become deletion candidates.

    Pure set difference on (host, repository, tag); both output lists keep
    the registry listing order.
    """
    in_use = set(cluster_refs)
    result = ReconciliationResult()
    for ref in dedupe(registry_refs):
        if ref in in_use:
            result.to_keep.append(ref)
        else:
            result.to_delete.append(ref)

    logger.debug(f"Reconciled registry: {len(result.to_delete)} unreferenced, {len(result.to_keep)} in use")
    return result
