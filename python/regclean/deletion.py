"""
Deletion of unreferenced registry images.

Candidates are processed one by one in order. A failure on one image is
recorded in its outcome and the batch carries on. Dry runs resolve
everything a real run would but never prompt or delete.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from regclean.image_ref import ImageRef
from regclean.registry_client import RegistryError

logger = logging.getLogger(__name__)

DELETED = "deleted"
WOULD_DELETE = "would_delete"
SKIPPED = "skipped"
FAILED = "failed"


class DeletionAbortedError(Exception):
    """The blanket confirmation for unattended deletion was declined"""


def yes_no(question: str, input_func: Callable[[str], str] = input) -> bool:
    """Ask a yes/no question. An empty answer means no."""
    while True:
        response = input_func(f"{question} [N/y]: ").strip().lower()
        if response in ("y", "yes"):
            return True
        if response in ("", "n", "no"):
            return False


@dataclass
class DeletionOutcome:
    """What happened to one candidate"""

    image: ImageRef
    status: str
    digest: Optional[str] = None
    created_at: Optional[datetime] = None
    size_bytes: Optional[int] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (DELETED, WOULD_DELETE)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "image": str(self.image),
            "status": self.status,
            "digest": self.digest,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "size_bytes": self.size_bytes,
            "error": self.error,
        }


class DeletionOrchestrator:
    """Resolve, confirm and delete candidates against one registry"""

    def __init__(self, registry, metadata_lookup=None, confirm: Callable[[str], bool] = yes_no):
        """
        Args:
            registry: RegistryClient (get_manifest_digest / delete_manifest)
            metadata_lookup: callable (repository, tag) -> ImageMetadata, used for reporting
            confirm: yes/no prompt
        """
        self.registry = registry
        self.metadata_lookup = metadata_lookup
        self.confirm = confirm

    def confirm_unattended(self, count: int) -> None:
        """Ask once before deleting without per-image prompts

        Raises:
            DeletionAbortedError: if the answer is no
        """
        if not self.confirm(f"We will delete all {count} images without asking, are you sure?"):
            raise DeletionAbortedError("Back to safety: unattended deletion was not confirmed")

    def _describe(self, outcome: DeletionOutcome) -> None:
        if self.metadata_lookup is None:
            return
        ref = outcome.image
        try:
            metadata = self.metadata_lookup(ref.repository, ref.tag)
        except Exception as e:
            logger.debug(f"No metadata for {ref}: {e}")
            return
        outcome.created_at = metadata.created_at
        outcome.size_bytes = metadata.total_size_bytes

    def execute(
        self,
        candidates: Sequence[ImageRef],
        confirm_per_image: bool = True,
        dry_run: bool = False,
    ) -> List[DeletionOutcome]:
        """Delete candidates in order and report one outcome per image.

        Args:
            candidates: images to delete
            confirm_per_image: prompt before each deletion; when False a single
                blanket confirmation is required up front
            dry_run: report what would be deleted without deleting

        Raises:
            DeletionAbortedError: the blanket confirmation was declined; nothing is deleted
        """
        if not dry_run and not confirm_per_image and candidates:
            self.confirm_unattended(len(candidates))

        outcomes: List[DeletionOutcome] = []
        for ref in candidates:
            outcome = DeletionOutcome(image=ref, status=FAILED)
            outcomes.append(outcome)
            self._describe(outcome)

            try:
                outcome.digest = self.registry.get_manifest_digest(ref.repository, ref.tag)
            except RegistryError as e:
                outcome.error = f"failed to fetch digest: {e}"
                logger.error(f"Failed to delete image {ref}: {outcome.error}")
                continue

            if dry_run:
                outcome.status = WOULD_DELETE
                logger.info(f"Dry run, skipping delete of {ref.repository}:{ref.tag} ({outcome.digest}) on registry")
                continue

            if confirm_per_image and not self.confirm(f"Delete {ref}?"):
                outcome.status = SKIPPED
                continue

            logger.warning(f"Deleting {ref.repository}:{ref.tag} ({outcome.digest}) on registry")
            try:
                self.registry.delete_manifest(ref.repository, outcome.digest)
            except RegistryError as e:
                outcome.error = f"failed to delete manifest: {e}"
                logger.error(f"Failed to delete image {ref}: {outcome.error}")
                continue
            outcome.status = DELETED

        return outcomes
