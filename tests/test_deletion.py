"""Unit tests for regclean/deletion.py"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, call

import pytest

from regclean.deletion import (
    DELETED,
    FAILED,
    SKIPPED,
    WOULD_DELETE,
    DeletionAbortedError,
    DeletionOrchestrator,
    yes_no,
)
from regclean.image_ref import ImageRef
from regclean.metadata_cache import ImageMetadata
from regclean.registry_client import ImageNotFoundError, RegistryDeleteNotAllowedError

A = ImageRef("reg.io", "team/a", "1")
B = ImageRef("reg.io", "team/b", "1")
C = ImageRef("reg.io", "team/c", "1")


@pytest.fixture
def registry():
    mock_registry = MagicMock()
    mock_registry.get_manifest_digest.side_effect = lambda repo, tag: f"sha256:{repo.split('/')[-1]}"
    return mock_registry


def metadata_lookup(repository, tag):
    return ImageMetadata(created_at=datetime(2024, 1, 1, tzinfo=timezone.utc), total_size_bytes=100)


class TestYesNo:
    """Tests for the yes_no prompt"""

    @pytest.mark.parametrize("answer", ["y", "Y", "yes", " YES "])
    def test_yes(self, answer):
        assert yes_no("Delete?", input_func=lambda prompt: answer) is True

    @pytest.mark.parametrize("answer", ["", "n", "No"])
    def test_no_and_default(self, answer):
        """Test that an empty answer defaults to no"""
        assert yes_no("Delete?", input_func=lambda prompt: answer) is False

    def test_reasks_on_invalid_answer(self):
        """Test that an unrecognised answer asks again"""
        answers = iter(["maybe", "y"])
        prompts = []

        def fake_input(prompt):
            prompts.append(prompt)
            return next(answers)

        assert yes_no("Delete?", input_func=fake_input) is True
        assert prompts == ["Delete? [N/y]: ", "Delete? [N/y]: "]


class TestDryRun:
    """Tests for dry-run execution"""

    def test_never_deletes_or_prompts(self, registry):
        """Test that dry run resolves digests but performs no deletion and no prompt"""
        confirm = MagicMock()
        orchestrator = DeletionOrchestrator(registry, metadata_lookup, confirm=confirm)

        outcomes = orchestrator.execute([A, B], confirm_per_image=True, dry_run=True)

        assert [o.status for o in outcomes] == [WOULD_DELETE, WOULD_DELETE]
        assert [o.digest for o in outcomes] == ["sha256:a", "sha256:b"]
        registry.delete_manifest.assert_not_called()
        confirm.assert_not_called()

    def test_unattended_dry_run_needs_no_confirmation(self, registry):
        confirm = MagicMock(return_value=False)
        orchestrator = DeletionOrchestrator(registry, confirm=confirm)

        outcomes = orchestrator.execute([A], confirm_per_image=False, dry_run=True)

        assert outcomes[0].status == WOULD_DELETE
        confirm.assert_not_called()

    def test_records_size_and_created(self, registry):
        orchestrator = DeletionOrchestrator(registry, metadata_lookup, confirm=MagicMock())

        outcome = orchestrator.execute([A], dry_run=True)[0]

        assert outcome.size_bytes == 100
        assert outcome.created_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert outcome.succeeded


class TestPerImageConfirmation:
    """Tests for interactive deletion"""

    def test_deletes_confirmed_and_skips_declined(self, registry):
        """Test that each image is deleted only when confirmed"""
        confirm = MagicMock(side_effect=[True, False, True])
        orchestrator = DeletionOrchestrator(registry, confirm=confirm)

        outcomes = orchestrator.execute([A, B, C], confirm_per_image=True)

        assert [o.status for o in outcomes] == [DELETED, SKIPPED, DELETED]
        assert registry.delete_manifest.call_args_list == [
            call("team/a", "sha256:a"),
            call("team/c", "sha256:c"),
        ]
        assert confirm.call_count == 3
        assert "reg.io/team/a:1" in confirm.call_args_list[0].args[0]


class TestUnattended:
    """Tests for deletion without per-image prompts"""

    def test_blanket_confirmation_asked_once(self, registry):
        """Test that one confirmation covers every deletion"""
        confirm = MagicMock(return_value=True)
        orchestrator = DeletionOrchestrator(registry, confirm=confirm)

        outcomes = orchestrator.execute([A, B, C], confirm_per_image=False)

        assert [o.status for o in outcomes] == [DELETED, DELETED, DELETED]
        confirm.assert_called_once()
        assert "3" in confirm.call_args.args[0]

    def test_declined_blanket_confirmation_aborts(self, registry):
        """Test that declining stops the run before any deletion"""
        orchestrator = DeletionOrchestrator(registry, confirm=MagicMock(return_value=False))

        with pytest.raises(DeletionAbortedError):
            orchestrator.execute([A, B], confirm_per_image=False)

        registry.get_manifest_digest.assert_not_called()
        registry.delete_manifest.assert_not_called()

    def test_no_confirmation_for_empty_batch(self, registry):
        confirm = MagicMock(return_value=False)
        assert DeletionOrchestrator(registry, confirm=confirm).execute([], confirm_per_image=False) == []
        confirm.assert_not_called()


class TestFailures:
    """Tests for best-effort batch behavior"""

    def test_delete_failure_does_not_stop_batch(self, registry):
        """Test that a failed deletion is recorded and the next image is still processed"""
        registry.delete_manifest.side_effect = [None, RegistryDeleteNotAllowedError("disabled", status_code=405), None]
        orchestrator = DeletionOrchestrator(registry, confirm=MagicMock(return_value=True))

        outcomes = orchestrator.execute([A, B, C], confirm_per_image=False)

        assert [o.status for o in outcomes] == [DELETED, FAILED, DELETED]
        assert "disabled" in outcomes[1].error
        assert not outcomes[1].succeeded

    def test_digest_failure_is_recorded(self, registry):
        """Test that an image whose digest cannot be resolved fails without a delete call"""
        registry.get_manifest_digest.side_effect = [ImageNotFoundError("gone", status_code=404), "sha256:b"]
        orchestrator = DeletionOrchestrator(registry, confirm=MagicMock(return_value=True))

        outcomes = orchestrator.execute([A, B], confirm_per_image=False)

        assert [o.status for o in outcomes] == [FAILED, DELETED]
        registry.delete_manifest.assert_called_once_with("team/b", "sha256:b")

    def test_dry_run_digest_failure_is_reported(self, registry):
        registry.get_manifest_digest.side_effect = ImageNotFoundError("gone", status_code=404)
        outcomes = DeletionOrchestrator(registry).execute([A], dry_run=True)
        assert outcomes[0].status == FAILED

    def test_metadata_failure_does_not_block_deletion(self, registry):
        """Test that missing metadata only leaves size and created empty"""
        lookup = MagicMock(side_effect=ImageNotFoundError("no config", status_code=404))
        orchestrator = DeletionOrchestrator(registry, lookup, confirm=MagicMock(return_value=True))

        outcome = orchestrator.execute([A], confirm_per_image=False)[0]

        assert outcome.status == DELETED
        assert outcome.size_bytes is None

    def test_outcome_to_dict(self, registry):
        outcome = DeletionOrchestrator(registry, metadata_lookup).execute([A], dry_run=True)[0]
        data = outcome.to_dict()
        assert data["image"] == "reg.io/team/a:1"
        assert data["status"] == WOULD_DELETE
        assert data["created_at"] == "2024-01-01T00:00:00+00:00"
