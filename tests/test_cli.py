"""Tests for the regclean command line entry point"""

import json
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from regclean.cli import EXIT_DELETE_FAILED, EXIT_FATAL, EXIT_OK, main, parse_arguments
from regclean.error_utils import create_kubernetes_error
from regclean.image_ref import ImageRef
from regclean.registry_client import ManifestMetadata, RegistryClient, RegistryDeleteNotAllowedError

NOW = datetime.now(timezone.utc)
AGES = {"1": 90, "2": 60, "3": 2}

IN_USE = ImageRef("reg.io", "team/app", "1")
OLD = ImageRef("reg.io", "team/app", "2")
YOUNG = ImageRef("reg.io", "team/app", "3")


@pytest.fixture(autouse=True)
def clean_environment():
    env = {k: v for k, v in os.environ.items() if not k.startswith("REGCLEAN_")}
    with patch.dict(os.environ, env, clear=True):
        yield


@pytest.fixture
def registry():
    mock_registry = MagicMock()
    mock_registry.list_images.return_value = [IN_USE, OLD, YOUNG]
    mock_registry.fetch_manifest_metadata.side_effect = lambda repo, tag: ManifestMetadata(
        digest=f"sha256:{tag}", created_at=NOW - timedelta(days=AGES[tag]), total_size_bytes=1024
    )
    mock_registry.get_manifest_digest.side_effect = lambda repo, tag: f"sha256:{tag}"
    return mock_registry


@pytest.fixture
def pipeline(mocker, registry):
    """Patch the cluster and registry edges of the pipeline"""
    mock_collect = mocker.patch("regclean.cli.collect_cluster_images", return_value=[IN_USE])
    mocker.patch("regclean.cli.ClusterImageSource")
    mocker.patch("regclean.cli.resolve_credentials", return_value=("user", "pass"))
    mock_client = mocker.patch("regclean.cli.RegistryClient", return_value=registry)
    return {"collect": mock_collect, "client": mock_client, "registry": registry}


def argv(tmp_path, *extra):
    return [
        "--config", str(tmp_path / "missing.yaml"),
        "--registry-url", "https://reg.io",
        "--contexts", "prod",
        "--cache-dir", str(tmp_path / "cache"),
        *extra,
    ]


class TestArguments:
    """Tests for parse_arguments"""

    def test_defaults_leave_config_untouched(self):
        args = parse_arguments([])
        assert args.dry_run is None
        assert args.yolo is None
        assert args.min_age is None
        assert args.verbosity == "info"

    def test_flags(self):
        args = parse_arguments(["--dry-run", "--yolo", "--min-age", "7", "-v", "debug", "--aws"])
        assert args.dry_run is True
        assert args.yolo is True
        assert args.min_age == 7
        assert args.verbosity == "debug"
        assert args.aws is True


class TestMain:
    """End-to-end runs with the cluster and registry mocked"""

    def test_dry_run_reports_without_deleting(self, tmp_path, pipeline, caplog):
        """Test that a dry run selects the old unused image and deletes nothing"""
        with caplog.at_level("INFO"):
            code = main(argv(tmp_path, "--dry-run"))

        assert code == EXIT_OK
        pipeline["registry"].delete_manifest.assert_not_called()
        assert "Found 1 images to delete (1.0KiB) and 2 to keep" in caplog.text
        pipeline["collect"].assert_called_once()
        assert pipeline["collect"].call_args.args[1] == ["prod"]

    def test_client_built_from_configuration(self, tmp_path, pipeline):
        main(argv(tmp_path, "--dry-run"))

        args, kwargs = pipeline["client"].call_args
        assert args[0] == "https://reg.io"
        assert kwargs["username"] == "user"
        assert kwargs["password"] == "pass"
        assert kwargs["retry_settings"]["max_retries"] == 3

    def test_per_image_confirmation(self, tmp_path, pipeline):
        """Test that without --yolo each deletion is confirmed interactively"""
        with patch("builtins.input", return_value="y") as mock_input:
            code = main(argv(tmp_path))

        assert code == EXIT_OK
        pipeline["registry"].delete_manifest.assert_called_once_with("team/app", "sha256:2")
        assert mock_input.call_count == 1

    def test_yolo_declined_aborts(self, tmp_path, pipeline):
        """Test that declining the blanket confirmation exits non-zero without deleting"""
        with patch("builtins.input", return_value=""):
            code = main(argv(tmp_path, "--yolo"))

        assert code == EXIT_FATAL
        pipeline["registry"].delete_manifest.assert_not_called()

    def test_failed_deletion_exit_code(self, tmp_path, pipeline):
        pipeline["registry"].delete_manifest.side_effect = RegistryDeleteNotAllowedError("disabled", status_code=405)

        with patch("builtins.input", return_value="y"):
            code = main(argv(tmp_path, "--yolo"))

        assert code == EXIT_DELETE_FAILED

    def test_nothing_to_delete(self, tmp_path, pipeline, caplog):
        """Test the short circuit when every candidate is filtered"""
        with caplog.at_level("INFO"), patch("builtins.input") as mock_input:
            code = main(argv(tmp_path, "--min-age", "365"))

        assert code == EXIT_OK
        assert "Nothing to delete" in caplog.text
        mock_input.assert_not_called()
        pipeline["registry"].get_manifest_digest.assert_not_called()

    def test_metadata_is_cached_between_runs(self, tmp_path, pipeline):
        """Test that a second run answers metadata from the cache"""
        main(argv(tmp_path, "--dry-run"))
        first_calls = pipeline["registry"].fetch_manifest_metadata.call_count
        main(argv(tmp_path, "--dry-run", "--cache-backend", "disk"))

        assert first_calls == 2
        assert pipeline["registry"].fetch_manifest_metadata.call_count == first_calls

    def test_sqlite_cache_backend(self, tmp_path, pipeline):
        code = main(argv(tmp_path, "--dry-run", "--cache-backend", "sqlite"))
        assert code == EXIT_OK
        assert os.path.exists(tmp_path / "cache" / "cache.db")

    def test_report_file(self, tmp_path, pipeline):
        report_path = tmp_path / "out" / "report.json"

        code = main(argv(tmp_path, "--dry-run", "--report-file", str(report_path)))

        assert code == EXIT_OK
        report = json.loads(report_path.read_text())
        assert report["summary"]["would_delete"] == 1
        assert report["summary"]["filtered_by"]["min_age"] == 1
        assert report["outcomes"][0]["image"] == "reg.io/team/app:2"
        assert report["kept"] == ["reg.io/team/app:1"]

    def test_cluster_failure_is_fatal(self, tmp_path, pipeline):
        pipeline["collect"].side_effect = create_kubernetes_error("list pods", Exception("403 Forbidden"))

        assert main(argv(tmp_path)) == EXIT_FATAL
        pipeline["client"].assert_not_called()

    def test_missing_registry_url_is_fatal(self, tmp_path):
        assert main(["--config", str(tmp_path / "missing.yaml")]) == EXIT_FATAL

    def test_invalid_verbosity(self, tmp_path):
        assert main(argv(tmp_path, "-v", "loud")) == EXIT_FATAL

    def test_print_config(self, tmp_path, capsys):
        assert main(argv(tmp_path, "--print-config")) == EXIT_OK
        assert "https://reg.io" in capsys.readouterr().out

    def test_aws_flag_selects_ecr(self, tmp_path, pipeline):
        with patch("regclean.cli.resolve_credentials", return_value=("AWS", "pw")) as mock_resolve:
            main(argv(tmp_path, "--dry-run", "--aws"))

        config_manager = mock_resolve.call_args.args[0]
        assert config_manager.get_credentials_provider() == "ecr"

    def test_malformed_metadata_keeps_run_going(self, tmp_path, pipeline, registry):
        """Test that an image with an unreadable config blob stays eligible and the run completes"""
        broken = ImageRef("reg.io", "team/app", "broken")

        def respond(method, url, **kwargs):
            response = MagicMock(status_code=200, headers={"Docker-Content-Digest": "sha256:broken"}, links={})
            if "/blobs/" in url:
                response.json.return_value = {"created": "yesterday"}
            else:
                response.json.return_value = {"config": {"digest": "sha256:cfg", "size": 1}, "layers": []}
            return response

        session = MagicMock(spec=requests.Session)
        session.request.side_effect = respond
        real_client = RegistryClient("https://reg.io", session=session)
        fetch = registry.fetch_manifest_metadata.side_effect
        registry.fetch_manifest_metadata.side_effect = lambda repo, tag: (
            real_client.fetch_manifest_metadata(repo, tag) if tag == "broken" else fetch(repo, tag)
        )
        registry.list_images.return_value = [IN_USE, OLD, broken]
        report_path = tmp_path / "report.json"

        code = main(argv(tmp_path, "--dry-run", "--report-file", str(report_path)))

        assert code == EXIT_OK
        report = json.loads(report_path.read_text())
        assert report["summary"]["would_delete"] == 2
        assert [o["image"] for o in report["outcomes"]] == ["reg.io/team/app:2", "reg.io/team/app:broken"]
        assert report["outcomes"][1]["size_bytes"] is None
