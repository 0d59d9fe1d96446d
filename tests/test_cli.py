"""Tests for the command line interface."""

import io
from pathlib import Path
from typing import Any

import click
import pytest
import yaml
from click.testing import CliRunner
from k8s_mock import MockObjectStore

from ssaengine.cli import cli, load_manifests, parse_key
from ssaengine.models import StateFile
from ssaengine.store import ObjectRef

CONFIGMAP_KEY = "ConfigMap/default/app"
CONFIGMAP_REF = ObjectRef("v1", "ConfigMap", "app", "default")


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def state_path(monkeypatch: pytest.MonkeyPatch, store: MockObjectStore, tmp_path: Path) -> Path:
    """Point the CLI at the mock store and a temporary state file."""
    monkeypatch.setattr("ssaengine.cli.build_store", lambda kubeconfig, context, in_cluster: store)
    monkeypatch.setenv("SSA_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("SSA_LOG_FORMAT", "text")
    path = tmp_path / "state.json"
    monkeypatch.setenv("SSA_STATE_FILE", str(path))
    return path


def write_manifest(tmp_path: Path, *documents: dict[str, Any]) -> str:
    path = tmp_path / "app.yaml"
    path.write_text(yaml.safe_dump_all(documents))
    return str(path)


class TestApplyCommand:
    """Tests for ssaengine apply."""

    def test_create_then_update(
        self,
        runner: CliRunner,
        state_path: Path,
        tmp_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """The first apply creates, the second updates."""
        manifest = write_manifest(tmp_path, configmap)

        first = runner.invoke(cli, ["apply", "-f", manifest])
        second = runner.invoke(cli, ["apply", "-f", manifest])

        assert first.exit_code == 0, first.output
        assert "✓ ConfigMap default/app created" in first.output
        assert second.exit_code == 0, second.output
        assert "✓ ConfigMap default/app updated" in second.output
        state = StateFile.load(str(state_path))
        assert list(state.entries) == [CONFIGMAP_KEY]
        assert state.entries[CONFIGMAP_KEY].record.projection["data.a"] == "1"

    def test_options_are_recorded(
        self,
        runner: CliRunner,
        state_path: Path,
        tmp_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """Per-object options end up in the record."""
        manifest = write_manifest(tmp_path, configmap)

        result = runner.invoke(
            cli,
            [
                "apply",
                "-f",
                manifest,
                "--ignore-field",
                "data.b",
                "--delete-protection",
                "--delete-timeout",
                "2m",
            ],
        )

        assert result.exit_code == 0, result.output
        record = StateFile.load(str(state_path)).entries[CONFIGMAP_KEY].record
        assert record.ignore_fields == ["data.b"]
        assert record.delete_protection
        assert record.delete_timeout == "2m"

    def test_ignore_file(
        self,
        runner: CliRunner,
        state_path: Path,
        tmp_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """Ignore fields can come from a YAML file."""
        manifest = write_manifest(tmp_path, configmap)
        ignore_file = tmp_path / "ignore.yaml"
        ignore_file.write_text("ignoreFields:\n  - data.a\n")

        result = runner.invoke(cli, ["apply", "-f", manifest, "--ignore-file", str(ignore_file)])

        assert result.exit_code == 0, result.output
        record = StateFile.load(str(state_path)).entries[CONFIGMAP_KEY].record
        assert record.ignore_fields == ["data.a"]

    def test_failure_exit_code(
        self,
        runner: CliRunner,
        store: MockObjectStore,
        state_path: Path,
        tmp_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """A failed object is reported and fails the command."""
        store.put(configmap)
        manifest = write_manifest(tmp_path, configmap)

        result = runner.invoke(cli, ["apply", "-f", manifest])

        assert result.exit_code == 1
        assert "ERROR: Resource Already Exists" in result.output
        assert "1 object(s) failed" in result.output
        assert StateFile.load(str(state_path)).entries == {}

    def test_invalid_yaml(self, runner: CliRunner, state_path: Path, tmp_path: Path) -> None:
        """A manifest that is not YAML is rejected."""
        manifest = tmp_path / "app.yaml"
        manifest.write_text("data: [unclosed\n")

        result = runner.invoke(cli, ["apply", "-f", str(manifest)])

        assert result.exit_code == 1
        assert "Invalid YAML in manifest" in result.output

    def test_invalid_ignore_field(
        self,
        runner: CliRunner,
        state_path: Path,
        tmp_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """Bookkeeping annotations cannot be ignored from the command line."""
        manifest = write_manifest(tmp_path, configmap)

        result = runner.invoke(
            cli,
            [
                "apply",
                "-f",
                manifest,
                "--ignore-field",
                "metadata.annotations.ssaengine.io/resource-id",
            ],
        )

        assert result.exit_code == 1
        assert "required to track resource ownership" in result.output

    def test_api_version_change_replaces(
        self,
        runner: CliRunner,
        store: MockObjectStore,
        state_path: Path,
        tmp_path: Path,
    ) -> None:
        """An identity change deletes the old object and creates the new one."""
        store.register_kind("apps/v1beta2", "Deployment")
        old = {
            "apiVersion": "apps/v1beta2",
            "kind": "Deployment",
            "metadata": {"name": "web", "namespace": "default"},
            "spec": {"replicas": 1},
        }
        runner.invoke(cli, ["apply", "-f", write_manifest(tmp_path, old)])
        new = {**old, "apiVersion": "apps/v1"}

        result = runner.invoke(cli, ["apply", "-f", write_manifest(tmp_path, new)])

        assert result.exit_code == 0, result.output
        assert "identity changed, replacing" in result.output
        assert "✓ Deployment default/web created" in result.output
        assert store.count("delete") == 1
        record = StateFile.load(str(state_path)).entries["Deployment/default/web"].record
        assert record.manifest["apiVersion"] == "apps/v1"


class TestRefreshCommand:
    """Tests for ssaengine refresh."""

    def test_removed_objects_leave_state(
        self,
        runner: CliRunner,
        store: MockObjectStore,
        state_path: Path,
        tmp_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """Objects deleted outside the tool are dropped."""
        runner.invoke(cli, ["apply", "-f", write_manifest(tmp_path, configmap)])
        store.objects.clear()

        result = runner.invoke(cli, ["refresh"])

        assert result.exit_code == 0, result.output
        assert f"{CONFIGMAP_KEY}: no longer exists, removed from state" in result.output
        assert StateFile.load(str(state_path)).entries == {}


class TestPlanCommand:
    """Tests for ssaengine plan."""

    def test_new_object(
        self,
        runner: CliRunner,
        store: MockObjectStore,
        state_path: Path,
        tmp_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """A new object lists every projected field."""
        result = runner.invoke(cli, ["plan", "-f", write_manifest(tmp_path, configmap)])

        assert result.exit_code == 0, result.output
        assert "ConfigMap default/app: will be created" in result.output
        assert "  + data.a = 1" in result.output
        assert store.live(CONFIGMAP_REF) is None

    def test_drift_after_refresh(
        self,
        runner: CliRunner,
        store: MockObjectStore,
        state_path: Path,
        tmp_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """An external change shows up as drift to be reverted."""
        manifest = write_manifest(tmp_path, configmap)
        runner.invoke(cli, ["apply", "-f", manifest])
        store.apply(
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": "app", "namespace": "default"},
                "data": {"b": "external"},
            },
            field_manager="kubectl",
            force=True,
        )
        runner.invoke(cli, ["refresh"])

        result = runner.invoke(cli, ["plan", "-f", manifest])

        assert result.exit_code == 0, result.output
        assert "ConfigMap default/app: will be updated" in result.output
        assert "  ~ data.b: external -> 2" in result.output
        assert "Drift Detected - Reverting External Changes" in result.output

    def test_unknown_kind(self, runner: CliRunner, state_path: Path, tmp_path: Path) -> None:
        """A kind created in the same run is planned as unknown."""
        widget = {
            "apiVersion": "example.com/v1",
            "kind": "Widget",
            "metadata": {"name": "w", "namespace": "default"},
            "spec": {"size": 3},
        }

        result = runner.invoke(cli, ["plan", "-f", write_manifest(tmp_path, widget)])

        assert result.exit_code == 0, result.output
        assert "projection (known after apply)" in result.output


class TestDestroyCommand:
    """Tests for ssaengine destroy."""

    def test_destroy_all(
        self,
        runner: CliRunner,
        store: MockObjectStore,
        state_path: Path,
        tmp_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """Every recorded object is deleted."""
        runner.invoke(cli, ["apply", "-f", write_manifest(tmp_path, configmap)])

        result = runner.invoke(cli, ["destroy"])

        assert result.exit_code == 0, result.output
        assert f"✓ {CONFIGMAP_KEY} destroyed" in result.output
        assert store.live(CONFIGMAP_REF) is None
        assert StateFile.load(str(state_path)).entries == {}

    def test_protected_object(
        self,
        runner: CliRunner,
        store: MockObjectStore,
        state_path: Path,
        tmp_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """Delete protection fails the command and keeps the object."""
        manifest = write_manifest(tmp_path, configmap)
        runner.invoke(cli, ["apply", "-f", manifest, "--delete-protection"])

        result = runner.invoke(cli, ["destroy", "--key", CONFIGMAP_KEY])

        assert result.exit_code == 1
        assert "Delete Protection Enabled" in result.output
        assert store.live(CONFIGMAP_REF) is not None
        assert CONFIGMAP_KEY in StateFile.load(str(state_path)).entries

    def test_unknown_key(self, runner: CliRunner, state_path: Path) -> None:
        """Keys must be in the state file."""
        result = runner.invoke(cli, ["destroy", "--key", "ConfigMap/default/missing"])

        assert result.exit_code == 1
        assert "Not in state: ConfigMap/default/missing" in result.output


class TestImportCommand:
    """Tests for ssaengine import."""

    def test_import(
        self,
        runner: CliRunner,
        store: MockObjectStore,
        state_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """An existing object is recorded without being modified."""
        store.put(configmap)

        result = runner.invoke(cli, ["import", CONFIGMAP_KEY, "--api-version", "v1"])

        assert result.exit_code == 0, result.output
        assert "✓ ConfigMap default/app imported" in result.output
        entry = StateFile.load(str(state_path)).entries[CONFIGMAP_KEY]
        assert entry.private.imported_without_annotations
        assert store.count("apply") == 0

    def test_import_twice(
        self,
        runner: CliRunner,
        store: MockObjectStore,
        state_path: Path,
        configmap: dict[str, Any],
    ) -> None:
        """An object already in the state file is not imported again."""
        store.put(configmap)
        runner.invoke(cli, ["import", CONFIGMAP_KEY, "--api-version", "v1"])

        result = runner.invoke(cli, ["import", CONFIGMAP_KEY, "--api-version", "v1"])

        assert result.exit_code == 1
        assert "already in the state file" in result.output

    def test_import_missing(self, runner: CliRunner, state_path: Path) -> None:
        """Importing a missing object fails."""
        result = runner.invoke(cli, ["import", CONFIGMAP_KEY, "--api-version", "v1"])

        assert result.exit_code == 1
        assert "Resource Not Found" in result.output

    def test_bad_key(self, runner: CliRunner, state_path: Path) -> None:
        """Malformed keys are a usage error."""
        result = runner.invoke(cli, ["import", "ConfigMap", "--api-version", "v1"])

        assert result.exit_code == 2


class TestHelpers:
    """Tests for CLI helper functions."""

    def test_parse_key(self) -> None:
        """Namespaced and cluster-scoped keys are both accepted."""
        assert parse_key("ConfigMap/default/app", "v1") == CONFIGMAP_REF
        assert parse_key("Namespace/team-a", "v1") == ObjectRef("v1", "Namespace", "team-a")

    @pytest.mark.parametrize("key", ["ConfigMap", "ConfigMap//", "/default/app", "a/b/c/d"])
    def test_parse_key_invalid(self, key: str) -> None:
        """Anything else is rejected."""
        with pytest.raises(click.BadParameter):
            parse_key(key, "v1")

    def test_load_manifests_skips_empty_documents(self) -> None:
        """Empty documents between separators are ignored."""
        stream = io.StringIO("---\napiVersion: v1\nkind: ConfigMap\n---\n---\n")

        assert load_manifests(stream) == [{"apiVersion": "v1", "kind": "ConfigMap"}]

    def test_load_manifests_rejects_scalars(self) -> None:
        """Every document must be a mapping."""
        with pytest.raises(click.ClickException) as exc_info:
            load_manifests(io.StringIO("just a string\n"))

        assert "Manifest document 1 is not a mapping" in str(exc_info.value.message)
