"""SSA engine command line interface (ssaengine).

Drives the lifecycle of the objects in a manifest file against a cluster and
keeps their records in a local JSON state file.

Usage:
    ssaengine apply -f app.yaml        # Create or update objects
    ssaengine plan -f app.yaml         # Show the projection an apply would produce
    ssaengine refresh                  # Re-read every object in the state file
    ssaengine destroy                  # Delete every object in the state file
    ssaengine import --api-version v1 ConfigMap/default/app
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, TextIO

import click
import kubernetes
import yaml
from pydantic import ValidationError

from ssaengine.config import ConfigurationError, EngineConfig
from ssaengine.identity import detect_identity_changes
from ssaengine.ignore import IgnoreFieldsError, IgnoreSet
from ssaengine.lifecycle import LifecycleOrchestrator, LifecycleResult
from ssaengine.log import setup_logging
from ssaengine.models import Diagnostics, ResourceOptions, StateEntry, StateFile, StateFileError
from ssaengine.store import KubernetesObjectStore, ObjectRef, ObjectStore

DEFAULT_STATE_FILE = "ssaengine-state.json"
UNKNOWN_VALUE = "(known after apply)"


# =============================================================================
# Helpers
# =============================================================================


def build_store(kubeconfig: str | None, context: str | None, in_cluster: bool) -> ObjectStore:
    """Build a store for the selected cluster.

    Raises:
        click.ClickException: If no cluster configuration can be loaded.
    """
    try:
        if in_cluster:
            kubernetes.config.load_incluster_config()
            api_client = kubernetes.client.ApiClient()
        else:
            api_client = kubernetes.config.new_client_from_config(
                config_file=kubeconfig, context=context
            )
    except kubernetes.config.ConfigException as e:
        raise click.ClickException(f"Cannot load cluster configuration: {e}") from e
    return KubernetesObjectStore(api_client)


@dataclass
class CliContext:
    """Settings shared by all commands."""

    state_path: str
    kubeconfig: str | None
    kube_context: str | None
    in_cluster: bool
    config: EngineConfig
    _orchestrator: LifecycleOrchestrator | None = field(default=None, repr=False)

    def orchestrator(self) -> LifecycleOrchestrator:
        if self._orchestrator is None:
            store = build_store(self.kubeconfig, self.kube_context, self.in_cluster)
            self._orchestrator = LifecycleOrchestrator(store, self.config)
        return self._orchestrator

    def load_state(self) -> StateFile:
        try:
            return StateFile.load(self.state_path)
        except StateFileError as e:
            raise click.ClickException(str(e)) from e

    def save_state(self, state: StateFile) -> None:
        try:
            state.save(self.state_path)
        except StateFileError as e:
            raise click.ClickException(str(e)) from e


def load_manifests(stream: TextIO) -> list[dict[str, Any]]:
    """Read every object document from a YAML stream.

    Raises:
        click.ClickException: If the YAML is invalid or a document is not a mapping.
    """
    try:
        documents = list(yaml.safe_load_all(stream))
    except yaml.YAMLError as e:
        raise click.ClickException(f"Invalid YAML in manifest: {e}") from e

    manifests: list[dict[str, Any]] = []
    for index, document in enumerate(documents):
        if document is None:
            continue
        if not isinstance(document, dict):
            raise click.ClickException(f"Manifest document {index + 1} is not a mapping")
        manifests.append(document)
    return manifests


def build_options(
    ignore_fields: tuple[str, ...],
    ignore_file: str | None,
    delete_protection: bool,
    force_destroy: bool,
    delete_timeout: str | None,
    config: EngineConfig,
) -> ResourceOptions:
    """Combine the per-object command line options.

    Raises:
        click.ClickException: If an option value is invalid.
    """
    try:
        ignore = IgnoreSet.build(ignore_fields, config.annotation_prefix)
        if ignore_file:
            ignore = ignore.union(IgnoreSet.from_file(ignore_file, config.annotation_prefix))
        return ResourceOptions(
            ignore_fields=list(ignore),
            delete_protection=delete_protection,
            force_destroy=force_destroy,
            delete_timeout=delete_timeout,
        )
    except IgnoreFieldsError as e:
        raise click.ClickException(str(e)) from e
    except ValidationError as e:
        raise click.ClickException(f"Invalid option: {e}") from e


def parse_key(key: str, api_version: str) -> ObjectRef:
    """Parse "Kind/namespace/name" or "Kind/name" into a reference."""
    parts = key.split("/")
    if len(parts) == 2 and all(parts):
        return ObjectRef(api_version, parts[0], parts[1])
    if len(parts) == 3 and parts[0] and parts[2]:
        return ObjectRef(api_version, parts[0], parts[2], parts[1])
    raise click.BadParameter(f"expected Kind/namespace/name or Kind/name, got {key!r}")


def echo_diagnostics(diagnostics: Diagnostics) -> None:
    for diagnostic in diagnostics:
        color = "red" if diagnostic.is_error else "yellow"
        click.secho(str(diagnostic), fg=color, err=True)


def store_result(state: StateFile, key: str, result: LifecycleResult) -> None:
    """Persist or drop one entry according to a lifecycle result."""
    if result.removed:
        state.entries.pop(key, None)
    elif result.record is not None:
        state.entries[key] = StateEntry(record=result.record, private=result.private)


def fail_if_errors(failed: int) -> None:
    if failed:
        raise click.ClickException(f"{failed} object(s) failed")


ignore_field_option = click.option(
    "--ignore-field",
    "ignore_fields",
    multiple=True,
    help="Field path to leave to other managers (repeatable)",
)
ignore_file_option = click.option(
    "--ignore-file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML file with an ignoreFields list",
)
manifest_option = click.option(
    "--filename",
    "-f",
    "manifest",
    type=click.File("r"),
    required=True,
    help="Manifest file with one or more objects ('-' for stdin)",
)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="ssaengine")
@click.option(
    "--state",
    "state_path",
    default=DEFAULT_STATE_FILE,
    show_default=True,
    envvar="SSA_STATE_FILE",
    help="Path of the JSON state file",
)
@click.option("--kubeconfig", type=click.Path(dir_okay=False), help="Path of the kubeconfig file")
@click.option("--context", "kube_context", help="Kubeconfig context to use")
@click.option("--in-cluster", is_flag=True, help="Use the pod's service account")
@click.pass_context
def cli(
    ctx: click.Context,
    state_path: str,
    kubeconfig: str | None,
    kube_context: str | None,
    in_cluster: bool,
) -> None:
    """SSA engine CLI (ssaengine).

    Manages Kubernetes objects with server-side apply, tracking exactly the
    fields this tool owns.

    \b
    Quick Start:
        ssaengine plan -f app.yaml    # Preview
        ssaengine apply -f app.yaml   # Create or update
        ssaengine destroy             # Delete everything in the state file
    """
    try:
        config = EngineConfig.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    setup_logging(config.log_level, config.log_format)
    ctx.obj = CliContext(state_path, kubeconfig, kube_context, in_cluster, config)


# =============================================================================
# Lifecycle Commands
# =============================================================================


@cli.command()
@manifest_option
@ignore_field_option
@ignore_file_option
@click.option("--delete-protection", is_flag=True, help="Refuse to delete these objects")
@click.option("--force-destroy", is_flag=True, help="Strip finalizers when deletion times out")
@click.option("--delete-timeout", help="How long to wait for deletion, e.g. 10m")
@click.pass_obj
def apply(
    obj: CliContext,
    manifest: TextIO,
    ignore_fields: tuple[str, ...],
    ignore_file: str | None,
    delete_protection: bool,
    force_destroy: bool,
    delete_timeout: str | None,
) -> None:
    """Create or update every object in a manifest."""
    options = build_options(
        ignore_fields, ignore_file, delete_protection, force_destroy, delete_timeout, obj.config
    )
    documents = load_manifests(manifest)
    state = obj.load_state()
    orchestrator = obj.orchestrator()
    failed = 0

    for document in documents:
        ref = ObjectRef.from_object(document)
        key = ref.key
        entry = state.entries.get(key)

        if entry is not None and detect_identity_changes(entry.record.manifest, document):
            click.echo(f"{ref}: identity changed, replacing")
            deleted = orchestrator.delete(entry.record, entry.private)
            echo_diagnostics(deleted.diagnostics)
            store_result(state, key, deleted)
            obj.save_state(state)
            if not deleted.success:
                failed += 1
                continue
            entry = None

        if entry is None:
            result = orchestrator.create(document, options)
            action = "created"
        else:
            result = orchestrator.update(entry.record, entry.private, document, options)
            action = "updated"

        echo_diagnostics(result.diagnostics)
        store_result(state, key, result)
        obj.save_state(state)
        if result.success:
            click.secho(f"✓ {ref} {action}", fg="green")
        else:
            failed += 1

    fail_if_errors(failed)


@cli.command()
@click.pass_obj
def refresh(obj: CliContext) -> None:
    """Re-read every object in the state file."""
    state = obj.load_state()
    orchestrator = obj.orchestrator()
    failed = 0

    for key, entry in list(state.entries.items()):
        result = orchestrator.read(entry.record, entry.private)
        echo_diagnostics(result.diagnostics)
        store_result(state, key, result)
        if result.removed:
            click.echo(f"{key}: no longer exists, removed from state")
        elif not result.success:
            failed += 1

    obj.save_state(state)
    fail_if_errors(failed)


@cli.command()
@click.option(
    "--key", "keys", multiple=True, help="Only destroy this Kind/namespace/name (repeatable)"
)
@click.pass_obj
def destroy(obj: CliContext, keys: tuple[str, ...]) -> None:
    """Delete objects recorded in the state file, newest first."""
    state = obj.load_state()
    unknown = [key for key in keys if key not in state.entries]
    if unknown:
        raise click.ClickException(f"Not in state: {', '.join(unknown)}")

    orchestrator = obj.orchestrator()
    selected = list(keys) if keys else list(state.entries)
    failed = 0

    for key in reversed(selected):
        entry = state.entries[key]
        result = orchestrator.delete(entry.record, entry.private)
        echo_diagnostics(result.diagnostics)
        store_result(state, key, result)
        obj.save_state(state)
        if result.success:
            click.secho(f"✓ {key} destroyed", fg="green")
        else:
            failed += 1

    fail_if_errors(failed)


@cli.command("import")
@click.argument("key")
@click.option("--api-version", required=True, help="apiVersion of the object, e.g. apps/v1")
@ignore_field_option
@ignore_file_option
@click.option("--delete-protection", is_flag=True, help="Refuse to delete this object")
@click.option("--force-destroy", is_flag=True, help="Strip finalizers when deletion times out")
@click.option("--delete-timeout", help="How long to wait for deletion, e.g. 10m")
@click.pass_obj
def import_command(
    obj: CliContext,
    key: str,
    api_version: str,
    ignore_fields: tuple[str, ...],
    ignore_file: str | None,
    delete_protection: bool,
    force_destroy: bool,
    delete_timeout: str | None,
) -> None:
    """Bring an existing object under management.

    KEY is Kind/namespace/name, or Kind/name for cluster-scoped objects.
    """
    ref = parse_key(key, api_version)
    state = obj.load_state()
    if ref.key in state.entries:
        raise click.ClickException(f"{ref.key} is already in the state file")

    options = build_options(
        ignore_fields, ignore_file, delete_protection, force_destroy, delete_timeout, obj.config
    )
    result = obj.orchestrator().import_object(ref, options)
    echo_diagnostics(result.diagnostics)
    store_result(state, ref.key, result)
    obj.save_state(state)
    if not result.success:
        fail_if_errors(1)
    click.secho(f"✓ {ref} imported", fg="green")


@cli.command()
@manifest_option
@ignore_field_option
@ignore_file_option
@click.pass_obj
def plan(
    obj: CliContext,
    manifest: TextIO,
    ignore_fields: tuple[str, ...],
    ignore_file: str | None,
) -> None:
    """Show the projection an apply would produce."""
    options = build_options(ignore_fields, ignore_file, False, False, None, obj.config)
    documents = load_manifests(manifest)
    state = obj.load_state()
    orchestrator = obj.orchestrator()
    failed = 0

    for document in documents:
        ref = ObjectRef.from_object(document)
        entry = state.entries.get(ref.key)
        record = entry.record if entry is not None else None
        private = entry.private if entry is not None else None

        result = orchestrator.plan(document, options, record, private)
        echo_diagnostics(result.diagnostics)
        if result.diagnostics.has_error:
            failed += 1
            continue

        if result.requires_replacement:
            click.echo(f"{ref}: must be replaced")
        elif record is None:
            click.echo(f"{ref}: will be created")
        else:
            click.echo(f"{ref}: will be updated")

        if result.projection is None:
            click.echo(f"  projection {UNKNOWN_VALUE}")
            continue

        prior = record.projection if record is not None else {}
        for path in sorted(set(prior) | set(result.projection)):
            old = prior.get(path)
            new = result.projection.get(path)
            if old == new:
                continue
            if old is None:
                click.secho(f"  + {path} = {new}", fg="green")
            elif new is None:
                click.secho(f"  - {path}", fg="red")
            else:
                click.secho(f"  ~ {path}: {old} -> {new}", fg="yellow")

    fail_if_errors(failed)
