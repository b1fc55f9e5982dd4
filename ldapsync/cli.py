#
# Copyright Elasticsearch B.V. and/or licensed to Elasticsearch B.V. under one
# or more contributor license agreements. Licensed under the Elastic License 2.0;
# you may not use this file except in compliance with the Elastic License 2.0.
#
"""
Command Line Interface.

When the project is installed as a Python package, an `ldapsync` executable is
added in the PATH and executes the `main` function of this module.

The local state of the tenant (local users and groups, settings records and
cached photos) is read from and written back to a JSON state file:

    {
        "tenant": {"id": "...", "owner_id": "..."},
        "saved_at": "...",
        "local": {...},
        "settings": {...},
        "photos": {...}
    }

Dry runs never write the state file back.
"""
import asyncio
import json
import logging
import os
import signal

import click
import yaml
from click import ClickException, UsageError
from tabulate import tabulate

from ldapsync import __version__
from ldapsync.config import load_config
from ldapsync.coordinator import SyncCoordinator
from ldapsync.crypto import CredentialCipher, CredentialError, generate_key
from ldapsync.exceptions import ConnectivityError
from ldapsync.job import TenantContext
from ldapsync.localization import MessageCatalog
from ldapsync.logger import logger, set_logger
from ldapsync.models import Tenant
from ldapsync.protocol import OperationKind
from ldapsync.settings import DirectorySettings
from ldapsync.sources.ldap import LdapDirectorySource
from ldapsync.store import (
    InMemoryLocalStore,
    InMemoryPhotoStore,
    InMemorySettingsStore,
)
from ldapsync.utils import iso_utc

__all__ = ["main"]

DEFAULT_TENANT_ID = "default"


def read_state(state_file):
    if state_file is None or not os.path.isfile(state_file):
        return {"tenant": {"id": DEFAULT_TENANT_ID}}
    with open(state_file) as f:
        return json.load(f)


def write_state(state_file, context):
    state = {
        "tenant": {"id": context.tenant.id, "owner_id": context.tenant.owner_id},
        "saved_at": iso_utc(),
        "local": context.local_store.to_dict(),
        "settings": context.settings_store.to_dict(),
        "photos": context.photo_store.to_dict(),
    }
    with open(state_file, "w") as f:
        json.dump(state, f, indent=2, default=str)


def load_settings(config, settings_file):
    """Settings out of `settings_file`, or else out of the `directory`
    section of the configuration."""
    if settings_file is not None:
        with open(settings_file) as f:
            return DirectorySettings.from_dict(yaml.safe_load(f) or {})
    if config.get("directory"):
        return DirectorySettings.from_dict(config["directory"])
    return None


def source_factory(config, cipher=None):
    def _create(settings):
        return LdapDirectorySource(
            settings,
            cipher=cipher,
            page_size=config["ldap"]["page_size"],
            connect_timeout=config["ldap"]["connect_timeout"],
            retries=config["ldap"]["retries"],
        )

    return _create


def credential_cipher(config):
    key = config["service"]["secret_key"]
    if not key:
        return None
    try:
        return CredentialCipher(key)
    except CredentialError as e:
        raise ClickException(str(e)) from e


def tenant_context(config, state, cipher=None):
    return TenantContext(
        tenant=Tenant(**state["tenant"]),
        local_store=InMemoryLocalStore.from_dict(state.get("local")),
        settings_store=InMemorySettingsStore.from_dict(state.get("settings")),
        photo_store=InMemoryPhotoStore.from_dict(state.get("photos")),
        source_factory=source_factory(config, cipher),
        cipher=cipher,
    )


def message_catalog(config):
    return MessageCatalog(
        config["reconciliation"]["locale"], config["reconciliation"]["messages"]
    )


async def _run_job(config, context, kind, settings=None, requesting_user_id=None):
    coordinator = SyncCoordinator(
        [context], max_concurrent_jobs=config["service"]["max_concurrent_jobs"]
    )
    catalog = message_catalog(config)
    tenant_id = context.tenant.id

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, coordinator.cancel, tenant_id)

    try:
        if kind == OperationKind.SAVE:
            status = await coordinator.save(tenant_id, settings, catalog, requesting_user_id)
        elif kind == OperationKind.SAVE_TEST:
            status = await coordinator.save_test(
                tenant_id, settings, catalog, requesting_user_id
            )
        elif kind == OperationKind.SYNC:
            status = await coordinator.sync(tenant_id, catalog, requesting_user_id)
        else:
            status = await coordinator.sync_test(tenant_id, catalog, requesting_user_id)

        warnings = []
        last_line = None
        while not status.finished:
            await asyncio.sleep(config["service"]["poll_interval"])
            status = coordinator.status(tenant_id)
            if status.warning:
                warnings.append(status.warning)
            if kind.is_dry_run:
                continue
            line = f"{status.percentage}% {status.status} {status.source}".strip()
            if line != last_line:
                click.echo(line)
                last_line = line

        await coordinator.join()
        return status, warnings
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def print_changes(status, table):
    if not table:
        click.echo(status.status or "[]")
        return

    changes = json.loads(status.status) if status.status else []
    if not changes:
        click.echo("No changes.")
        return

    rows = []
    for change in changes:
        details = change.get("after") or change.get("before") or ""
        if change.get("members"):
            details = ", ".join(change["members"])
        rows.append(
            [change["kind"], change["entity_kind"], change["name"], change["sid"], details]
        )
    click.echo(tabulate(rows, headers=["Change", "Entity", "Name", "Sid", "Details"]))


def report(status, warnings):
    for warning in warnings:
        click.echo(click.style(f"Warning: {warning}", fg="yellow"), err=True)
    if status.certificate_confirmation:
        click.echo(
            f"The server certificate has to be accepted (token: {status.certificate_confirmation}). "
            "Set `accept_certificate: true` in the directory settings to proceed.",
            err=True,
        )
    if status.error:
        raise ClickException(status.error)


def run_operation(config, kind, state_file, settings=None, requesting_user_id=None):
    context = tenant_context(config, read_state(state_file), credential_cipher(config))
    return asyncio.run(_run_job(config, context, kind, settings, requesting_user_id)), context


@click.group(invoke_without_command=True)
@click.version_option(__version__, "-v", "--version", message="%(version)s")
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    default=None,
    help="Configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help="Set log level for the operation.",
)
@click.option(
    "--filebeat", is_flag=True, default=False, help="Output in filebeat format."
)
@click.pass_context
def cli(ctx, config_file, log_level, filebeat):
    # print help page if no subcommands provided
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        return

    try:
        config = load_config(config_file)
    except Exception as e:
        # the logger still gets set up so that the error is reported
        set_logger(logging.INFO, filebeat=filebeat)
        msg = f"Could not parse {config_file}. Check logs for more information"
        logger.exception(f"{msg}.\n{e}")
        raise ClickException(msg) from e

    # Precedence: CLI args >> Config Setting >> INFO
    set_logger(log_level or config["service"]["log_level"], filebeat=filebeat)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@click.command(help="Validate the directory settings and check the connection.")
@click.argument("settings_file", type=click.Path(exists=True), required=False)
@click.pass_obj
def check(obj, settings_file):
    config = obj["config"]
    settings = load_settings(config, settings_file)
    if settings is None:
        msg = "No directory settings given"
        raise UsageError(msg)

    cipher = credential_cipher(config)
    problems = settings.prepare(cipher)
    if problems:
        raise ClickException("\n".join(problems))
    if not settings.enable_ldap_authentication:
        click.echo("Directory authentication is disabled.")
        return

    async def _bind():
        source = source_factory(config, cipher)(settings)
        try:
            return await source.bind()
        finally:
            await source.close()

    result = asyncio.run(_bind())
    if result.certificate_token:
        click.echo(f"Certificate token: {result.certificate_token}")
    if not result.ok:
        catalog = message_catalog(config)
        key = ConnectivityError(result.status).message_key
        raise ClickException(f"{result.status.value}: {catalog[key]}")
    click.echo("Connection OK.")


@click.command(
    help="Show the changes a save (with settings) or a sync (without) would make."
)
@click.argument("settings_file", type=click.Path(exists=True), required=False)
@click.option("-s", "--state", "state_file", type=click.Path(), default=None)
@click.option("--requesting-user", "requesting_user_id", default=None)
@click.option("--table", is_flag=True, default=False, help="Print a table.")
@click.pass_obj
def preview(obj, settings_file, state_file, requesting_user_id, table):
    config = obj["config"]
    settings = load_settings(config, settings_file)
    kind = OperationKind.SAVE_TEST if settings is not None else OperationKind.SYNC_TEST

    (status, warnings), _ = run_operation(
        config, kind, state_file, settings, requesting_user_id
    )
    if not status.error:
        print_changes(status, table)
    report(status, warnings)


@click.command(
    help="Synchronize the local state. New settings are saved first when given."
)
@click.argument("settings_file", type=click.Path(exists=True), required=False)
@click.option("-s", "--state", "state_file", type=click.Path(), required=True)
@click.option("--requesting-user", "requesting_user_id", default=None)
@click.pass_obj
def sync(obj, settings_file, state_file, requesting_user_id):
    config = obj["config"]
    settings = load_settings(config, settings_file)
    kind = OperationKind.SAVE if settings is not None else OperationKind.SYNC

    (status, warnings), context = run_operation(
        config, kind, state_file, settings, requesting_user_id
    )
    if not status.error:
        write_state(state_file, context)
        click.echo(f"State saved to {state_file}")
    report(status, warnings)


@click.command(
    name="generate-key", help="Generate a secret key to encrypt the bind password."
)
def generate_key_command():
    click.echo(generate_key())


cli.add_command(check)
cli.add_command(preview)
cli.add_command(sync)
cli.add_command(generate_key_command)


def main(args=None):
    cli()


if __name__ == "__main__":
    main()
