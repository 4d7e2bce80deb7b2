"""Credentials minter CLI.

Usage:
    minter provision --name cluster-abc -g rg-cluster-abc -g rg-network
    minter provision --install-config install-config.yaml --assets-dir ./assets
    minter teardown --name cluster-abc
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from .assets import AssetLoadError, load_install_config
from .config import ConfigurationError, MinterConfig
from .errors import MinterError
from .main import DEFAULT_ROLE_NAME, provision
from .minter import CredentialsMinter


def build_minter() -> tuple[MinterConfig, CredentialsMinter]:
    """Load configuration from the environment and authenticate.

    Raises:
        click.ClickException: If configuration or authentication fails.
    """
    try:
        config = MinterConfig.from_env()
        return config, CredentialsMinter.from_config(config)
    except (ConfigurationError, MinterError) as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="minter")
def cli() -> None:
    """Mint resource-scoped Azure service principals.

    \b
    Authentication is read from the environment:
        AZURE_TENANT_ID, AZURE_SUBSCRIPTION_ID,
        AZURE_CLIENT_ID, AZURE_CLIENT_SECRET
    """
    pass


@cli.command("provision")
@click.option("--name", "-n", help="Application display name")
@click.option(
    "--resource-group", "-g", "resource_groups", multiple=True, help="Resource group to scope to"
)
@click.option("--role", "role_name", default=None, help=f"Role to bind (default: {DEFAULT_ROLE_NAME})")
@click.option("--regenerate-secret", is_flag=True, help="Rotate the secret of an existing application")
@click.option(
    "--install-config",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML install config providing name, resource groups and role",
)
@click.option(
    "--assets-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory to persist the credentials file in",
)
def provision_command(
    name: str | None,
    resource_groups: tuple[str, ...],
    role_name: str | None,
    regenerate_secret: bool,
    install_config: Path | None,
    assets_dir: Path | None,
) -> None:
    """Create or reuse the application, its principal and role bindings."""
    ca_bundle_path: Path | None = None
    groups = list(resource_groups)

    if install_config is not None:
        try:
            loaded = load_install_config(install_config)
        except AssetLoadError as e:
            raise click.ClickException(str(e)) from e
        name = name or loaded.cluster_name
        groups = groups or loaded.resource_groups
        role_name = role_name or loaded.role_name
        regenerate_secret = regenerate_secret or loaded.regenerate_secret
        ca_bundle_path = loaded.ca_bundle_path

    if not name:
        raise click.UsageError("--name or --install-config is required")
    if not groups:
        raise click.UsageError("at least one --resource-group is required")

    config, minter = build_minter()

    try:
        result = asyncio.run(
            provision(
                minter,
                config,
                name,
                groups,
                role_name or DEFAULT_ROLE_NAME,
                regenerate_secret=regenerate_secret,
                assets_dir=assets_dir,
                ca_bundle_path=ca_bundle_path,
            )
        )
    except (MinterError, AssetLoadError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(f"Application:       {result.application.display_name or name}")
    click.echo(f"Client ID:         {result.application.app_id}")
    click.echo(f"Service principal: {result.service_principal.object_id}")
    click.echo(f"Role:              {result.role_name} on {', '.join(result.scopes)}")
    if result.secret_issued:
        if assets_dir is not None:
            click.echo(f"New secret written to {assets_dir}")
        else:
            click.echo(f"Client secret:     {result.client_secret}")
    else:
        click.echo("Client secret unchanged")
    click.secho("✓ Credentials minted", fg="green")


@cli.command("teardown")
@click.option("--name", "-n", required=True, help="Application display name")
def teardown_command(name: str) -> None:
    """Delete the application. A missing application is not an error."""
    _, minter = build_minter()

    try:
        asyncio.run(minter.delete_application(name))
    except MinterError as e:
        raise click.ClickException(str(e)) from e

    click.secho(f"✓ Application {name} removed", fg="green")


def main() -> None:
    """Entry point for the minter CLI."""
    cli()


if __name__ == "__main__":
    main()
