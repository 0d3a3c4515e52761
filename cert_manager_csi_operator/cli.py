"""CLI interface for the cert-manager CSI operator."""

import logging
from typing import Any, Dict

import click
import yaml
from pydantic import ValidationError

from cert_manager_csi_operator.config import DEFAULTS, CsiDriverConfig, ServerConfig
from cert_manager_csi_operator.errors import ConfigError

logger = logging.getLogger(__name__)

ENVVAR_PREFIX = "CERT_MANAGER_CSI_OPERATOR"

# Configuration field -> command line flag
CONFIG_FLAGS = {
    # Toggles
    "namespace": "--namespace",
    "annotation_key": "--annotation-key",
    # Issuer
    "issuer_name": "--issuer-name",
    "issuer_kind": "--issuer-kind",
    # Files
    "fs_group": "--fs-group",
    "ca_filename": "--ca-file",
    "cert_filename": "--certificate-file",
    "key_filename": "--privatekey-file",
    "mount_path": "--mount-path",
    # Details
    "is_ca": "--is-ca",
    "duration": "--duration",
    "renew_before": "--renew-before",
    "reuse_private_key": "--reuse-private-key",
    "common_name": "--common-name",
    "dns_names": "--dns-names",
    "ip_sans": "--ip-sans",
    "uri_sans": "--uri-sans",
    "key_encoding": "--key-encoding",
    "key_usages": "--key-usages",
    "pkcs12_enable": "--pkcs12-enable",
    "pkcs12_filename": "--pkcs12-filename",
    "pkcs12_password": "--pkcs12-password",
}

SERVER_FLAGS = {
    "host": "--webhook-host",
    "port": "--webhook-port",
    "tls_cert_file": "--tls-cert-file",
    "tls_key_file": "--tls-key-file",
    "metrics_port": "--metrics-port",
}


def _model_options(model, defaults, flags):
    """Turn pydantic model fields into click options, defaults taken from ``defaults``."""

    def decorator(func):
        for field_name, flag in reversed(list(flags.items())):
            field = model.model_fields[field_name]
            kwargs = {
                "default": getattr(defaults, field_name),
                "envvar": f"{ENVVAR_PREFIX}_{field_name.upper()}",
                "show_envvar": True,
                "help": field.description,
            }
            if field.annotation is bool:
                kwargs["is_flag"] = True
            else:
                kwargs["type"] = field.annotation
                kwargs["show_default"] = True
            func = click.option(flag, field_name, **kwargs)(func)
        return func

    return decorator


csi_driver_options = _model_options(CsiDriverConfig, DEFAULTS, CONFIG_FLAGS)
server_options = _model_options(ServerConfig, ServerConfig(), SERVER_FLAGS)


def build_config(options: Dict[str, Any]) -> CsiDriverConfig:
    """Build and validate the driver configuration from parsed options."""
    values = {name: options[name] for name in CONFIG_FLAGS if name in options}
    try:
        config = CsiDriverConfig.model_validate({**DEFAULTS.model_dump(), **values})
        config.validate_config()
    except ValidationError as e:
        raise click.BadParameter(str(e)) from e
    except ConfigError as e:
        raise click.UsageError(f"invalid configuration: {e}") from e
    return config


def build_server_config(options: Dict[str, Any]) -> ServerConfig:
    """Build the server configuration from parsed options."""
    try:
        return ServerConfig.model_validate({name: options[name] for name in SERVER_FLAGS if name in options})
    except ValidationError as e:
        raise click.BadParameter(str(e)) from e


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level",
)
def cli(log_level):
    """cert-manager CSI operator CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()), format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@cli.command()
@csi_driver_options
@server_options
@click.option("--liveness-endpoint", default="http://0.0.0.0:8080/healthz", show_default=True, help="kopf liveness URL")
def run(liveness_endpoint, **options):
    """Run the operator under kopf."""
    from cert_manager_csi_operator import operator

    config = build_config(options)
    server_config = build_server_config(options)
    logger.info(f"Starting operator (namespace={config.namespace!r}, annotation_key={config.annotation_key!r})")
    operator.run(config, server_config, liveness_endpoint=liveness_endpoint)


@cli.command()
@csi_driver_options
@server_options
def serve(**options):
    """Serve the admission webhooks without kopf."""
    from cert_manager_csi_operator import operator

    config = build_config(options)
    server_config = build_server_config(options)
    logger.info(f"Starting webhook server (namespace={config.namespace!r}, annotation_key={config.annotation_key!r})")
    operator.serve(config, server_config)


@cli.command()
@csi_driver_options
def show(**options):
    """Print the volume and mount injected into managed workloads."""
    from cert_manager_csi_operator.mutation import to_dict

    config = build_config(options)
    volume, mount = config.get_volume_and_mount(config.get_attributes())
    click.echo(yaml.safe_dump({"volumes": [to_dict(volume)], "volumeMounts": [to_dict(mount)]}, sort_keys=True))


if __name__ == "__main__":
    cli()
