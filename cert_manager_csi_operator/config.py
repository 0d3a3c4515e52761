"""Operator configuration for the cert-manager CSI driver.

The configuration decides which workloads are managed and how the
cert-manager CSI volume is described to them.
See https://cert-manager.io/docs/projects/csi-driver/#supported-volume-attributes
"""

from typing import Any, Dict, Optional, Tuple

from kubernetes import client
from pydantic import BaseModel, ConfigDict, Field

from cert_manager_csi_operator.errors import (
    CommonNameNotTemplatedError,
    IssuerNameRequiredError,
    MountPathRequiredError,
    ScopeUnsetError,
)


CERT_MANAGER_CSI_TLD = "csi.cert-manager.io"
VOLUME_NAME = "cert-manager-tls"
TEMPLATE_MARKER = "${"


def attribute_key(slug: str) -> str:
    """Return the CSI volume attribute key for a field slug."""
    return f"{CERT_MANAGER_CSI_TLD}/{slug}"


class CsiDriverConfig(BaseModel):
    """Operator-wide settings for injecting the cert-manager CSI volume.

    Instances are immutable. Build a variant from ``DEFAULTS`` with
    ``model_copy(update=...)`` and call ``validate_config()`` before first use.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Toggles
    namespace: str = Field(
        default="", description="When set, only resources created in this namespace will be managed."
    )
    annotation_key: str = Field(
        default="op.csi.cert-manager.io",
        description="When set, all resources created with this annotation will be managed.",
    )

    # Issuer
    issuer_name: str = Field(default="", description="The Issuer name to sign the certificate request.")
    issuer_kind: str = Field(default="", description="The Issuer kind to sign the certificate request.")

    # Files
    fs_group: int = Field(
        default=0,
        ge=0,
        description="FS Group of written files. Should match the runAsGroup of the consuming container.",
    )
    ca_filename: str = Field(default="", description="File name to store the ca certificate file at.")
    cert_filename: str = Field(default="", description="File name to store the certificate file at.")
    key_filename: str = Field(default="", description="File name to store the key file at.")
    mount_path: str = Field(default="/var/run/tls", description="Directory to mount the resulting files into.")

    # Details
    is_ca: bool = Field(default=False, description="Mark the certificate as a certificate authority.")
    duration: str = Field(default="", description="Requested duration the signed certificate will be valid for.")
    renew_before: str = Field(
        default="",
        description="The time to renew the certificate before expiry. Defaults to a third of the requested duration.",
    )
    reuse_private_key: bool = Field(
        default=False, description="Re-use the same private key when renewing certificates."
    )
    common_name: str = Field(default="", description="Certificate common name template (supports variables).")
    dns_names: str = Field(
        default="", description="DNS names the certificate will be requested for (supports variables)."
    )
    ip_sans: str = Field(default="", description="IP addresses the certificate will be requested for.")
    uri_sans: str = Field(
        default="", description="URI names the certificate will be requested for (supports variables)."
    )
    key_encoding: str = Field(default="", description="Set the key encoding format (PKCS1 or PKCS8).")
    key_usages: str = Field(default="", description="Set the key usages on the certificate request.")
    pkcs12_enable: bool = Field(
        default=False,
        description="Enable writing the signed certificate chain and private key as a PKCS12 file.",
    )
    pkcs12_filename: str = Field(
        default="", description="File location to write the PKCS12 file. Requires pkcs12-enable."
    )
    # Required by the CSI driver when pkcs12_enable is set; not checked here.
    pkcs12_password: str = Field(
        default="", description="Password used to encode the PKCS12 file. Required when pkcs12-enable is set."
    )

    def validate_config(self) -> None:
        """Check the configuration, raising the first ConfigError found."""
        if not self.namespace and not self.annotation_key:
            raise ScopeUnsetError()
        if not self.issuer_name:
            raise IssuerNameRequiredError()
        if not self.mount_path:
            raise MountPathRequiredError()
        if self.common_name and TEMPLATE_MARKER not in self.common_name:
            raise CommonNameNotTemplatedError(self.common_name)

    def is_managed(self, metadata: Optional[Dict[str, Any]]) -> bool:
        """Decide whether a workload with the given metadata should be mutated.

        The namespace must match exactly. When an annotation key is
        configured it overrides the namespace result: only presence of the
        key counts, whatever its value.
        """
        metadata = metadata or {}
        managed = (metadata.get("namespace") or "") == self.namespace

        if self.annotation_key:
            annotations = metadata.get("annotations") or {}
            managed = self.annotation_key in annotations

        return managed

    def get_attributes(self) -> Dict[str, str]:
        """Project the configuration into CSI volume attributes.

        Raises:
            ConfigError: if the configuration does not validate
        """
        self.validate_config()

        attributes = {
            # Issuer
            attribute_key("issuer-name"): self.issuer_name,
            attribute_key("issuer-kind"): self.issuer_kind,
            # Files
            attribute_key("fs-group"): str(self.fs_group),
            attribute_key("ca-file"): self.ca_filename,
            attribute_key("certificate-file"): self.cert_filename,
            attribute_key("privatekey-file"): self.key_filename,
            # Details
            attribute_key("is-ca"): _format_bool(self.is_ca),
            attribute_key("duration"): self.duration,
            attribute_key("renew-before"): self.renew_before,
            attribute_key("reuse-private-key"): _format_bool(self.reuse_private_key),
            attribute_key("common-name"): self.common_name,
            attribute_key("dns-names"): self.dns_names,
            attribute_key("ip-sans"): self.ip_sans,
            attribute_key("uri-sans"): self.uri_sans,
            attribute_key("key-encoding"): self.key_encoding,
            attribute_key("key-usages"): self.key_usages,
            attribute_key("pkcs12-enable"): _format_bool(self.pkcs12_enable),
            attribute_key("pkcs12-filename"): self.pkcs12_filename,
            attribute_key("pkcs12-password"): self.pkcs12_password,
        }

        fs_group_key = attribute_key("fs-group")
        return {
            key: value
            for key, value in attributes.items()
            if value != "" and not (key == fs_group_key and value == "0")
        }

    def get_volume_and_mount(self, attributes: Dict[str, str]) -> Tuple[client.V1Volume, client.V1VolumeMount]:
        """Build the CSI volume and its mount from already projected attributes."""
        volume = client.V1Volume(
            name=VOLUME_NAME,
            csi=client.V1CSIVolumeSource(
                driver=CERT_MANAGER_CSI_TLD,
                read_only=True,
                volume_attributes=attributes,
            ),
        )
        mount = client.V1VolumeMount(
            name=VOLUME_NAME,
            mount_path=self.mount_path,
            read_only=True,
        )
        return volume, mount


def _format_bool(value: bool) -> str:
    return "true" if value else "false"


# Defaults shared by flag binding; never mutated.
DEFAULTS = CsiDriverConfig()


class ServerConfig(BaseModel):
    """Settings for the webhook HTTPS server and metrics endpoint."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str = Field(default="0.0.0.0", description="Address the webhook server binds to.")
    port: int = Field(default=8443, gt=0, lt=65536, description="Port the webhook server listens on.")
    tls_cert_file: str = Field(default="/etc/certs/tls.crt", description="Serving certificate for the webhook.")
    tls_key_file: str = Field(default="/etc/certs/tls.key", description="Private key of the serving certificate.")
    metrics_port: int = Field(default=8081, ge=0, lt=65536, description="Prometheus metrics port (0 disables).")
