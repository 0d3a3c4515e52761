"""Error types raised by the cert-manager CSI operator."""


class OperatorError(Exception):
    """Base class for all operator errors."""


class ConfigError(OperatorError):
    """Operator configuration is invalid."""


class ScopeUnsetError(ConfigError):
    """Neither a namespace nor an annotation key selects managed workloads."""

    def __init__(self):
        super().__init__("at least namespace or annotation key must be set")


class IssuerNameRequiredError(ConfigError):
    """No issuer name is configured."""

    def __init__(self):
        super().__init__("issuer name is required")


class MountPathRequiredError(ConfigError):
    """No mount path is configured."""

    def __init__(self):
        super().__init__("mount path is required")


class CommonNameNotTemplatedError(ConfigError):
    """Common name is set but contains no template expression."""

    def __init__(self, common_name: str):
        self.common_name = common_name
        super().__init__(f"common name must be a templated string, got: {common_name!r}")


class AdmissionDecodeError(OperatorError):
    """Admission request could not be decoded into a workload object."""
