"""Cloud provider configuration models."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from game_network.exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = "/etc/kruise-game/config.toml"

KUBERNETES_PROVIDER = "Kubernetes"
ALIBABACLOUD_PROVIDER = "AlibabaCloud"

MAX_PORT = 65535
# Listener quota of a single SLB instance
MAX_SLB_LISTENERS = 200


class ProviderOptions(BaseModel):
    """Options shared by every cloud provider section."""

    model_config = ConfigDict(populate_by_name=True)

    enable: bool = False

    def enabled(self) -> bool:
        return self.enable

    def problems(self) -> list[str]:
        """Return human readable reasons why the options are invalid."""
        return []

    def valid(self) -> bool:
        return not self.problems()


class HostPortOptions(BaseModel):
    """Host port range handed out by the HostPort plugin."""

    max_port: int = 0
    min_port: int = 0


class KubernetesOptions(ProviderOptions):
    """Options of the built-in Kubernetes provider."""

    host_port: HostPortOptions = Field(default_factory=HostPortOptions, alias="hostPort")

    def problems(self) -> list[str]:
        hp = self.host_port
        errors = []
        if hp.min_port <= 0:
            errors.append(f"hostPort.min_port must be positive, got {hp.min_port}")
        if hp.max_port <= hp.min_port:
            errors.append(
                f"hostPort.max_port ({hp.max_port}) must be greater than min_port ({hp.min_port})"
            )
        if hp.max_port > MAX_PORT:
            errors.append(f"hostPort.max_port cannot exceed {MAX_PORT}, got {hp.max_port}")
        return errors


class SLBOptions(BaseModel):
    """Listener port pool shared by pods on one SLB instance."""

    max_port: int = 0
    min_port: int = 0
    block_ports: list[int] = Field(default_factory=list)


class AlibabaCloudOptions(ProviderOptions):
    """Options of the AlibabaCloud provider."""

    slb: SLBOptions = Field(default_factory=SLBOptions)

    def problems(self) -> list[str]:
        slb = self.slb
        errors = []
        if slb.min_port <= 0:
            errors.append(f"slb.min_port must be positive, got {slb.min_port}")
        if slb.max_port > MAX_PORT:
            errors.append(f"slb.max_port cannot exceed {MAX_PORT}, got {slb.max_port}")
        for port in slb.block_ports:
            if port >= slb.max_port or port <= slb.min_port:
                errors.append(
                    f"slb.block_ports entry {port} must lie strictly between "
                    f"{slb.min_port} and {slb.max_port}"
                )
        if slb.max_port - slb.min_port - len(slb.block_ports) >= MAX_SLB_LISTENERS:
            errors.append(f"slb port range must provide fewer than {MAX_SLB_LISTENERS} listeners")
        return errors


class ManagerOptions(BaseModel):
    """Settings of the provider manager and the admission dispatcher."""

    mutating_timeout: float = Field(default=8.0, gt=0)
    resync_interval: float = Field(default=0, ge=0)
    allocation_grace_period: float = Field(default=60.0, ge=0)


class CloudProviderConfig(BaseModel):
    """Top level provider configuration file."""

    manager: ManagerOptions = Field(default_factory=ManagerOptions)
    kubernetes: KubernetesOptions = Field(default_factory=KubernetesOptions)
    alibabacloud: AlibabaCloudOptions = Field(default_factory=AlibabaCloudOptions)

    def provider_options(self) -> dict[str, ProviderOptions]:
        """Map provider names to their option sections."""
        return {
            KUBERNETES_PROVIDER: self.kubernetes,
            ALIBABACLOUD_PROVIDER: self.alibabacloud,
        }

    @classmethod
    def load(cls, path: Path | str = DEFAULT_CONFIG_PATH) -> "CloudProviderConfig":
        """Load configuration from a TOML or YAML file.

        Raises:
            ConfigurationError: If the file is missing, malformed or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(
                f"Provider config file not found: {path}",
                "Pass --config with the path to a TOML or YAML provider config",
            )

        try:
            if path.suffix in (".yaml", ".yml"):
                import yaml

                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            else:
                import tomli

                with open(path, "rb") as f:
                    data = tomli.load(f)
        except Exception as e:
            raise ConfigurationError(f"Failed to parse provider config {path}", str(e)) from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Provider config {path} must be a mapping")

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid provider config {path}", str(e)) from e
