import pathlib
import re
import typing as t

import pydantic
import yaml
from pydantic import Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .models.v1beta1 import ServerType


#: The API version and kind of the image configuration document
IMAGE_CONFIG_API_VERSION = "config.k8ssandra.io/v1beta1"
IMAGE_CONFIG_KIND = "ImageConfig"

#: The names of the auxiliary images used in datacenter pods
SYSTEM_LOGGER_IMAGE = "system-logger"
CONFIG_BUILDER_IMAGE = "config-builder"

#: The versions that are supported for each server type
#: A version is supported when a pattern matches anywhere in it
VALID_VERSION_REGEXES = {
    ServerType.DSE: r"(6\.8\.\d+)|(7\.\d+\.\d+)",
    ServerType.CASSANDRA: r"(3\.11\.\d+)|(4\.\d+\.\d+)|(5\.\d+\.\d+)",
}

#: The repositories to use for each server type when none is configured
DEFAULT_REPOSITORIES = {
    ServerType.DSE: "datastax/dse-server",
    ServerType.CASSANDRA: "k8ssandra/cass-management-api",
}


class ConfigError(Exception):
    """
    Raised when the image configuration cannot be loaded.
    """


class ImageNotConfiguredError(ConfigError):
    """
    Raised when an auxiliary image is requested that is not in the configuration.
    """
    def __init__(self, name):
        self.name = name
        super().__init__(f"no image configured for '{name}'")


class UnsupportedVersionError(Exception):
    """
    Raised when a server type and version do not work together.
    """
    def __init__(self, server_type, version):
        self.server_type = ServerType(server_type)
        self.version = version
        super().__init__(
            f"server '{self.server_type.value}' and version '{version}' "
            "do not work together"
        )


class ImmutableModel(
    pydantic.BaseModel,
    alias_generator=to_camel,
    populate_by_name=True,
    frozen=True,
    extra="forbid",
):
    """
    Base class for the image configuration models.
    """


class ImageComponent(ImmutableModel):
    """
    The parts used to compose a server image.
    """

    #: The repository of the image, including any registry
    repository: str = ""
    #: The suffix to append to the version in the image tag
    suffix: str = ""


class DefaultImages(ImmutableModel):
    """
    The default image components for each server type.
    """

    cassandra: ImageComponent = Field(default_factory=ImageComponent)
    dse: ImageComponent = Field(default_factory=ImageComponent)

    def component(self, server_type: ServerType) -> ImageComponent:
        return {
            ServerType.CASSANDRA: self.cassandra,
            ServerType.DSE: self.dse,
        }[server_type]


class Images(ImmutableModel, extra="allow"):
    """
    Images for specific server versions and the auxiliary images.

    Auxiliary images are given as extra keys, e.g. system-logger, config-builder.
    """

    #: Images for specific Cassandra versions, indexed by version
    cassandra: dict[str, str] = Field(default_factory=dict)
    #: Images for specific DSE versions, indexed by version
    dse: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_auxiliary_images(self):
        """
        Ensures that every auxiliary image is a non-empty string.
        """
        for name, image in (self.model_extra or {}).items():
            if not isinstance(image, str) or not image:
                raise ValueError(f"image for '{name}' must be a non-empty string")
        return self

    def versions(self, server_type: ServerType) -> dict[str, str]:
        return {
            ServerType.CASSANDRA: self.cassandra,
            ServerType.DSE: self.dse,
        }[server_type]

    def auxiliary(self, name: str) -> t.Optional[str]:
        return (self.model_extra or {}).get(name)


class ImagePullSecret(ImmutableModel):
    """
    Reference to the secret used to pull images.
    """

    name: str = ""


class ImageConfig(ImmutableModel):
    """
    The image configuration for the operator.
    """

    api_version: t.Literal[IMAGE_CONFIG_API_VERSION]
    kind: t.Literal[IMAGE_CONFIG_KIND]
    #: The images for specific versions and the auxiliary images
    images: Images = Field(default_factory=Images)
    #: The default image components for each server type
    defaults: DefaultImages = Field(default_factory=DefaultImages)
    #: The registry to use for all images, replacing any registry in the image
    image_registry: str = ""
    #: The pull policy to use for all images
    image_pull_policy: t.Optional[t.Literal["Always", "IfNotPresent", "Never"]] = None
    #: The secret to use to pull images
    image_pull_secret: ImagePullSecret = Field(default_factory=ImagePullSecret)

    @field_validator("image_registry")
    @classmethod
    def validate_image_registry(cls, v):
        """
        Removes the trailing slash from the registry.
        """
        return v.rstrip("/")


def load_image_config(content) -> ImageConfig:
    """
    Decodes the given YAML content into an image configuration.
    """
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigError(f"could not decode image config: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("could not decode image config: document is not a mapping")
    try:
        return ImageConfig.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ConfigError(f"invalid image config: {exc}") from exc


def parse_image_config(path) -> ImageConfig:
    """
    Reads and decodes the image configuration from the given file.
    """
    try:
        content = pathlib.Path(path).read_text()
    except OSError as exc:
        raise ConfigError(f"could not read file at {path}") from exc
    try:
        return load_image_config(content)
    except ConfigError as exc:
        raise ConfigError(f"unable to load image config from {path}: {exc}") from exc


def strip_registry(image):
    """
    Returns the image with the registry host removed, if it has one.

    The first component of the image is treated as a registry host if it contains
    a dot or a colon.
    """
    components = image.split("/")
    if len(components) > 1 and ("." in components[0] or ":" in components[0]):
        return "/".join(components[1:])
    else:
        return image


def is_version_supported(server_type, version):
    """
    Returns true if the version is supported for the server type.
    """
    return re.search(VALID_VERSION_REGEXES[ServerType(server_type)], version) is not None


class ImageResolver:
    """
    Resolves image references using an image configuration.

    The configuration is never modified. To use a different configuration, create
    a new resolver.
    """
    def __init__(self, config: ImageConfig):
        self._config = config

    @property
    def config(self) -> ImageConfig:
        return self._config

    def apply_registry(self, image: str) -> str:
        """
        Returns the image with the configured registry applied, if there is one.
        """
        if not self._config.image_registry:
            return image
        return f"{self._config.image_registry}/{strip_registry(image)}"

    def resolve(self, server_type, version: str) -> str:
        """
        Returns the server image for the given server type and version.
        """
        server_type = ServerType(server_type)
        override = self._config.images.versions(server_type).get(version)
        if override:
            return self.apply_registry(override)
        if not is_version_supported(server_type, version):
            raise UnsupportedVersionError(server_type, version)
        component = self._config.defaults.component(server_type)
        if component.repository:
            prefix, suffix = component.repository, component.suffix
        else:
            prefix, suffix = DEFAULT_REPOSITORIES[server_type], ""
        return self.apply_registry(f"{prefix}:{version}{suffix}")

    def resolve_auxiliary(self, name: str) -> str:
        """
        Returns the named auxiliary image, e.g. system-logger.
        """
        image = self._config.images.auxiliary(name)
        if not image:
            raise ImageNotConfiguredError(name)
        return self.apply_registry(image)

    def server_image(self, datacenter) -> str:
        """
        Returns the server image for the datacenter.

        An image given in the datacenter spec is used as-is.
        """
        if datacenter.spec.server_image:
            return datacenter.spec.server_image
        return self.resolve(datacenter.spec.server_type, datacenter.spec.server_version)

    def add_image_pull_secrets(self, pod_spec) -> bool:
        """
        Adds the configured pull secret to the given pod spec.

        Returns true if a secret was added. This must be called at most once for
        each pod spec that is built.
        """
        secret_name = self._config.image_pull_secret.name
        if not secret_name:
            return False
        pod_spec.setdefault("imagePullSecrets", []).append({"name": secret_name})
        return True


def build_pod_images(resolver: ImageResolver, datacenter) -> dict:
    """
    Returns the image-related parts of the pod spec for the datacenter.
    """
    pod_spec = {
        "initContainers": [
            {
                "name": "server-config-init",
                "image": resolver.resolve_auxiliary(CONFIG_BUILDER_IMAGE),
            },
        ],
        "containers": [
            {
                "name": "cassandra",
                "image": resolver.server_image(datacenter),
            },
            {
                "name": "server-system-logger",
                "image": resolver.resolve_auxiliary(SYSTEM_LOGGER_IMAGE),
            },
        ],
    }
    pull_policy = resolver.config.image_pull_policy
    if pull_policy:
        for container in pod_spec["initContainers"] + pod_spec["containers"]:
            container["imagePullPolicy"] = pull_policy
    resolver.add_image_pull_secrets(pod_spec)
    return pod_spec
