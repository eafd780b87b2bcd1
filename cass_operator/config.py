from configomatic import (
    Configuration as BaseConfiguration,
)
from configomatic import (
    LoggingConfiguration,
    Section,
)
from pydantic import Field, conint, constr


class ReconcileConfiguration(Section):
    """
    Configuration for reconcile passes.
    """

    #: The maximum number of check phases for services in a single pass
    #: Each check phase after the first follows a batch of creations
    service_check_max_attempts: conint(gt=0) = 3
    #: The number of seconds kopf should wait before retrying a failed pass
    retry_delay: conint(gt=0) = 10


class Configuration(
    BaseConfiguration,
    default_path="/etc/cass-operator/operator.yaml",
    path_env_var="CASS_OPERATOR_CONFIG",
    env_prefix="CASS_OPERATOR",
):
    """
    Top-level configuration model.
    """

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    #: The API group of the datacenter CRD
    api_group: constr(min_length=1) = "cassandra.datastax.com"

    #: The prefix to use for operator annotations and labels
    annotation_prefix: str = "cassandra.datastax.com"

    #: The field manager name to use for server-side apply
    easykube_field_manager: constr(min_length=1) = "cass-operator"

    #: The amount of time (seconds) before a watch is forcefully restarted
    watch_timeout: conint(gt=0) = 600

    #: The path to the image configuration document
    image_config_path: constr(min_length=1) = "/configs/image_config.yaml"

    #: Configuration for reconcile passes
    reconcile: ReconcileConfiguration = Field(default_factory=ReconcileConfiguration)


settings = Configuration()
