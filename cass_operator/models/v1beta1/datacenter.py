from kube_custom_resource import CustomResource, schema
from pydantic import Field


class ServerType(str, schema.Enum):
    """
    The type of database server run by a datacenter.
    """

    CASSANDRA = "cassandra"
    DSE = "dse"


class ProgressState(str, schema.Enum):
    """
    The coarse progress of the operator for a datacenter.
    """

    UPDATING = "Updating"
    READY = "Ready"


class NodePortSpec(schema.BaseModel):
    """
    The ports to expose on each worker node.
    """

    native: schema.conint(gt=0, le=65535) = Field(
        9042, description="The node port for the native CQL protocol."
    )
    internode: schema.conint(gt=0, le=65535) = Field(
        7000, description="The node port for internode communication."
    )


class NetworkingSpec(schema.BaseModel):
    """
    The networking options for the datacenter.
    """

    node_port: schema.Optional[NodePortSpec] = Field(
        None,
        description=(
            "If given, the datacenter is exposed using a service of type NodePort."
        ),
    )


class ServiceConfigAdditions(schema.BaseModel):
    """
    Extra metadata for a service managed by the operator.
    """

    additional_labels: schema.Dict[str, str] = Field(
        default_factory=dict, description="Labels to add to the service."
    )
    additional_annotations: schema.Dict[str, str] = Field(
        default_factory=dict, description="Annotations to add to the service."
    )


class ServiceConfig(schema.BaseModel):
    """
    Extra metadata for each of the services managed by the operator.
    """

    dc_service: ServiceConfigAdditions = Field(default_factory=ServiceConfigAdditions)
    seed_service: ServiceConfigAdditions = Field(
        default_factory=ServiceConfigAdditions
    )
    all_pods_service: ServiceConfigAdditions = Field(
        default_factory=ServiceConfigAdditions
    )
    additional_seed_service: ServiceConfigAdditions = Field(
        default_factory=ServiceConfigAdditions
    )
    node_port_service: ServiceConfigAdditions = Field(
        default_factory=ServiceConfigAdditions
    )


class CassandraDatacenterSpec(schema.BaseModel):
    """
    The spec for a datacenter of a database cluster.
    """

    cluster_name: schema.constr(min_length=1) = Field(
        ..., description="The name of the cluster that the datacenter belongs to."
    )
    server_type: ServerType = Field(
        ..., description="The type of database server to run."
    )
    server_version: schema.constr(min_length=1) = Field(
        ..., description="The version of the database server to run."
    )
    server_image: schema.Optional[schema.constr(min_length=1)] = Field(
        None,
        description=(
            "The image to use for the database server. "
            "If not given, the image is derived from the server type and version."
        ),
    )
    networking: NetworkingSpec = Field(
        default_factory=NetworkingSpec,
        description="The networking options for the datacenter.",
    )
    additional_seeds: list[schema.constr(min_length=1)] = Field(
        default_factory=list,
        description="Addresses of seeds outside of the cluster, e.g. in other regions.",
    )
    additional_service_config: ServiceConfig = Field(
        default_factory=ServiceConfig,
        description="Extra labels and annotations for the managed services.",
    )
    paused: bool = Field(
        False, description="Indicates if reconciliation should be paused."
    )

    def is_node_port_enabled(self):
        """
        Indicates if the datacenter should be exposed on node ports.
        """
        return self.networking.node_port is not None


class CassandraDatacenterStatus(schema.BaseModel, extra="allow"):
    """
    The status of the datacenter.
    """

    cassandra_operator_progress: schema.Optional[ProgressState] = Field(
        None, description="The progress of the operator for the datacenter."
    )


class CassandraDatacenter(
    CustomResource,
    subresources={"status": {}},
    printer_columns=[
        {
            "name": "Cluster",
            "type": "string",
            "jsonPath": ".spec.clusterName",
        },
        {
            "name": "Server Type",
            "type": "string",
            "jsonPath": ".spec.serverType",
        },
        {
            "name": "Server Version",
            "type": "string",
            "jsonPath": ".spec.serverVersion",
        },
        {
            "name": "Progress",
            "type": "string",
            "jsonPath": ".status.cassandraOperatorProgress",
        },
    ],
):
    """
    A datacenter of a database cluster.
    """

    spec: CassandraDatacenterSpec
    status: CassandraDatacenterStatus = Field(
        default_factory=CassandraDatacenterStatus
    )
